"""Fire-and-forget notifications. Delivery failures are logged, never raised."""

from __future__ import annotations

import logging
import os
import subprocess

from rite.config import Config

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._sent: set[tuple[int, str]] = set()

    def notify(self, title: str, message: str, urgency: str = "normal") -> None:
        log = logger.warning if urgency in ("urgent", "high") else logger.info
        log("%s: %s", title, message)

        if not self.config.notify_command:
            return
        env = os.environ.copy()
        env["RITE_NOTIFY_TITLE"] = title
        env["RITE_NOTIFY_MESSAGE"] = message
        env["RITE_NOTIFY_URGENCY"] = urgency
        try:
            result = subprocess.run(
                self.config.notify_command,
                shell=True,
                env=env,
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Notification command failed: %s", e)
            return
        if result.returncode != 0:
            logger.warning(
                "Notification command exited %s: %s",
                result.returncode,
                result.stderr.strip(),
            )

    def notify_once(
        self, work_item: int, key: str, title: str, message: str, urgency: str
    ) -> bool:
        """Send a notification once per (work item, key). Returns True if sent."""
        if (work_item, key) in self._sent:
            logger.debug("Suppressing repeat notification %s for #%s", key, work_item)
            return False
        self._sent.add((work_item, key))
        self.notify(title, message, urgency)
        return True
