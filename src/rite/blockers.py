"""Blocker gate: sensitivity hints plus hard pre-merge checks.

Path-pattern matches serve two purposes. Before review they are turned into
focus hints for the reviewer; at the pre-merge checkpoint they become hard
gates that need approval (supervised) or a global bypass (unsupervised).
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

import click

from rite.config import Config
from rite.models import BlockerDecision, ClassificationResult
from rite.notifications import Notifier
from rite.session import BudgetStatus

logger = logging.getLogger(__name__)

PRE_START = "pre-start"
PRE_MERGE = "pre-merge"

BLOCKER_URGENCY = {
    "infrastructure": "urgent",
    "database_migration": "urgent",
    "auth_changes": "urgent",
    "architectural_docs": "urgent",
    "expensive_services": "urgent",
    "protected_scripts": "urgent",
    "critical_issues": "high",
    "failing_checks": "high",
    "session_limit": "normal",
    "credentials_expired": "normal",
}

# These stop the whole batch and cannot be approved away.
BATCH_BLOCKERS = frozenset({"session_limit", "credentials_expired"})

# Auth pattern hits in these paths are not auth changes.
AUTH_EXCLUDE_RE = re.compile(r"(^|/)tests?/|(^|/)docs?/")

FOCUS_NOTES = {
    "infrastructure": "Check resource policies, IAM scope and blast radius.",
    "database_migration": "Check reversibility, locking and data loss on rollback.",
    "auth_changes": "Check authorization bypasses, token handling and sessions.",
    "architectural_docs": "Check the docs still match the implemented behavior.",
    "expensive_services": "Check sizing and whether the resource must be provisioned.",
    "protected_scripts": "Check workflow automation changes line by line.",
}

_PATTERN_KEYS = {
    "infrastructure": "infrastructure",
    "database_migration": "migrations",
    "auth_changes": "auth",
    "architectural_docs": "docs",
}


class BlockedError(Exception):
    """Raised when a blocker halts the workflow for a work item."""

    def __init__(self, decision: BlockerDecision) -> None:
        self.decision = decision
        super().__init__(
            f"Blocked on #{decision.work_item}: {decision.type} ({decision.details})"
        )

    @property
    def blocks_batch(self) -> bool:
        return self.decision.type in BATCH_BLOCKERS


@dataclass
class SensitivityHint:
    area: str
    matches: list[str] = field(default_factory=list)

    @property
    def focus(self) -> str:
        return f"{self.area}: {FOCUS_NOTES[self.area]} ({', '.join(self.matches[:5])})"


@dataclass
class BlockerCheck:
    passed: bool
    decision: BlockerDecision | None = None

    @property
    def blocked(self) -> bool:
        return not self.passed


def _added_lines(diff: str) -> list[str]:
    return [
        line[1:]
        for line in diff.splitlines()
        if line.startswith("+") and not line.startswith("+++")
    ]


def detect_sensitivity(
    files: list[str], diff: str, config: Config
) -> list[SensitivityHint]:
    """Sensitive areas touched by a change, in a stable order."""
    hints: list[SensitivityHint] = []
    for area, key in _PATTERN_KEYS.items():
        pattern = re.compile(config.patterns[key])
        matches = [f for f in files if pattern.search(f)]
        if area == "auth_changes":
            matches = [f for f in matches if not AUTH_EXCLUDE_RE.search(f)]
        if matches:
            hints.append(SensitivityHint(area, matches))

    expensive = re.compile(config.patterns["expensive"], re.IGNORECASE)
    services = sorted(
        {
            m.group(0).lower()
            for line in _added_lines(diff)
            for m in expensive.finditer(line)
        }
    )
    if services:
        hints.append(SensitivityHint("expensive_services", services))

    protected = [
        f
        for f in files
        if any(
            f == script or f.endswith(f"/{script}")
            for script in config.protected_scripts
        )
    ]
    if protected:
        hints.append(SensitivityHint("protected_scripts", protected))
    return hints


class BlockerGate:
    def __init__(
        self,
        config: Config,
        notifier: Notifier,
        auto: bool,
        confirm: Callable[[str], bool] | None = None,
    ) -> None:
        self.config = config
        self.notifier = notifier
        self.auto = auto
        self.confirm = confirm or (lambda msg: click.confirm(msg, default=False))
        self._approved: set[tuple[int, str]] = set()

    def is_approved(self, work_item: int, blocker_type: str) -> bool:
        return (work_item, blocker_type) in self._approved

    def check_blockers(
        self,
        context: str,
        work_item: int,
        *,
        files: list[str] | None = None,
        diff: str = "",
        classification: ClassificationResult | None = None,
        checks_failing: bool | None = None,
        credentials_ok: bool | None = None,
        budget: BudgetStatus | None = None,
    ) -> BlockerCheck:
        """Evaluate the gates for a checkpoint and return the first unapproved one.

        Every context checks credentials and the session budget. Only
        ``pre-merge`` evaluates review findings, status checks and
        sensitivity patterns.
        """
        candidates: list[tuple[str, str]] = []
        if credentials_ok is False:
            candidates.append(
                ("credentials_expired", "GitHub or Claude credentials expired")
            )
        if budget is not None and not budget.ok:
            candidates.append(("session_limit", budget.reason))

        if context == PRE_MERGE:
            if classification is not None:
                critical = [
                    i.title for i in classification.now if i.severity == "CRITICAL"
                ]
                if critical:
                    details = f"unresolved CRITICAL: {'; '.join(critical)}"
                    candidates.append(("critical_issues", details))
            if checks_failing:
                candidates.append(("failing_checks", "required status checks failing"))
            for hint in detect_sensitivity(files or [], diff, self.config):
                candidates.append((hint.area, ", ".join(hint.matches)))

        for blocker_type, details in candidates:
            decision = BlockerDecision(
                type=blocker_type,
                urgency=BLOCKER_URGENCY.get(blocker_type, "normal"),
                work_item=work_item,
                details=details,
            )
            if self._resolve(decision):
                continue
            return BlockerCheck(passed=False, decision=decision)
        return BlockerCheck(passed=True)

    def _resolve(self, decision: BlockerDecision) -> bool:
        """Approve a blocker via memory, bypass or the operator. True if cleared."""
        key = (decision.work_item, decision.type)
        if key in self._approved:
            decision.approved = True
            return True

        self.notifier.notify_once(
            decision.work_item,
            decision.type,
            f"Blocker on #{decision.work_item}: {decision.type}",
            decision.details,
            decision.urgency,
        )

        if decision.type in BATCH_BLOCKERS:
            return False
        if self.auto:
            if self.config.bypass_blockers:
                logger.warning(
                    "Bypassing %s blocker on #%s", decision.type, decision.work_item
                )
                decision.approved = True
                return True
            return False

        if self.confirm(
            f"#{decision.work_item} is blocked by {decision.type}: {decision.details}\n"
            "Approve and continue?"
        ):
            self._approved.add(key)
            decision.approved = True
            return True
        return False
