"""Batch session budget: item count and wall-clock limits."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from rite.config import Config

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"


class SessionBudgetExceeded(Exception):
    """Raised when the batch session hit its item or time budget."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Session budget exhausted: {reason}")


@dataclass
class SessionState:
    start_time: float
    mode: str = "supervised"
    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


@dataclass
class BudgetStatus:
    ok: bool
    reason: str = ""
    processed: int = 0
    elapsed_hours: float = 0.0


def _now() -> float:
    return datetime.now(timezone.utc).timestamp()


def _path(config: Config) -> Path:
    return config.state_dir / SESSION_FILE


def start_session(config: Config, mode: str) -> SessionState:
    state = SessionState(start_time=_now(), mode=mode)
    save_session(config, state)
    logger.info("Started %s session", mode)
    return state


def load_session(config: Config) -> SessionState | None:
    path = _path(config)
    if not path.exists():
        return None
    try:
        return SessionState(**json.loads(path.read_text()))
    except (ValueError, TypeError) as e:
        logger.warning("Ignoring unreadable session file %s: %s", path, e)
        return None


def save_session(config: Config, state: SessionState) -> None:
    config.state_dir.mkdir(parents=True, exist_ok=True)
    _path(config).write_text(json.dumps(asdict(state), indent=2) + "\n")


def end_session(config: Config) -> None:
    _path(config).unlink(missing_ok=True)


def record_completion(config: Config, work_item: int) -> None:
    state = load_session(config)
    if state is None:
        return
    if work_item not in state.completed:
        state.completed.append(work_item)
    save_session(config, state)


def record_failure(config: Config, work_item: int) -> None:
    state = load_session(config)
    if state is None:
        return
    if work_item not in state.failed:
        state.failed.append(work_item)
    save_session(config, state)


def check_limits(config: Config, state: SessionState | None = None) -> BudgetStatus:
    """Check whether another item may start in this session.

    Without an active session there is no budget to exhaust.
    """
    if state is None:
        state = load_session(config)
    if state is None:
        return BudgetStatus(ok=True)

    processed = len(state.completed) + len(state.failed)
    elapsed = (_now() - state.start_time) / 3600
    status = BudgetStatus(ok=True, processed=processed, elapsed_hours=elapsed)

    if processed >= config.max_issues_per_session:
        status.ok = False
        status.reason = (
            f"processed {processed} of {config.max_issues_per_session} issues"
        )
    elif elapsed >= config.max_session_hours:
        status.ok = False
        status.reason = (
            f"ran {elapsed:.1f}h of {config.max_session_hours}h allowed"
        )
    return status


def require_budget(config: Config) -> BudgetStatus:
    """Return the budget status, raising SessionBudgetExceeded when spent."""
    status = check_limits(config)
    if not status.ok:
        raise SessionBudgetExceeded(status.reason)
    return status
