"""Shared append-only notes of recent security findings.

Several workflows may write here, so every read-modify-write cycle holds
an exclusive advisory lock on a sidecar lock file.
"""

from __future__ import annotations

import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from rite.models import ClassificationItem

logger = logging.getLogger(__name__)

NOTES_FILE = "notes.md"
HEADER = "# Recent Security Findings\n"
ENTRY_PREFIX = "## PR #"
MAX_ENTRIES = 5


@contextmanager
def _locked(path: Path) -> Iterator[None]:
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = path.with_suffix(path.suffix + ".lock")
    with open(lock_path, "w") as lock:
        fcntl.flock(lock, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock, fcntl.LOCK_UN)


def _split_entries(text: str) -> list[str]:
    entries: list[str] = []
    current: list[str] = []
    for line in text.splitlines(keepends=True):
        if line.startswith(ENTRY_PREFIX):
            if current:
                entries.append("".join(current))
            current = [line]
        elif current:
            current.append(line)
    if current:
        entries.append("".join(current))
    return entries


def format_entry(pr_number: int, items: list[ClassificationItem]) -> str:
    date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    lines = [f"{ENTRY_PREFIX}{pr_number} ({date})\n"]
    for item in items:
        lines.append(f"- **{item.severity}** {item.title}")
        if item.reasoning:
            lines.append(f": {item.reasoning}")
        lines.append("\n")
    return "".join(lines) + "\n"


def record_security_findings(
    state_dir: Path, pr_number: int, items: list[ClassificationItem]
) -> bool:
    """Append security findings for a PR, keeping only the newest entries.

    Returns False when there was nothing to record.
    """
    security = [i for i in items if i.category.lower() == "security"]
    if not security:
        return False

    path = state_dir / NOTES_FILE
    with _locked(path):
        existing = path.read_text() if path.exists() else ""
        entries = _split_entries(existing)
        entries.append(format_entry(pr_number, security))
        entries = entries[-MAX_ENTRIES:]
        tmp = path.with_suffix(".md.tmp")
        tmp.write_text(HEADER + "\n" + "".join(entries))
        os.replace(tmp, path)

    logger.info("Recorded %d security finding(s) from PR #%s", len(security), pr_number)
    return True


def read_notes(state_dir: Path) -> str:
    path = state_dir / NOTES_FILE
    if not path.exists():
        return ""
    with _locked(path):
        return path.read_text()
