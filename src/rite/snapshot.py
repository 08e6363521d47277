"""Advisory per-issue workflow snapshots stored as JSON under .rite/."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from rite.models import WorkflowSnapshot

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def snapshot_path(state_dir: Path, work_item: int) -> Path:
    return state_dir / f"session-state-{work_item}.json"


def save_snapshot(state_dir: Path, snapshot: WorkflowSnapshot) -> Path:
    """Write a snapshot atomically and return its path."""
    state_dir.mkdir(parents=True, exist_ok=True)
    snapshot.version = SNAPSHOT_VERSION
    snapshot.timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    path = snapshot_path(state_dir, snapshot.work_item)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(snapshot.to_dict(), indent=2) + "\n")
    os.replace(tmp, path)
    logger.debug("Saved snapshot for #%s at %s", snapshot.work_item, snapshot.phase)
    return path


def load_snapshot(state_dir: Path, work_item: int) -> WorkflowSnapshot | None:
    """Read a snapshot. Unreadable or future-version files are ignored."""
    path = snapshot_path(state_dir, work_item)
    if not path.exists():
        return None
    try:
        snapshot = WorkflowSnapshot.from_dict(json.loads(path.read_text()))
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning("Ignoring unreadable snapshot %s: %s", path, e)
        return None
    if snapshot.version > SNAPSHOT_VERSION:
        logger.warning("Ignoring snapshot %s (version %s)", path, snapshot.version)
        return None
    return snapshot


def delete_snapshot(state_dir: Path, work_item: int) -> bool:
    path = snapshot_path(state_dir, work_item)
    if path.exists():
        path.unlink()
        return True
    return False


def list_snapshots(state_dir: Path) -> list[WorkflowSnapshot]:
    snapshots: list[WorkflowSnapshot] = []
    if not state_dir.exists():
        return snapshots
    for path in sorted(state_dir.glob("session-state-*.json")):
        number = path.stem.rsplit("-", 1)[-1]
        if not number.isdigit():
            continue
        snapshot = load_snapshot(state_dir, int(number))
        if snapshot is not None:
            snapshots.append(snapshot)
    return snapshots
