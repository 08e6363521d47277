from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from rite.config import Config
from rite.models import ChangeRequest, WorkItem


@pytest.fixture(autouse=True)
def _isolate_config(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.config/rite and RITE_* settings."""
    config_dir = tmp_path / "user-config"
    monkeypatch.setattr("rite.config.CONFIG_DIR", config_dir)
    monkeypatch.setattr("rite.config.CONFIG_FILE", config_dir / "config.toml")
    for name in list(os.environ):
        if name.startswith("RITE_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")


def git(path: Path, *args: str, env: dict[str, str] | None = None) -> str:
    result = subprocess.run(
        ["git", "-C", str(path), *args],
        check=True,
        capture_output=True,
        text=True,
        env={**os.environ, **(env or {})},
    )
    return result.stdout.strip()


def commit_file(
    path: Path,
    name: str,
    content: str = "x\n",
    message: str | None = None,
    date: str | None = None,
) -> str:
    """Write a file, commit it and return the new HEAD sha."""
    target = path / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    git(path, "add", name)
    env = {"GIT_AUTHOR_DATE": date, "GIT_COMMITTER_DATE": date} if date else None
    git(path, "commit", "-m", message or f"add {name}", env=env)
    return git(path, "rev-parse", "HEAD")


@pytest.fixture
def origin(tmp_path) -> Path:
    """A bare repository with one commit on main."""
    bare = tmp_path / "origin.git"
    subprocess.run(
        ["git", "init", "--bare", "-b", "main", str(bare)],
        check=True,
        capture_output=True,
    )
    seed = tmp_path / "seed"
    subprocess.run(
        ["git", "clone", str(bare), str(seed)], check=True, capture_output=True
    )
    git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    commit_file(seed, "README.md", "# project\n", "initial commit")
    git(seed, "push", "-u", "origin", "main")
    return bare


def clone(origin: Path, dest: Path) -> Path:
    subprocess.run(
        ["git", "clone", str(origin), str(dest)], check=True, capture_output=True
    )
    return dest


@pytest.fixture
def repo(origin, tmp_path) -> Path:
    """A working clone of ``origin``."""
    return clone(origin, tmp_path / "repo")


@pytest.fixture
def other(origin, tmp_path) -> Path:
    """A second clone, standing in for another machine or collaborator."""
    return clone(origin, tmp_path / "other")


@pytest.fixture
def config(tmp_path) -> Config:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return Config(project_root=project, worktree_dir=tmp_path / "worktrees")


@pytest.fixture
def work_item() -> WorkItem:
    return WorkItem(number=42, title="Fix login redirect", body="Users bounce.")


@pytest.fixture
def pr() -> ChangeRequest:
    return ChangeRequest(
        number=7,
        branch="rite/issue-42-fix-login-redirect",
        base="main",
        head_oid="abc123",
        state="OPEN",
        title="Fix login redirect",
        body="Closes #42",
    )
