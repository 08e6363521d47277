from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from rite.blockers import BlockedError
from rite.claude import ClaudeSessionError
from rite.github import GitHubUnavailableError, PRNotFoundError
from rite.orchestrator import (
    INTERRUPTED_EXIT_CODE,
    PhaseError,
    UndoRefusedError,
    WorkflowInterrupted,
    resume_command,
)
from rite.session import SessionBudgetExceeded
from rite.worktree import get_current_repo

console = Console(stderr=True)


def _setup_logging(verbose: bool) -> None:
    level_name = os.environ.get("RITE_LOG_LEVEL", "DEBUG" if verbose else "INFO")
    logger = logging.getLogger("rite")
    logger.setLevel(level_name.upper())
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=console, show_path=verbose, markup=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)


def _resolve_repo(repo_path_str: str | None) -> Path:
    """Resolve repo from --repo option or current git context."""
    if repo_path_str is not None:
        return Path(repo_path_str).expanduser().resolve()
    repo = get_current_repo()
    if repo is None:
        raise click.ClickException("Not inside a git repository.")
    return repo


@contextmanager
def _workflow_errors(issue: int | None = None, auto: bool = False) -> Iterator[None]:
    """Turn workflow exceptions into CLI errors that say how to resume."""
    hint = f"\nResume with: {resume_command(issue, auto)}" if issue is not None else ""
    try:
        yield
    except WorkflowInterrupted as e:
        click.echo(f"{e}{hint}", err=True)
        raise SystemExit(INTERRUPTED_EXIT_CODE)
    except (
        BlockedError,
        PhaseError,
        ClaudeSessionError,
        SessionBudgetExceeded,
    ) as e:
        raise click.ClickException(f"{e}{hint}")
    except (GitHubUnavailableError, PRNotFoundError, UndoRefusedError) as e:
        raise click.ClickException(str(e))
