"""Reconciles a work branch whose remote moved ahead of the local copy."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import click

from rite import github, worktree
from rite.config import Config
from rite.models import ChangeRequest
from rite.snapshot import delete_snapshot
from rite.worktree import DivergenceInfo, PushRejectedError

logger = logging.getLogger(__name__)

CHOICES = ("restart", "merge", "continue", "abort")


class ReconcileStatus(str, Enum):
    RESOLVED = "resolved"
    NEEDS_REREVIEW = "needs_rereview"
    RESTART = "restart"
    UNRESOLVED = "unresolved"


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    divergence: DivergenceInfo | None = None
    commits_behind: int | None = None
    message: str = ""


def _prompt_choice(pr: ChangeRequest, behind: int, threshold: int) -> str:
    click.echo(
        f"Branch {pr.branch} is {behind} commits behind {pr.base} "
        f"(threshold {threshold})."
    )
    click.echo(f"  restart  - close PR #{pr.number} and start fresh from {pr.base}")
    click.echo(f"  merge    - merge {pr.base} in anyway")
    click.echo("  continue - push as-is")
    click.echo("  abort    - stop here")
    return click.prompt(
        "Choice", type=click.Choice(CHOICES), default="merge", show_choices=False
    )


class DivergenceReconciler:
    def __init__(
        self,
        config: Config,
        repo_path: Path,
        choose: Callable[[ChangeRequest, int, int], str] = _prompt_choice,
    ) -> None:
        self.config = config
        self.repo_path = repo_path
        self.choose = choose

    def reconcile(
        self,
        worktree_path: Path,
        work_item: int,
        pr: ChangeRequest,
        auto: bool,
    ) -> ReconcileResult:
        """Bring the branch back in line with its remote and with mainline.

        Remote-only branch commits are merged in, never overwritten. The
        branch is then measured against origin/<base>; below the stale
        threshold mainline is merged in and the branch pushed without force.
        At or above it the branch is abandoned (auto) or the operator picks.
        """
        info = worktree.detect_divergence(worktree_path, pr.branch, pr.base)
        if info.diverged:
            logger.info(
                "origin/%s is %d commit(s) ahead (%s)",
                pr.branch,
                info.ahead_remote,
                info.kind,
            )
            remote_ref = f"origin/{pr.branch}"
            if not self._merge_preserving_changes(worktree_path, remote_ref):
                return ReconcileResult(
                    ReconcileStatus.UNRESOLVED,
                    info,
                    message=f"conflict merging origin/{pr.branch}",
                )

        behind = worktree.commits_behind(worktree_path, pr.base)
        if behind is None:
            return ReconcileResult(
                ReconcileStatus.UNRESOLVED,
                info,
                message=f"could not measure {pr.branch} against origin/{pr.base}",
            )

        threshold = self.config.stale_branch_threshold
        if behind >= threshold:
            choice = "restart" if auto else self.choose(pr, behind, threshold)
            if choice == "restart":
                self.abandon(worktree_path, work_item, pr, behind)
                return ReconcileResult(
                    ReconcileStatus.RESTART,
                    info,
                    behind,
                    f"{behind} commits behind {pr.base}; abandoned PR #{pr.number}",
                )
            if choice == "abort":
                return ReconcileResult(
                    ReconcileStatus.UNRESOLVED, info, behind, "aborted by operator"
                )
            sync = choice == "merge"
        else:
            sync = behind > 0

        if sync and not self.sync_with_mainline(worktree_path, pr.base):
            return ReconcileResult(
                ReconcileStatus.UNRESOLVED, info, behind, f"conflict merging {pr.base}"
            )

        try:
            worktree.push(worktree_path, pr.branch)
        except PushRejectedError as e:
            return ReconcileResult(ReconcileStatus.UNRESOLVED, info, behind, str(e))

        status = (
            ReconcileStatus.NEEDS_REREVIEW
            if info.has_foreign_edits
            else ReconcileStatus.RESOLVED
        )
        return ReconcileResult(status, info, behind)

    def _merge_preserving_changes(self, worktree_path: Path, ref: str) -> bool:
        stashed = worktree.stash(worktree_path)
        try:
            return worktree.merge_ref(worktree_path, ref)
        finally:
            if stashed:
                worktree.stash_pop(worktree_path)

    def sync_with_mainline(self, worktree_path: Path, base: str) -> bool:
        """Merge origin/<base> into the branch. False (and untouched) on conflict."""
        worktree.fetch(worktree_path, base)
        merged = self._merge_preserving_changes(worktree_path, f"origin/{base}")
        if merged:
            logger.info("Merged origin/%s into %s", base, worktree_path)
        return merged

    def abandon(
        self, worktree_path: Path, work_item: int, pr: ChangeRequest, behind: int
    ) -> None:
        """Close the PR with a summary and delete its branch and worktree.

        Cleanup failures are logged; the caller restarts regardless.
        """
        subjects = worktree.commit_subjects(worktree_path, f"origin/{pr.base}..HEAD")
        files = worktree.changed_files(worktree_path, pr.base)
        lines = [
            f"Closing: branch is {behind} commits behind `{pr.base}` "
            f"(threshold {self.config.stale_branch_threshold}).",
            f"Work on #{work_item} restarts from a fresh branch.",
            "",
            "**Work summary:**",
            *[f"- {s}" for s in subjects[:20]],
            "",
            "**Files touched:**",
            *[f"- `{f}`" for f in files[:50]],
        ]
        try:
            github.close_pr(self.repo_path, pr.number, comment="\n".join(lines))
        except github.GitHubUnavailableError as e:
            logger.warning("Could not close PR #%s: %s", pr.number, e)

        try:
            worktree.remove_worktree(self.repo_path, worktree_path)
        except subprocess.CalledProcessError as e:
            logger.warning("Could not remove worktree %s: %s", worktree_path, e.stderr)
        worktree.delete_branch(self.repo_path, pr.branch, remote=True)
        delete_snapshot(self.config.state_dir, work_item)
        logger.info("Abandoned PR #%s for #%s", pr.number, work_item)
