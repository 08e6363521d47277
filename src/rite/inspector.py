"""Reconstructs where a work item stands from GitHub and git.

Every sub-query is independent: a failure is logged and reported as
unknown (None) instead of aborting the inspection.
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from rite import github, worktree
from rite.classifier import ClassificationError, parse_assessment
from rite.models import (
    ChangeRequest,
    ClassificationResult,
    ReviewArtifact,
    WorkItem,
)
from rite.review import (
    artifact_time,
    artifacts_from_comments,
    followup_issue_numbers,
    latest_of_kind,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

LINKAGE_RE = re.compile(r"\b(?:[Cc]loses|[Ff]ixes|[Rr]esolves)\s+#(\d+)\b")


@dataclass
class InspectionResult:
    work_item: WorkItem
    pr: ChangeRequest | None = None
    worktree: Path | None = None
    latest_review: ReviewArtifact | None = None
    latest_review_time: datetime | None = None
    latest_work_time: datetime | None = None
    local_head: str | None = None
    remote_head: str | None = None
    review_current: bool | None = None
    latest_classification: ClassificationResult | None = None
    followup_issues: list[int] = field(default_factory=list)
    has_implementation: bool | None = None
    unpushed_work: bool | None = None

    @property
    def has_followup(self) -> bool:
        return bool(self.followup_issues)


def _safe(what: str, fn: Callable[[], T], default: T) -> T:
    try:
        return fn()
    except (
        github.GitHubUnavailableError,
        subprocess.CalledProcessError,
        OSError,
        ValueError,
    ) as e:
        logger.warning("Could not determine %s: %s", what, e)
        return default


def _work_time(path: Path, ref: str = "HEAD") -> tuple[bool, datetime | None]:
    """(known, time) of the newest real work commit on ``ref``."""
    try:
        return True, worktree.latest_work_commit_time(path, ref)
    except (subprocess.CalledProcessError, OSError, ValueError) as e:
        logger.warning("Could not determine latest work commit on %s: %s", ref, e)
        return False, None


def _branch_matches(branch: str, number: int) -> bool:
    return bool(
        re.search(rf"(?:^|/)(?:issue-)?{number}(?:-|$)", branch)
        or re.search(rf"issue-{number}\b", branch)
    )


def resolve_pr(prs: list[ChangeRequest], work_item: WorkItem) -> ChangeRequest | None:
    """Find the PR for a work item. First match wins:

    1. a ``Closes #N`` style linkage in the PR body
    2. the issue number in the head branch name
    3. the issue title contained in the PR title
    """
    for pr in prs:
        if work_item.number in (int(n) for n in LINKAGE_RE.findall(pr.body)):
            return pr
    for pr in prs:
        if _branch_matches(pr.branch, work_item.number):
            return pr
    title = work_item.title.strip().lower()
    if title:
        for pr in prs:
            if title in pr.title.lower():
                return pr
    return None


def review_is_current(
    review_time: datetime | None,
    work_time: datetime | None,
    local_head: str | None,
    remote_head: str | None,
) -> bool:
    """Whether a review reflects the latest local work.

    A local HEAD that differs from the remote branch head means the review
    cannot have seen the local code. Otherwise the review must be strictly
    newer than the latest non-sync commit; with no such commit any review
    is current.
    """
    if local_head and remote_head and local_head != remote_head:
        return False
    if review_time is None:
        return False
    if work_time is None:
        return True
    return review_time > work_time


def _classification_from(
    artifacts: list[ReviewArtifact], review_time: datetime | None, model: str
) -> ClassificationResult | None:
    assessment = latest_of_kind(artifacts, "assessment")
    if assessment is None or review_time is None:
        return None
    assessment_time = artifact_time(assessment)
    if assessment_time is None or assessment_time < review_time:
        return None
    try:
        return parse_assessment(assessment.body, model)
    except ClassificationError as e:
        logger.warning("Ignoring unparseable assessment comment: %s", e)
        return None


class Inspector:
    def __init__(self, repo_path: Path, model: str) -> None:
        self.repo_path = repo_path
        self.model = model

    def find_pr(self, work_item: WorkItem) -> ChangeRequest | None:
        prs = _safe("open PRs", lambda: github.list_prs(self.repo_path), [])
        return resolve_pr(prs, work_item)

    def inspect(self, work_item: WorkItem) -> InspectionResult:
        result = InspectionResult(work_item=work_item)
        pr = self.find_pr(work_item)
        result.pr = pr
        if pr is None:
            return result

        result.remote_head = pr.head_oid or None
        result.worktree = _safe(
            "worktree", lambda: worktree.find_worktree(self.repo_path, pr.branch), None
        )

        comments = _safe(
            f"comments on PR #{pr.number}",
            lambda: github.pr_comments(self.repo_path, pr.number),
            [],
        )
        artifacts = artifacts_from_comments(comments)
        result.latest_review = latest_of_kind(artifacts, "review")
        if result.latest_review is not None:
            result.latest_review_time = artifact_time(result.latest_review)
        result.followup_issues = followup_issue_numbers(artifacts)
        result.latest_classification = _classification_from(
            artifacts, result.latest_review_time, self.model
        )

        work_time_known = False
        if result.worktree is not None and not result.worktree.exists():
            logger.warning(
                "Worktree %s is registered but missing; local state unknown",
                result.worktree,
            )
        elif result.worktree is not None:
            path = result.worktree
            result.local_head = _safe(
                "local HEAD", lambda: worktree.head_oid(path), None
            )
            work_time_known, result.latest_work_time = _work_time(path)
            result.has_implementation = _safe(
                "implementation",
                lambda: worktree.has_diff_against(path, pr.base),
                None,
            )
            dirty = _safe(
                "uncommitted changes",
                lambda: worktree.has_uncommitted_changes(path, check=True),
                None,
            )
            if dirty:
                result.unpushed_work = True
            elif dirty is None or result.local_head is None:
                result.unpushed_work = None
            else:
                result.unpushed_work = (
                    result.remote_head is not None
                    and result.local_head != result.remote_head
                )
        else:
            files = _safe(
                f"files of PR #{pr.number}",
                lambda: github.pr_files(self.repo_path, pr.number),
                None,
            )
            result.has_implementation = None if files is None else bool(files)
            result.unpushed_work = False
            if worktree.fetch(self.repo_path, pr.branch):
                work_time_known, result.latest_work_time = _work_time(
                    self.repo_path, f"origin/{pr.branch}"
                )

        if result.latest_review_time is not None:
            if work_time_known:
                result.review_current = review_is_current(
                    result.latest_review_time,
                    result.latest_work_time,
                    result.local_head,
                    result.remote_head,
                )
            elif (
                result.local_head
                and result.remote_head
                and result.local_head != result.remote_head
            ):
                result.review_current = False
        return result
