from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
import subprocess
from unittest.mock import patch

import pytest

from rite import github
from rite.inspector import Inspector, resolve_pr, review_is_current
from rite.models import ChangeRequest, WorkItem

T0 = datetime(2026, 1, 1, 12, tzinfo=timezone.utc)

REVIEW = "<!-- rite-review model:opus timestamp:2026-01-01T12:00:00Z -->\nReview"
ASSESSMENT = (
    "<!-- rite-assessment model:opus retry:0 -->\n"
    '<!-- rite-assessment-data {"items": [{"title": "Refactor", '
    '"state": "ACTIONABLE_LATER", "severity": "MEDIUM", "category": "ScopeCreep", '
    '"reasoning": "later"}]} -->'
)


def _comment(body: str, created: datetime) -> dict:
    return {
        "author": "bot",
        "body": body,
        "createdAt": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


# -- PR resolution --


def test_resolve_pr_order(work_item, pr):
    by_branch = replace(pr, number=8, body="", title="Other")
    by_title = replace(pr, number=9, branch="feature/x", body="", title="fix LOGIN redirect")
    linked = replace(pr, number=10, branch="feature/y", body="Fixes #42", title="")

    assert resolve_pr([by_title, by_branch, linked], work_item).number == 10
    assert resolve_pr([by_title, by_branch], work_item).number == 8
    assert resolve_pr([by_title], work_item).number == 9
    assert resolve_pr([], work_item) is None


def test_resolve_pr_ignores_other_numbers(work_item, pr):
    other = replace(pr, branch="rite/issue-421-other", body="Closes #421", title="")
    assert resolve_pr([other], work_item) is None


# -- Currency --


def test_review_newer_than_work_is_current():
    assert review_is_current(T0, T0 - timedelta(minutes=1), "a", "a")
    assert not review_is_current(T0, T0, "a", "a")
    assert not review_is_current(T0, T0 + timedelta(minutes=1), "a", "a")


def test_review_missing_is_not_current():
    assert not review_is_current(None, T0, None, None)


def test_no_work_commits_means_current():
    assert review_is_current(T0, None, None, None)


def test_local_head_mismatch_is_never_current():
    later_review = T0 + timedelta(days=30)
    assert not review_is_current(later_review, T0, "local", "remote")


# -- Inspection --


@pytest.fixture
def inspector(tmp_path) -> Inspector:
    return Inspector(tmp_path, "opus")


def test_inspect_without_pr(inspector, work_item):
    with patch("rite.inspector.github.list_prs", return_value=[]):
        result = inspector.inspect(work_item)
    assert result.pr is None
    assert result.review_current is None


def test_inspect_survives_github_outage(inspector, work_item):
    error = github.GitHubUnavailableError("HTTP 502")
    with patch("rite.inspector.github.list_prs", side_effect=error):
        result = inspector.inspect(work_item)
    assert result.pr is None


def _inspect_with_worktree(
    inspector: Inspector,
    work_item: WorkItem,
    pr: ChangeRequest,
    comments: list[dict],
    *,
    local_head: str,
    work_time: datetime,
    dirty: bool = False,
):
    with (
        patch("rite.inspector.github.list_prs", return_value=[pr]),
        patch("rite.inspector.github.pr_comments", return_value=comments),
        patch("rite.inspector.worktree.find_worktree", return_value=inspector.repo_path),
        patch("rite.inspector.worktree.head_oid", return_value=local_head),
        patch("rite.inspector.worktree.latest_work_commit_time", return_value=work_time),
        patch("rite.inspector.worktree.has_diff_against", return_value=True),
        patch("rite.inspector.worktree.has_uncommitted_changes", return_value=dirty),
    ):
        return inspector.inspect(work_item)


def test_inspect_current_review_with_assessment(inspector, work_item, pr):
    comments = [
        _comment(ASSESSMENT, T0 + timedelta(minutes=5)),
        _comment(REVIEW, T0),
        _comment("<!-- rite-followup-issue:77 -->", T0 + timedelta(minutes=6)),
    ]
    result = _inspect_with_worktree(
        inspector,
        work_item,
        pr,
        comments,
        local_head=pr.head_oid,
        work_time=T0 - timedelta(hours=1),
    )
    assert result.review_current is True
    assert result.unpushed_work is False
    assert result.has_implementation is True
    assert [i.title for i in result.latest_classification.later] == ["Refactor"]
    assert result.followup_issues == [77]
    assert result.has_followup


def test_inspect_local_head_mismatch_forces_stale(inspector, work_item, pr):
    result = _inspect_with_worktree(
        inspector,
        work_item,
        pr,
        [_comment(REVIEW, T0 + timedelta(days=1))],
        local_head="unpushed123",
        work_time=T0 - timedelta(hours=1),
    )
    assert result.review_current is False
    assert result.unpushed_work is True


def test_assessment_older_than_review_is_ignored(inspector, work_item, pr):
    comments = [
        _comment(ASSESSMENT, T0 - timedelta(minutes=5)),
        _comment(REVIEW, T0),
    ]
    result = _inspect_with_worktree(
        inspector,
        work_item,
        pr,
        comments,
        local_head=pr.head_oid,
        work_time=T0 - timedelta(hours=1),
    )
    assert result.latest_classification is None


def test_inspect_without_worktree_uses_remote_branch(inspector, work_item, pr):
    with (
        patch("rite.inspector.github.list_prs", return_value=[pr]),
        patch(
            "rite.inspector.github.pr_comments", return_value=[_comment(REVIEW, T0)]
        ),
        patch("rite.inspector.github.pr_files", return_value=["src/app.py"]),
        patch("rite.inspector.worktree.find_worktree", return_value=None),
        patch("rite.inspector.worktree.fetch", return_value=True),
        patch(
            "rite.inspector.worktree.latest_work_commit_time",
            return_value=T0 + timedelta(minutes=1),
        ) as mock_time,
    ):
        result = inspector.inspect(work_item)

    mock_time.assert_called_once_with(inspector.repo_path, f"origin/{pr.branch}")
    assert result.has_implementation is True
    assert result.unpushed_work is False
    assert result.review_current is False


def test_inspect_unknown_files_leaves_implementation_unknown(inspector, work_item, pr):
    with (
        patch("rite.inspector.github.list_prs", return_value=[pr]),
        patch("rite.inspector.github.pr_comments", return_value=[]),
        patch(
            "rite.inspector.github.pr_files",
            side_effect=github.GitHubUnavailableError("timeout"),
        ),
        patch("rite.inspector.worktree.find_worktree", return_value=None),
        patch("rite.inspector.worktree.fetch", return_value=False),
    ):
        result = inspector.inspect(work_item)
    assert result.has_implementation is None
    assert result.review_current is None


def test_failed_fetch_leaves_review_currency_unknown(inspector, work_item, pr):
    with (
        patch("rite.inspector.github.list_prs", return_value=[pr]),
        patch(
            "rite.inspector.github.pr_comments", return_value=[_comment(REVIEW, T0)]
        ),
        patch("rite.inspector.github.pr_files", return_value=["src/app.py"]),
        patch("rite.inspector.worktree.find_worktree", return_value=None),
        patch("rite.inspector.worktree.fetch", return_value=False),
    ):
        result = inspector.inspect(work_item)
    assert result.latest_review_time == T0
    assert result.review_current is None


def test_unreadable_log_leaves_review_currency_unknown(inspector, work_item, pr):
    error = subprocess.CalledProcessError(128, ["git", "log"])
    with (
        patch("rite.inspector.github.list_prs", return_value=[pr]),
        patch(
            "rite.inspector.github.pr_comments", return_value=[_comment(REVIEW, T0)]
        ),
        patch("rite.inspector.github.pr_files", return_value=["src/app.py"]),
        patch("rite.inspector.worktree.find_worktree", return_value=None),
        patch("rite.inspector.worktree.fetch", return_value=True),
        patch(
            "rite.inspector.worktree.latest_work_commit_time", side_effect=error
        ),
    ):
        result = inspector.inspect(work_item)
    assert result.review_current is None


def test_worktree_missing_on_disk_is_unknown(inspector, work_item, pr):
    gone = inspector.repo_path / "removed-worktree"
    with (
        patch("rite.inspector.github.list_prs", return_value=[pr]),
        patch(
            "rite.inspector.github.pr_comments", return_value=[_comment(REVIEW, T0)]
        ),
        patch("rite.inspector.worktree.find_worktree", return_value=gone),
        patch("rite.inspector.worktree.has_uncommitted_changes") as dirty,
    ):
        result = inspector.inspect(work_item)
    dirty.assert_not_called()
    assert result.worktree == gone
    assert result.local_head is None
    assert result.has_implementation is None
    assert result.unpushed_work is None
    assert result.review_current is None


def test_failing_status_leaves_unpushed_work_unknown(inspector, work_item, pr):
    error = subprocess.CalledProcessError(128, ["git", "status"])
    with (
        patch("rite.inspector.github.list_prs", return_value=[pr]),
        patch("rite.inspector.github.pr_comments", return_value=[]),
        patch("rite.inspector.worktree.find_worktree", return_value=inspector.repo_path),
        patch("rite.inspector.worktree.head_oid", return_value=pr.head_oid),
        patch("rite.inspector.worktree.latest_work_commit_time", return_value=T0),
        patch("rite.inspector.worktree.has_diff_against", return_value=True),
        patch("rite.inspector.worktree.has_uncommitted_changes", side_effect=error),
    ):
        result = inspector.inspect(work_item)
    assert result.unpushed_work is None
    assert result.has_implementation is True
