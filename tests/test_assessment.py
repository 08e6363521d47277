from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from rite.assessment import (
    EXIT_FIX,
    EXIT_MANUAL,
    EXIT_MERGE,
    EXIT_STALE,
    Assessor,
    exit_code,
    format_assessment_comment,
    priority_label,
    tracking_issue_body,
)
from rite.classifier import Classifier, parse_assessment
from rite.claude import ClaudeSessionError
from rite.inspector import InspectionResult
from rite.models import (
    ClassificationItem,
    ClassificationResult,
    Escalate,
    FixAndRetry,
    ItemState,
    Merge,
    ReviewArtifact,
    StaleReroute,
)

CLEAN_REVIEW = "<!-- rite-review model:opus -->\nFindings: CRITICAL: 0 | HIGH: 0 | MEDIUM: 0 | LOW: 0"
DIRTY_REVIEW = "<!-- rite-review model:opus -->\nFindings: CRITICAL: 1 | HIGH: 1 | MEDIUM: 0 | LOW: 3"


def _item(title: str, state: ItemState, severity: str = "HIGH") -> ClassificationItem:
    return ClassificationItem(
        title=title, state=state, severity=severity, category="CodeQuality", reasoning="r"
    )


NOW = ItemState.ACTIONABLE_NOW
LATER = ItemState.ACTIONABLE_LATER


def _inspection(work_item, pr, review: str | None, current: bool = True, **kw):
    artifact = None
    if review is not None:
        artifact = ReviewArtifact("bot", review, "2026-01-01T12:00:00Z", "review")
    return InspectionResult(
        work_item=work_item,
        pr=pr,
        latest_review=artifact,
        latest_review_time=datetime(2026, 1, 1, 12, tzinfo=timezone.utc),
        review_current=current,
        **kw,
    )


@pytest.fixture
def classifier() -> MagicMock:
    return MagicMock(spec=Classifier)


@pytest.fixture
def assessor(config, classifier) -> Assessor:
    return Assessor(config, config.project_root, classifier)


@pytest.fixture
def gh():
    with (
        patch("rite.assessment.github.comment_pr") as comment_pr,
        patch("rite.assessment.github.search_open_issues", return_value=[]) as search,
        patch("rite.assessment.github.create_issue", return_value=101) as create,
    ):
        yield MagicMock(comment_pr=comment_pr, search=search, create_issue=create)


def _classified(*items: ClassificationItem) -> ClassificationResult:
    return ClassificationResult(items=list(items), model="opus")


def test_exit_codes():
    assert exit_code(Merge()) == EXIT_MERGE == 0
    assert exit_code(Escalate()) == EXIT_MANUAL == 1
    assert exit_code(FixAndRetry()) == EXIT_FIX == 2
    assert exit_code(StaleReroute()) == EXIT_STALE == 3


def test_stale_review_reroutes_without_classifying(assessor, classifier, gh, work_item, pr):
    outcome = assessor.assess(pr, work_item, 0, _inspection(work_item, pr, DIRTY_REVIEW, False))
    assert isinstance(outcome, StaleReroute)
    classifier.classify.assert_not_called()

    outcome = assessor.assess(pr, work_item, 0, _inspection(work_item, pr, None))
    assert isinstance(outcome, StaleReroute)


def test_clean_review_merges_without_classifying(assessor, classifier, gh, work_item, pr):
    outcome = assessor.assess(pr, work_item, 0, _inspection(work_item, pr, CLEAN_REVIEW))
    assert outcome == Merge()
    classifier.classify.assert_not_called()
    gh.comment_pr.assert_called_once()


def test_now_items_under_limit_fix_and_retry(assessor, classifier, gh, work_item, pr):
    classifier.classify.return_value = _classified(
        _item("Null check", NOW), _item("Refactor", LATER, "MEDIUM")
    )
    outcome = assessor.assess(pr, work_item, 1, _inspection(work_item, pr, DIRTY_REVIEW))
    assert isinstance(outcome, FixAndRetry)
    assert [i.title for i in outcome.items] == ["Null check", "Refactor"]
    gh.create_issue.assert_not_called()


def test_retry_limit_with_critical_escalates(assessor, classifier, gh, work_item, pr):
    classifier.classify.return_value = _classified(
        _item("SQL injection", NOW, "CRITICAL"),
        _item("Null check", NOW),
        _item("Refactor", LATER, "MEDIUM"),
    )
    outcome = assessor.assess(pr, work_item, 3, _inspection(work_item, pr, DIRTY_REVIEW))

    assert isinstance(outcome, Escalate)
    assert outcome.issue == 101
    assert [i.title for i in outcome.items] == ["SQL injection", "Null check", "Refactor"]
    title, body = gh.create_issue.call_args.args[1:3]
    assert title == f"[manual-review] PR #{pr.number} needs human decision"
    for name in ("SQL injection", "Null check", "Refactor"):
        assert name in body
    assert "needs-human" in gh.create_issue.call_args.kwargs["labels"]
    marker = gh.comment_pr.call_args_list[-1].args[2]
    assert marker.startswith("<!-- rite-escalation-issue:101 -->")


def test_retry_limit_without_critical_defers(assessor, classifier, gh, work_item, pr):
    classifier.classify.return_value = _classified(_item("Null check", NOW))
    outcome = assessor.assess(pr, work_item, 3, _inspection(work_item, pr, DIRTY_REVIEW))
    assert outcome == Merge(tracking_issue=101)
    title = gh.create_issue.call_args.args[1]
    assert title == f"[tech-debt] Review feedback from PR #{pr.number}"


def test_only_later_items_create_one_tracking_issue(assessor, classifier, gh, work_item, pr):
    later = [_item(f"Later {i}", LATER, "MEDIUM") for i in range(3)]
    classifier.classify.return_value = _classified(*later)

    outcome = assessor.assess(pr, work_item, 0, _inspection(work_item, pr, DIRTY_REVIEW))

    assert outcome == Merge(tracking_issue=101)
    gh.create_issue.assert_called_once()
    body = gh.create_issue.call_args.args[2]
    for item in later:
        assert f"- [ ] {item.title}" in body
    labels = gh.create_issue.call_args.kwargs["labels"]
    assert labels == ["tech-debt", f"parent-pr:{pr.number}", "priority:medium"]
    marker = gh.comment_pr.call_args_list[-1].args[2]
    assert marker.startswith("<!-- rite-followup-issue:101 -->")


def test_existing_tracking_issue_is_reused(assessor, classifier, gh, work_item, pr):
    classifier.classify.return_value = _classified(_item("Later", LATER))
    inspection = _inspection(work_item, pr, DIRTY_REVIEW, followup_issues=[55])
    assert assessor.assess(pr, work_item, 0, inspection) == Merge(tracking_issue=55)
    gh.create_issue.assert_not_called()

    gh.search.return_value = [
        {"number": 60, "title": f"[tech-debt] Review feedback from PR #{pr.number}"}
    ]
    inspection = _inspection(work_item, pr, DIRTY_REVIEW)
    assert assessor.assess(pr, work_item, 0, inspection) == Merge(tracking_issue=60)
    gh.create_issue.assert_not_called()


def test_unavailable_classifier_never_merges_critical(config, gh, work_item, pr):
    runner = MagicMock(
        side_effect=ClaudeSessionError("assessment", "exit 1: overloaded")
    )
    classifier = Classifier(config.state_dir / "cache", "opus", 60, runner=runner)
    review = (
        "<!-- rite-review model:opus -->\n"
        "### SQL injection in login handler\n"
        "The search term is interpolated into the query.\n\n"
        "Findings: CRITICAL: 1 | HIGH: 0 | MEDIUM: 0 | LOW: 0"
    )
    assessor = Assessor(config, config.project_root, classifier)

    outcome = assessor.assess(pr, work_item, 0, _inspection(work_item, pr, review))

    assert isinstance(outcome, FixAndRetry)
    assert [i.severity for i in outcome.items] == ["CRITICAL"]

def test_all_dismissed_merges(assessor, classifier, gh, work_item, pr):
    classifier.classify.return_value = _classified(
        _item("Style nit", ItemState.DISMISSED, "LOW")
    )
    outcome = assessor.assess(pr, work_item, 0, _inspection(work_item, pr, DIRTY_REVIEW))
    assert outcome == Merge()


def test_security_findings_are_recorded(assessor, classifier, gh, config, work_item, pr):
    item = _item("Token in logs", NOW)
    item.category = "Security"
    classifier.classify.return_value = _classified(item)
    assessor.assess(pr, work_item, 0, _inspection(work_item, pr, DIRTY_REVIEW))
    assert "Token in logs" in (config.state_dir / "notes.md").read_text()


def test_assessment_comment_parses_back():
    result = _classified(_item("Null check", NOW), _item("Refactor", LATER, "LOW"))
    body = format_assessment_comment(result, retry_count=2)
    assert body.startswith("<!-- rite-assessment model:opus retry:2 -->")
    parsed = parse_assessment(body, "opus")
    assert [(i.title, i.state) for i in parsed.items] == [
        ("Null check", NOW),
        ("Refactor", LATER),
    ]


def test_tracking_issue_body_sections(work_item, pr):
    items = [_item("A", LATER, "CRITICAL"), _item("B", LATER, "LOW")]
    body = tracking_issue_body(pr, work_item, items)
    for heading in (
        "## Description",
        "### CRITICAL",
        "### LOW",
        "## Acceptance Criteria",
        "## Scope Boundary",
        "## Time Estimate",
    ):
        assert heading in body
    assert priority_label(items) == "priority:high"
    assert priority_label([_item("C", LATER, "LOW")]) == "priority:low"
