"""Retry-bounded assessment: turn a current review into a routing decision.

The loop never merges unresolved ACTIONABLE_NOW findings silently. Once the
retry ceiling is reached they either escalate to a human (any CRITICAL) or
are demoted into a tracking issue so the work stays visible.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from rite import github
from rite.classifier import Classifier
from rite.config import Config
from rite.inspector import InspectionResult
from rite.models import (
    AssessmentOutcome,
    ChangeRequest,
    ClassificationItem,
    ClassificationResult,
    Escalate,
    FixAndRetry,
    Merge,
    StaleReroute,
    WorkItem,
)
from rite.notes import record_security_findings
from rite.review import ASSESSMENT_MARKER, parse_severity_summary

logger = logging.getLogger(__name__)

# Exit codes of `rite assess`.
EXIT_MERGE = 0
EXIT_MANUAL = 1
EXIT_FIX = 2
EXIT_STALE = 3

MANUAL_LABEL = "needs-human"


def exit_code(outcome: AssessmentOutcome) -> int:
    if isinstance(outcome, Merge):
        return EXIT_MERGE
    if isinstance(outcome, FixAndRetry):
        return EXIT_FIX
    if isinstance(outcome, StaleReroute):
        return EXIT_STALE
    return EXIT_MANUAL


def format_items(items: list[ClassificationItem]) -> str:
    blocks: list[str] = []
    for item in items:
        lines = [
            f"### {item.title} - {item.state.value}",
            "",
            f"**Severity:** {item.severity}",
            f"**Category:** {item.category}",
            f"**Reasoning:** {item.reasoning}",
        ]
        if item.fix_effort:
            lines.append(f"**Fix Effort:** {item.fix_effort}")
        if item.defer_reason:
            lines.append(f"**Defer Reason:** {item.defer_reason}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def format_assessment_comment(result: ClassificationResult, retry_count: int) -> str:
    data = json.dumps({"items": [i.to_dict() for i in result.items]})
    summary = (
        f"NOW: {len(result.now)} | LATER: {len(result.later)} | "
        f"DISMISSED: {len(result.dismissed)}"
    )
    return "\n\n".join(
        [
            f"{ASSESSMENT_MARKER} model:{result.model} retry:{retry_count} -->",
            f"## Review Assessment\n\n{summary} (source: {result.source})",
            format_items(result.items) or "_No findings._",
            f"<!-- rite-assessment-data {data} -->",
        ]
    )


def tracking_issue_title(pr_number: int) -> str:
    return f"[tech-debt] Review feedback from PR #{pr_number}"


def priority_label(items: list[ClassificationItem]) -> str:
    severities = {item.severity for item in items}
    if severities & {"CRITICAL", "HIGH"}:
        return "priority:high"
    if "MEDIUM" in severities:
        return "priority:medium"
    return "priority:low"


def tracking_issue_body(
    pr: ChangeRequest, work_item: WorkItem, items: list[ClassificationItem]
) -> str:
    lines = [
        "## Description",
        "",
        f"Review findings deferred from PR #{pr.number} (issue #{work_item.number}: "
        f"{work_item.title}).",
        "",
    ]
    for severity in ("CRITICAL", "HIGH", "MEDIUM", "LOW"):
        group = [i for i in items if i.severity == severity]
        if not group:
            continue
        lines += [f"### {severity}", ""]
        for item in group:
            reason = item.defer_reason or item.reasoning
            lines.append(f"- **{item.title}** ({item.category}): {reason}")
        lines.append("")
    lines += ["## Acceptance Criteria", ""]
    lines += [f"- [ ] {item.title}" for item in items]
    lines += [
        "",
        "## Scope Boundary",
        "",
        "Only the findings listed above. Unrelated refactors belong in their "
        "own issue.",
        "",
        "## Time Estimate",
        "",
        f"{len(items)} item(s); see individual findings.",
    ]
    return "\n".join(lines)


class Assessor:
    def __init__(
        self,
        config: Config,
        repo_path: Path,
        classifier: Classifier,
        project_context: str = "",
    ) -> None:
        self.config = config
        self.repo_path = repo_path
        self.classifier = classifier
        self.project_context = project_context

    def assess(
        self,
        pr: ChangeRequest,
        work_item: WorkItem,
        retry_count: int,
        inspection: InspectionResult,
    ) -> AssessmentOutcome:
        """Route the latest review of a PR.

        The review must be current; otherwise StaleReroute is returned
        without looking at its contents.
        """
        review = inspection.latest_review
        if review is None:
            return StaleReroute("no review found")
        if not inspection.review_current:
            return StaleReroute("review predates the latest pushed work")

        summary = parse_severity_summary(review.body)
        if summary is not None and summary.is_clean:
            logger.info("Review of PR #%s reports no findings", pr.number)
            self._post_assessment(
                pr, ClassificationResult(items=[], model="none"), retry_count
            )
            return Merge()

        result = self.classifier.classify(review.body, self.project_context, work_item)
        logger.info(
            "Assessment of PR #%s (%s): %d now, %d later, %d dismissed",
            pr.number,
            result.source,
            len(result.now),
            len(result.later),
            len(result.dismissed),
        )
        self._post_assessment(pr, result, retry_count)
        record_security_findings(self.config.state_dir, pr.number, result.items)

        now, later = result.now, result.later
        if not now and not later:
            return Merge()
        if not now:
            issue = self.ensure_tracking_issue(pr, work_item, later, inspection)
            return Merge(tracking_issue=issue)
        if retry_count < self.config.max_retries:
            return FixAndRetry(items=now + later)

        if any(item.severity == "CRITICAL" for item in now):
            issue = self.create_manual_issue(pr, work_item, now + later, retry_count)
            return Escalate(issue=issue, items=now + later)

        logger.warning(
            "Retry limit reached on PR #%s; deferring %d item(s) to a tracking issue",
            pr.number,
            len(now) + len(later),
        )
        issue = self.ensure_tracking_issue(pr, work_item, now + later, inspection)
        return Merge(tracking_issue=issue)

    def _post_assessment(
        self, pr: ChangeRequest, result: ClassificationResult, retry_count: int
    ) -> None:
        try:
            github.comment_pr(
                self.repo_path,
                pr.number,
                format_assessment_comment(result, retry_count),
            )
        except github.GitHubUnavailableError as e:
            logger.warning("Could not post assessment to PR #%s: %s", pr.number, e)

    def ensure_tracking_issue(
        self,
        pr: ChangeRequest,
        work_item: WorkItem,
        items: list[ClassificationItem],
        inspection: InspectionResult | None = None,
    ) -> int:
        """Create the tracking issue for deferred items unless one exists."""
        if inspection is not None and inspection.followup_issues:
            existing = inspection.followup_issues[-1]
            logger.info("PR #%s already has tracking issue #%s", pr.number, existing)
            return existing

        title = tracking_issue_title(pr.number)
        for issue in github.search_open_issues(self.repo_path, title):
            if issue["title"] == title:
                logger.info("Found existing tracking issue #%s", issue["number"])
                return issue["number"]

        number = github.create_issue(
            self.repo_path,
            title,
            tracking_issue_body(pr, work_item, items),
            labels=[
                self.config.followup_label,
                f"parent-pr:{pr.number}",
                priority_label(items),
            ],
        )
        github.comment_pr(
            self.repo_path,
            pr.number,
            f"<!-- rite-followup-issue:{number} -->\n"
            f"Deferred review items are tracked in #{number}.",
        )
        logger.info("Created tracking issue #%s for PR #%s", number, pr.number)
        return number

    def create_manual_issue(
        self,
        pr: ChangeRequest,
        work_item: WorkItem,
        items: list[ClassificationItem],
        retry_count: int,
    ) -> int:
        title = f"[manual-review] PR #{pr.number} needs human decision"
        for issue in github.search_open_issues(self.repo_path, title):
            if issue["title"] == title:
                return issue["number"]

        body = "\n\n".join(
            [
                f"PR #{pr.number} (issue #{work_item.number}) still has CRITICAL "
                f"findings after {retry_count} fix round(s). Merge is blocked until "
                "a human decides.",
                format_items(items),
                f"Resume with: `rite run {work_item.number}`",
            ]
        )
        number = github.create_issue(
            self.repo_path,
            title,
            body,
            labels=[MANUAL_LABEL, f"parent-pr:{pr.number}"],
        )
        github.comment_pr(
            self.repo_path,
            pr.number,
            f"<!-- rite-escalation-issue:{number} -->\n"
            f"Escalated to #{number} for manual review.",
        )
        logger.warning("Escalated PR #%s to issue #%s", pr.number, number)
        return number
