"""Phase orchestrator: drives one issue from development to merge.

Where to start is always decided from live GitHub and git state. The
snapshot under .rite/ only carries the retry counter and a phase hint, and
is discarded when it disagrees with what the PR actually shows.
"""

from __future__ import annotations

import logging
import signal
import subprocess
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import FrameType

import click

from rite import github, session, worktree
from rite.assessment import Assessor
from rite.blockers import (
    PRE_MERGE,
    PRE_START,
    BlockedError,
    BlockerGate,
    detect_sensitivity,
)
from rite.claude import (
    ClaudeSessionError,
    development_prompt,
    fix_prompt,
    run_development_session,
)
from rite.classifier import Classifier
from rite.config import Config
from rite.divergence import DivergenceReconciler, ReconcileStatus
from rite.inspector import InspectionResult, Inspector, resolve_pr
from rite.models import (
    BlockerDecision,
    ChangeRequest,
    ClassificationItem,
    Escalate,
    FixAndRetry,
    Merge,
    Phase,
    StaleReroute,
    WorkflowSnapshot,
    WorkItem,
)
from rite.notes import read_notes
from rite.notifications import Notifier
from rite.review import (
    artifacts_from_comments,
    escalation_issue_numbers,
    followup_issue_numbers,
    load_project_context,
    request_review,
    wait_for_review,
)
from rite.snapshot import delete_snapshot, load_snapshot, save_snapshot

logger = logging.getLogger(__name__)

MAX_REROUTES = 2
INTERRUPTED_EXIT_CODE = 130


def resume_command(work_item: int, auto: bool = False) -> str:
    return f"rite run {work_item}" + (" --auto" if auto else "")


class PhaseError(Exception):
    """Raised when a phase cannot complete and the run must stop."""

    def __init__(
        self, phase: Phase, reason: str, work_item: int | None = None
    ) -> None:
        self.phase = phase
        self.reason = reason
        self.work_item = work_item
        super().__init__(f"{phase.value} failed: {reason}")


class WorkflowInterrupted(Exception):
    """Raised after an interrupted run has saved its snapshot."""

    def __init__(self, snapshot: WorkflowSnapshot) -> None:
        self.snapshot = snapshot
        super().__init__(
            f"Interrupted #{snapshot.work_item} during {snapshot.phase.value}."
        )


class UndoRefusedError(Exception):
    """Raised when undo is not possible, e.g. the PR is already merged."""

    def __init__(self, work_item: int, reason: str) -> None:
        self.work_item = work_item
        self.reason = reason
        super().__init__(f"Cannot undo #{work_item}: {reason}")


@dataclass
class RunContext:
    work_item: WorkItem
    auto: bool
    phase: Phase = Phase.PRE_START
    retry_count: int = 0
    reroute_count: int = 0
    pr: ChangeRequest | None = None
    worktree_path: Path | None = None
    fix_items: list[ClassificationItem] = field(default_factory=list)
    tracking_only: bool = False
    needs_review: bool = False

    def snapshot(self) -> WorkflowSnapshot:
        vcs_status = ""
        if self.worktree_path is not None and self.worktree_path.exists():
            dirty = worktree.has_uncommitted_changes(self.worktree_path)
            vcs_status = "dirty" if dirty else "clean"
        return WorkflowSnapshot(
            work_item=self.work_item.number,
            phase=self.phase,
            retry_count=self.retry_count,
            pr_number=self.pr.number if self.pr else None,
            worktree_path=str(self.worktree_path) if self.worktree_path else None,
            mode="auto" if self.auto else "supervised",
            vcs_status=vcs_status,
            reroute_count=self.reroute_count,
        )


def determine_resume_phase(inspection: InspectionResult) -> tuple[Phase, bool]:
    """Map live state onto the phase to start from.

    Returns (phase, tracking_only). Missing data always maps to the earlier,
    not-yet-ready phase, except that an existing PR never sends the run
    back into development unless it is known to have no changes.
    """
    pr = inspection.pr
    if pr is None:
        if inspection.work_item.state == "CLOSED":
            return Phase.COMPLETION, False
        return Phase.DEVELOPMENT, False
    if inspection.has_implementation is False:
        return Phase.DEVELOPMENT, False
    if inspection.unpushed_work is not False or not inspection.review_current:
        return Phase.PUSH_REVIEW, False

    classification = inspection.latest_classification
    if classification is None or classification.now:
        return Phase.ASSESS_RESOLVE, False
    if classification.later and not inspection.has_followup:
        return Phase.ASSESS_RESOLVE, True
    return Phase.MERGE, False


def reconcile_snapshot(
    snapshot: WorkflowSnapshot | None, inspection: InspectionResult
) -> WorkflowSnapshot | None:
    """Keep a snapshot only if it still describes the live PR."""
    if snapshot is None:
        return None
    live_pr = inspection.pr.number if inspection.pr else None
    if snapshot.pr_number is not None and snapshot.pr_number != live_pr:
        logger.info(
            "Discarding snapshot for #%s: PR #%s is no longer open",
            snapshot.work_item,
            snapshot.pr_number,
        )
        return None
    return snapshot


@contextmanager
def _terminate_as_interrupt() -> Iterator[None]:
    """Deliver SIGTERM as KeyboardInterrupt for the duration of a run."""

    def _handler(signum: int, frame: FrameType | None) -> None:
        raise KeyboardInterrupt

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class Orchestrator:
    def __init__(
        self,
        config: Config,
        repo_path: Path,
        auto: bool,
        *,
        notifier: Notifier | None = None,
        gate: BlockerGate | None = None,
        inspector: Inspector | None = None,
        assessor: Assessor | None = None,
        reconciler: DivergenceReconciler | None = None,
        confirm: Callable[[str], bool] | None = None,
    ) -> None:
        self.config = config
        self.repo_path = repo_path
        self.auto = auto
        self.confirm = confirm or (lambda msg: click.confirm(msg, default=True))
        self.notifier = notifier or Notifier(config)
        self.gate = gate or BlockerGate(config, self.notifier, auto)
        self.inspector = inspector or Inspector(repo_path, config.review_model)
        self.assessor = assessor or Assessor(
            config,
            repo_path,
            Classifier(
                config.state_dir / "cache",
                config.review_model,
                config.assessment_timeout,
            ),
            load_project_context(repo_path),
        )
        self.reconciler = reconciler or DivergenceReconciler(config, repo_path)
        self._phases: dict[Phase, Callable[[RunContext], Phase]] = {
            Phase.DEVELOPMENT: self._phase_development,
            Phase.PUSH_REVIEW: self._phase_push_review,
            Phase.ASSESS_RESOLVE: self._phase_assess,
            Phase.MERGE: self._phase_merge,
        }

    # -- Entry points --

    def prepare(self, issue_number: int) -> RunContext:
        """PRE_START: gate checks, then work out where the issue really stands."""
        work_item = github.get_issue(self.repo_path, issue_number)
        ctx = RunContext(work_item=work_item, auto=self.auto)

        check = self.gate.check_blockers(
            PRE_START,
            issue_number,
            credentials_ok=github.auth_ok(),
            budget=session.check_limits(self.config),
        )
        if check.blocked:
            raise BlockedError(check.decision)  # type: ignore[arg-type]

        inspection = self.inspector.inspect(work_item)
        phase, tracking_only = determine_resume_phase(inspection)
        snapshot = reconcile_snapshot(
            load_snapshot(self.config.state_dir, issue_number), inspection
        )
        if snapshot is not None:
            ctx.retry_count = snapshot.retry_count
            ctx.reroute_count = snapshot.reroute_count
            if snapshot.phase != phase:
                logger.info(
                    "Snapshot says %s, live state says %s; using live state",
                    snapshot.phase.value,
                    phase.value,
                )

        ctx.phase = phase
        ctx.tracking_only = tracking_only
        ctx.pr = inspection.pr
        ctx.worktree_path = inspection.worktree
        logger.info("#%s resumes at %s", issue_number, phase.value)
        return ctx

    def run(self, issue_number: int) -> RunContext:
        """Run an issue to completion, or raise with a snapshot saved."""
        ctx = self.prepare(issue_number)
        with _terminate_as_interrupt():
            try:
                while ctx.phase != Phase.COMPLETION:
                    logger.info("Phase %s (#%s)", ctx.phase.value, issue_number)
                    ctx.phase = self._phases[ctx.phase](ctx)
            except KeyboardInterrupt:
                raise WorkflowInterrupted(self.interrupt(ctx))
            except (PhaseError, BlockedError, ClaudeSessionError):
                save_snapshot(self.config.state_dir, ctx.snapshot())
                session.record_failure(self.config, issue_number)
                raise
            except (github.GitHubUnavailableError, subprocess.CalledProcessError) as e:
                save_snapshot(self.config.state_dir, ctx.snapshot())
                session.record_failure(self.config, issue_number)
                raise PhaseError(ctx.phase, str(e), issue_number) from e
        return ctx

    def run_phase(self, issue_number: int, phase: Phase) -> RunContext:
        """Run a single phase against live state (phase-only subcommands)."""
        ctx = self.prepare(issue_number)
        if phase.order > ctx.phase.order:
            raise PhaseError(
                phase,
                f"#{issue_number} is only ready for {ctx.phase.value}",
                issue_number,
            )
        ctx.phase = self._phases[phase](ctx)
        save_snapshot(self.config.state_dir, ctx.snapshot())
        return ctx

    def interrupt(self, ctx: RunContext) -> WorkflowSnapshot:
        """Preserve in-flight work and record where the run stopped."""
        path = ctx.worktree_path
        if path is not None and worktree.has_uncommitted_changes(path):
            if self.auto or self.confirm("Commit and push uncommitted work as WIP?"):
                branch = worktree.current_branch(path) or "work branch"
                worktree.commit_all(path, f"WIP: interrupted work on {branch}")
                try:
                    worktree.push(path, branch, set_upstream=True)
                except (worktree.PushRejectedError, subprocess.CalledProcessError) as e:
                    logger.warning("WIP push failed, commit kept locally: %s", e)
        snapshot = ctx.snapshot()
        save_snapshot(self.config.state_dir, snapshot)
        return snapshot

    # -- Phases --

    def _ensure_worktree(self, ctx: RunContext) -> Path:
        if ctx.worktree_path is not None and ctx.worktree_path.exists():
            return ctx.worktree_path
        if ctx.pr is not None:
            branch, base = ctx.pr.branch, ctx.pr.base
        else:
            base = worktree.get_default_branch(self.repo_path)
            branch = worktree.branch_for_issue(
                self.config.branch_prefix, ctx.work_item.number, ctx.work_item.title
            )
        existing = worktree.find_worktree(self.repo_path, branch)
        if existing is not None:
            ctx.worktree_path = existing
        else:
            worktree.fetch(self.repo_path, base)
            ctx.worktree_path = worktree.create_worktree(
                self.repo_path, branch, self.config.worktree_dir, base=f"origin/{base}"
            )
        return ctx.worktree_path

    def _phase_development(self, ctx: RunContext) -> Phase:
        path = self._ensure_worktree(ctx)
        branch = worktree.current_branch(path) or ""
        if ctx.fix_items:
            prompt = fix_prompt(ctx.work_item, ctx.fix_items, ctx.retry_count)
            message = f"fix: address review feedback (#{ctx.work_item.number})"
        else:
            prompt = development_prompt(
                ctx.work_item, branch, read_notes(self.config.state_dir)
            )
            message = f"feat: {ctx.work_item.title} (#{ctx.work_item.number})"

        try:
            result = run_development_session(
                path,
                prompt,
                self.config.dev_model,
                self.config.claude_timeout,
                self.auto,
            )
        except ClaudeSessionError as e:
            if e.credentials_expired:
                raise BlockedError(
                    BlockerDecision(
                        type="credentials_expired",
                        urgency="normal",
                        work_item=ctx.work_item.number,
                        details=e.reason,
                    )
                )
            raise PhaseError(Phase.DEVELOPMENT, e.reason, ctx.work_item.number)
        if result.timed_out:
            raise PhaseError(
                Phase.DEVELOPMENT,
                "session timed out"
                + ("; partial work committed" if result.salvaged else ""),
                ctx.work_item.number,
            )

        worktree.commit_all(path, message)
        base = ctx.pr.base if ctx.pr else worktree.get_default_branch(self.repo_path)
        if not worktree.has_diff_against(path, base):
            raise PhaseError(
                Phase.DEVELOPMENT, "session produced no changes", ctx.work_item.number
            )
        ctx.fix_items = []
        return Phase.PUSH_REVIEW

    def _push(self, ctx: RunContext, path: Path, branch: str) -> Phase | None:
        """Push the branch. Returns a phase to jump to, or None to carry on."""
        try:
            worktree.push(path, branch, set_upstream=True)
            return None
        except worktree.PushRejectedError:
            if ctx.pr is None:
                raise PhaseError(
                    Phase.PUSH_REVIEW,
                    f"remote branch {branch} exists with unrelated history",
                    ctx.work_item.number,
                )

        result = self.reconciler.reconcile(
            path, ctx.work_item.number, ctx.pr, self.auto
        )
        if result.status == ReconcileStatus.RESTART:
            logger.warning(
                "Restarting #%s from scratch: %s", ctx.work_item.number, result.message
            )
            ctx.pr = None
            ctx.worktree_path = None
            ctx.retry_count = 0
            ctx.reroute_count = 0
            ctx.fix_items = []
            return Phase.DEVELOPMENT
        if result.status == ReconcileStatus.UNRESOLVED:
            raise PhaseError(Phase.PUSH_REVIEW, result.message, ctx.work_item.number)
        if result.status == ReconcileStatus.NEEDS_REREVIEW:
            logger.info(
                "Remote edits merged into PR #%s; it needs a fresh review", ctx.pr.number
            )
            ctx.needs_review = True
        return None

    def _phase_push_review(self, ctx: RunContext) -> Phase:
        path = self._ensure_worktree(ctx)
        branch = worktree.current_branch(path)
        if not branch:
            raise PhaseError(Phase.PUSH_REVIEW, f"no branch checked out in {path}")
        worktree.commit_all(path, f"chore: remaining changes (#{ctx.work_item.number})")

        jump = self._push(ctx, path, branch)
        if jump is not None:
            return jump

        if ctx.pr is None:
            base = worktree.get_default_branch(self.repo_path)
            ctx.pr = github.create_pr(
                self.repo_path,
                branch,
                base,
                ctx.work_item.title,
                f"Closes #{ctx.work_item.number}\n\n{ctx.work_item.body}".strip(),
            )

        inspection = self.inspector.inspect(ctx.work_item)
        if inspection.pr is not None:
            ctx.pr = inspection.pr
        if inspection.review_current and not ctx.needs_review:
            logger.info("PR #%s already has a current review", ctx.pr.number)
            return Phase.ASSESS_RESOLVE

        hints = self._sensitivity_focus(ctx.pr)
        posted = request_review(
            self.repo_path,
            ctx.pr,
            self.config.review_model,
            self.config.assessment_timeout * 5,
            hints,
        )
        if posted is None:
            raise PhaseError(
                Phase.PUSH_REVIEW, "PR has no diff to review", ctx.work_item.number
            )
        review = wait_for_review(
            self.repo_path,
            ctx.pr.number,
            inspection.latest_review_time,
            self.config.review_poll_interval,
            self.config.review_poll_max_wait,
        )
        if review is None:
            raise PhaseError(
                Phase.PUSH_REVIEW,
                f"review on PR #{ctx.pr.number} not visible after "
                f"{self.config.review_poll_max_wait}s",
                ctx.work_item.number,
            )
        ctx.needs_review = False
        return Phase.ASSESS_RESOLVE

    def _sensitivity_focus(self, pr: ChangeRequest) -> list[str]:
        try:
            files = github.pr_files(self.repo_path, pr.number)
            diff = github.pr_diff(self.repo_path, pr.number)
        except github.GitHubUnavailableError as e:
            logger.warning("Skipping sensitivity hints: %s", e)
            return []
        return [hint.focus for hint in detect_sensitivity(files, diff, self.config)]

    def _phase_assess(self, ctx: RunContext) -> Phase:
        inspection = self.inspector.inspect(ctx.work_item)
        pr = inspection.pr
        if pr is None:
            raise PhaseError(
                Phase.ASSESS_RESOLVE, "no open PR to assess", ctx.work_item.number
            )
        ctx.pr = pr

        if ctx.tracking_only and inspection.latest_classification is not None:
            self.assessor.ensure_tracking_issue(
                pr, ctx.work_item, inspection.latest_classification.later, inspection
            )
            ctx.tracking_only = False
            return Phase.MERGE

        outcome = self.assessor.assess(pr, ctx.work_item, ctx.retry_count, inspection)
        if isinstance(outcome, Merge):
            return Phase.MERGE
        if isinstance(outcome, FixAndRetry):
            ctx.retry_count += 1
            ctx.fix_items = outcome.items
            save_snapshot(self.config.state_dir, ctx.snapshot())
            logger.info(
                "Fix round %d/%d for PR #%s",
                ctx.retry_count,
                self.config.max_retries,
                pr.number,
            )
            return Phase.DEVELOPMENT
        if isinstance(outcome, StaleReroute):
            ctx.reroute_count += 1
            if ctx.reroute_count > MAX_REROUTES:
                raise PhaseError(
                    Phase.ASSESS_RESOLVE,
                    f"review stayed stale after {MAX_REROUTES} re-reviews",
                    ctx.work_item.number,
                )
            logger.info("Review is stale (%s); re-reviewing", outcome.reason)
            return Phase.PUSH_REVIEW

        if not isinstance(outcome, Escalate):
            raise TypeError(f"unexpected assessment outcome: {outcome!r}")
        self.notifier.notify_once(
            ctx.work_item.number,
            "escalation",
            f"#{ctx.work_item.number} needs a human",
            f"CRITICAL findings remain on PR #{pr.number}; see issue #{outcome.issue}",
            "high",
        )
        raise PhaseError(
            Phase.ASSESS_RESOLVE,
            f"escalated to issue #{outcome.issue} after {ctx.retry_count} fix rounds",
            ctx.work_item.number,
        )

    def _phase_merge(self, ctx: RunContext) -> Phase:
        inspection = self.inspector.inspect(ctx.work_item)
        pr = inspection.pr
        if pr is None:
            raise PhaseError(Phase.MERGE, "no open PR to merge", ctx.work_item.number)
        ctx.pr = pr
        if not inspection.review_current:
            return Phase.PUSH_REVIEW

        files = diff = None
        checks = None
        try:
            files = github.pr_files(self.repo_path, pr.number)
            diff = github.pr_diff(self.repo_path, pr.number)
            checks = github.checks_failing(self.repo_path, pr.number)
        except github.GitHubUnavailableError as e:
            logger.warning("Pre-merge data incomplete: %s", e)
        check = self.gate.check_blockers(
            PRE_MERGE,
            ctx.work_item.number,
            files=files or [],
            diff=diff or "",
            classification=inspection.latest_classification,
            checks_failing=checks,
            credentials_ok=github.auth_ok(),
        )
        if check.blocked:
            raise BlockedError(check.decision)  # type: ignore[arg-type]

        expected = pr.head_oid
        if inspection.local_head:
            if expected and inspection.local_head != expected:
                logger.warning("Local HEAD differs from PR #%s; re-pushing", pr.number)
                return Phase.PUSH_REVIEW
            expected = inspection.local_head
        if not expected:
            raise PhaseError(
                Phase.MERGE, "unknown PR head commit", ctx.work_item.number
            )

        if pr.draft:
            github.mark_ready(self.repo_path, pr.number)
        github.merge_pr(self.repo_path, pr.number, expected)
        logger.info("Merged PR #%s", pr.number)
        self._cleanup_after_merge(ctx)
        return Phase.COMPLETION

    def _cleanup_after_merge(self, ctx: RunContext) -> None:
        number = ctx.work_item.number
        try:
            if github.get_issue(self.repo_path, number).state != "CLOSED":
                github.close_issue(
                    self.repo_path, number, comment=f"Merged in PR #{ctx.pr.number}."
                )
        except github.GitHubUnavailableError as e:
            logger.warning("Could not close issue #%s: %s", number, e)

        if ctx.worktree_path is not None:
            try:
                worktree.remove_worktree(self.repo_path, ctx.worktree_path)
            except subprocess.CalledProcessError as e:
                logger.warning("Could not remove worktree: %s", e.stderr)
        if ctx.pr is not None:
            worktree.delete_branch(self.repo_path, ctx.pr.branch)

        delete_snapshot(self.config.state_dir, number)
        session.record_completion(self.config, number)


# -- Status & undo --


@dataclass
class UndoReport:
    pr_number: int | None = None
    closed_issues: list[int] = field(default_factory=list)
    reopened: bool = False


def undo(
    config: Config,
    repo_path: Path,
    issue_number: int,
    inspector: Inspector | None = None,
) -> UndoReport:
    """Revert the workflow's GitHub and git side effects for an unmerged issue."""
    inspector = inspector or Inspector(repo_path, config.review_model)
    work_item = github.get_issue(repo_path, issue_number)

    merged = resolve_pr(github.list_prs(repo_path, state="merged"), work_item)
    if merged is not None:
        raise UndoRefusedError(issue_number, f"PR #{merged.number} is already merged")

    report = UndoReport()
    pr = inspector.find_pr(work_item)
    if pr is not None:
        report.pr_number = pr.number
        label = f"parent-pr:{pr.number}"
        followups = set(github.list_issues_by_label(repo_path, label))
        artifacts = artifacts_from_comments(github.pr_comments(repo_path, pr.number))
        followups.update(followup_issue_numbers(artifacts))
        followups.update(escalation_issue_numbers(artifacts))
        for number in sorted(followups):
            try:
                github.close_issue(
                    repo_path, number, comment=f"Closed by undo of PR #{pr.number}."
                )
                report.closed_issues.append(number)
            except github.GitHubUnavailableError as e:
                logger.warning("Could not close follow-up #%s: %s", number, e)

        github.close_pr(repo_path, pr.number, comment="Closed by `rite undo`.")
        path = worktree.find_worktree(repo_path, pr.branch)
        if path is not None:
            try:
                worktree.remove_worktree(repo_path, path)
            except subprocess.CalledProcessError as e:
                logger.warning("Could not remove worktree %s: %s", path, e.stderr)
        worktree.delete_branch(repo_path, pr.branch, remote=True)

    if work_item.state == "CLOSED":
        github.reopen_issue(repo_path, issue_number)
        report.reopened = True
    delete_snapshot(config.state_dir, issue_number)
    return report
