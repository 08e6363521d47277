from __future__ import annotations

import sys

import click

from rite import session
from rite.assessment import exit_code, format_items
from rite.blockers import BlockedError
from rite.config import get_config
from rite.models import FixAndRetry, Phase
from rite.orchestrator import Orchestrator, PhaseError, resume_command, undo
from rite.snapshot import load_snapshot, save_snapshot

from rite.cli.utils import _resolve_repo, _workflow_errors

repo_option = click.option(
    "-r",
    "--repo",
    "repo_path",
    default=None,
    help="Target repo path (default: current git repo).",
)
auto_option = click.option(
    "--auto", is_flag=True, help="Unsupervised mode: never prompt."
)


def _orchestrator(
    repo_path: str | None, auto: bool, bypass: bool = False
) -> Orchestrator:
    repo = _resolve_repo(repo_path)
    config = get_config(repo)
    if bypass:
        config.bypass_blockers = True
    return Orchestrator(config, repo, auto)


@click.command()
@click.argument("issue", type=int)
@auto_option
@click.option(
    "--bypass-blockers",
    is_flag=True,
    help="In --auto mode, continue past approval-requiring blockers.",
)
@repo_option
def run(issue: int, auto: bool, bypass_blockers: bool, repo_path: str | None) -> None:
    """Drive ISSUE from development through merge, resuming where it left off."""
    orchestrator = _orchestrator(repo_path, auto, bypass_blockers)
    with _workflow_errors(issue, auto):
        ctx = orchestrator.run(issue)
    if ctx.pr is not None:
        click.echo(f"#{issue} complete (PR #{ctx.pr.number}).")
    else:
        click.echo(f"#{issue} is already closed; nothing to do.")


@click.command()
@click.argument("issues", type=int, nargs=-1, required=True)
@auto_option
@repo_option
def batch(issues: tuple[int, ...], auto: bool, repo_path: str | None) -> None:
    """Process several ISSUES in order under the session budget."""
    orchestrator = _orchestrator(repo_path, auto)
    config = orchestrator.config
    session.start_session(config, "auto" if auto else "supervised")

    completed: list[int] = []
    failed: list[int] = []
    try:
        for issue in issues:
            try:
                session.require_budget(config)
            except session.SessionBudgetExceeded as e:
                click.echo(f"Stopping before #{issue}: {e.reason}", err=True)
                break
            try:
                orchestrator.run(issue)
                completed.append(issue)
            except BlockedError as e:
                failed.append(issue)
                click.echo(f"#{issue}: {e}", err=True)
                if e.blocks_batch:
                    click.echo("Blocker affects the whole batch; stopping.", err=True)
                    break
            except PhaseError as e:
                failed.append(issue)
                click.echo(f"#{issue}: {e}", err=True)
                click.echo(f"  Resume with: {resume_command(issue, auto)}", err=True)
    finally:
        session.end_session(config)

    click.echo(
        f"Batch done: {len(completed)} completed, {len(failed)} failed, "
        f"{len(issues) - len(completed) - len(failed)} not started."
    )
    if failed:
        raise SystemExit(1)


@click.command()
@click.argument("issue", type=int)
@auto_option
@repo_option
def review(issue: int, auto: bool, repo_path: str | None) -> None:
    """Push ISSUE's branch and request a review (phase only)."""
    orchestrator = _orchestrator(repo_path, auto)
    with _workflow_errors(issue, auto):
        orchestrator.run_phase(issue, Phase.PUSH_REVIEW)
    click.echo(f"Review requested for #{issue}.")


@click.command()
@click.argument("issue", type=int)
@auto_option
@repo_option
def assess(issue: int, auto: bool, repo_path: str | None) -> None:
    """Assess the latest review of ISSUE's PR (phase only).

    Exit codes: 0 ready to merge, 1 manual intervention required,
    2 fix and loop (items on stdout), 3 review is stale.
    """
    orchestrator = _orchestrator(repo_path, auto)
    config = orchestrator.config
    with _workflow_errors(issue, auto):
        ctx = orchestrator.prepare(issue)
        inspection = orchestrator.inspector.inspect(ctx.work_item)
        if inspection.pr is None:
            raise click.ClickException(f"No open PR for #{issue}.")
        ctx.pr = inspection.pr
        outcome = orchestrator.assessor.assess(
            inspection.pr, ctx.work_item, ctx.retry_count, inspection
        )

    if isinstance(outcome, FixAndRetry):
        click.echo(format_items(outcome.items))
        ctx.retry_count += 1
        ctx.phase = Phase.DEVELOPMENT
        save_snapshot(config.state_dir, ctx.snapshot())
    else:
        click.echo(type(outcome).__name__, err=True)
    sys.exit(exit_code(outcome))


@click.command()
@click.argument("issue", type=int)
@auto_option
@click.option("--bypass-blockers", is_flag=True, help="Skip approval blockers.")
@repo_option
def merge(issue: int, auto: bool, bypass_blockers: bool, repo_path: str | None) -> None:
    """Run the pre-merge gate and squash-merge ISSUE's PR (phase only)."""
    orchestrator = _orchestrator(repo_path, auto, bypass_blockers)
    with _workflow_errors(issue, auto):
        ctx = orchestrator.run_phase(issue, Phase.MERGE)
    if ctx.phase == Phase.COMPLETION:
        click.echo(f"Merged #{issue}.")
    else:
        click.echo(f"#{issue} is not ready to merge; next step: {ctx.phase.value}.")


@click.command(name="undo")
@click.argument("issue", type=int)
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation.")
@repo_option
def undo_cmd(issue: int, yes: bool, repo_path: str | None) -> None:
    """Close ISSUE's PR and follow-ups and delete its branch (unmerged only)."""
    repo = _resolve_repo(repo_path)
    config = get_config(repo)
    snapshot = load_snapshot(config.state_dir, issue)
    if snapshot is not None:
        click.echo(f"Snapshot: {snapshot.phase.value}, retry {snapshot.retry_count}")
    if not yes:
        click.confirm(
            f"Close the PR and follow-up issues for #{issue} and delete its branch?",
            abort=True,
        )
    with _workflow_errors():
        report = undo(config, repo, issue)
    if report.pr_number is not None:
        click.echo(f"Closed PR #{report.pr_number}.")
    for number in report.closed_issues:
        click.echo(f"Closed follow-up #{number}.")
    if report.reopened:
        click.echo(f"Reopened #{issue}.")
