from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from rite import github, session
from rite.config import get_config
from rite.inspector import Inspector
from rite.orchestrator import determine_resume_phase, reconcile_snapshot
from rite.snapshot import list_snapshots, load_snapshot

from rite.cli.utils import _resolve_repo, _workflow_errors


def _yes_no(value: bool | None) -> str:
    if value is None:
        return "unknown"
    return "yes" if value else "no"


@click.command()
@click.argument("issue", type=int, required=False)
@click.option("-r", "--repo", "repo_path", default=None, help="Target repo path.")
def status(issue: int | None, repo_path: str | None) -> None:
    """Show where ISSUE stands, or list saved snapshots and the session budget."""
    repo = _resolve_repo(repo_path)
    config = get_config(repo)

    if issue is None:
        _print_overview(config)
        return

    with _workflow_errors():
        work_item = github.get_issue(repo, issue)
        inspection = Inspector(repo, config.review_model).inspect(work_item)
    phase, tracking_only = determine_resume_phase(inspection)
    snapshot = reconcile_snapshot(load_snapshot(config.state_dir, issue), inspection)

    click.echo(f"Issue:     #{work_item.number} {work_item.title} ({work_item.state})")
    if inspection.pr is not None:
        pr = inspection.pr
        draft = " draft" if pr.draft else ""
        click.echo(f"PR:        #{pr.number} {pr.branch} -> {pr.base}{draft}")
    else:
        click.echo("PR:        none")
    if inspection.worktree is not None:
        click.echo(f"Worktree:  {inspection.worktree}")
    if inspection.latest_review_time is not None:
        click.echo(
            f"Review:    {inspection.latest_review_time:%Y-%m-%d %H:%M} UTC "
            f"(current: {_yes_no(inspection.review_current)})"
        )
    classification = inspection.latest_classification
    if classification is not None:
        click.echo(
            f"Assessed:  {len(classification.now)} now, "
            f"{len(classification.later)} later, "
            f"{len(classification.dismissed)} dismissed"
        )
    if inspection.followup_issues:
        issues = ", ".join(f"#{n}" for n in inspection.followup_issues)
        click.echo(f"Follow-up: {issues}")
    click.echo(f"Unpushed:  {_yes_no(inspection.unpushed_work)}")
    suffix = " (tracking issue pending)" if tracking_only else ""
    click.echo(f"Next:      {phase.value}{suffix}")
    if snapshot is not None:
        click.echo(
            f"Snapshot:  {snapshot.phase.value}, retry {snapshot.retry_count}"
            f"/{config.max_retries}, saved {snapshot.timestamp}"
        )


def _print_overview(config) -> None:
    snapshots = list_snapshots(config.state_dir)
    if not snapshots:
        click.echo("No interrupted or in-flight issues.")
    else:
        table = Table(title="Workflow snapshots")
        table.add_column("Issue", justify="right")
        table.add_column("Phase")
        table.add_column("Retry", justify="right")
        table.add_column("PR", justify="right")
        table.add_column("Mode")
        table.add_column("Saved")
        for snap in snapshots:
            table.add_row(
                f"#{snap.work_item}",
                snap.phase.value,
                f"{snap.retry_count}/{config.max_retries}",
                f"#{snap.pr_number}" if snap.pr_number else "-",
                snap.mode,
                snap.timestamp,
            )
        Console().print(table)

    state = session.load_session(config)
    if state is not None:
        budget = session.check_limits(config, state)
        click.echo(
            f"Session ({state.mode}): {budget.processed}/"
            f"{config.max_issues_per_session} issues, "
            f"{budget.elapsed_hours:.1f}/{config.max_session_hours}h"
            + ("" if budget.ok else f" - exhausted: {budget.reason}")
        )
