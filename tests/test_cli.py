from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from rite import session
from rite.blockers import BlockedError
from rite.cli import cli
from rite.config import Config
from rite.inspector import InspectionResult
from rite.models import (
    BlockerDecision,
    ClassificationItem,
    Escalate,
    FixAndRetry,
    ItemState,
    Merge,
    Phase,
    StaleReroute,
    WorkflowSnapshot,
)
from rite.orchestrator import PhaseError, RunContext, UndoReport, WorkflowInterrupted
from rite.snapshot import load_snapshot, save_snapshot


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path):
    path = tmp_path / "project"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def orchestrator(project):
    """Patch the Orchestrator used by the CLI and return the instance."""
    instance = MagicMock()
    instance.config = Config.load(project)
    with patch("rite.cli.workflow.Orchestrator", return_value=instance):
        yield instance


def test_help(runner):
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "batch", "assess", "review", "merge", "undo", "status"):
        assert command in result.output


def test_run_completes(runner, orchestrator, project, work_item, pr):
    orchestrator.run.return_value = RunContext(
        work_item=work_item, auto=True, phase=Phase.COMPLETION, pr=pr
    )
    result = runner.invoke(cli, ["run", "42", "--auto", "--repo", str(project)])
    assert result.exit_code == 0, result.output
    assert "#42 complete (PR #7)" in result.output
    orchestrator.run.assert_called_once_with(42)


def test_run_bypass_sets_config(runner, orchestrator, project, work_item):
    orchestrator.run.return_value = RunContext(work_item=work_item, auto=True)
    with patch("rite.cli.workflow.Orchestrator") as factory:
        factory.return_value = orchestrator
        runner.invoke(
            cli, ["run", "42", "--auto", "--bypass-blockers", "--repo", str(project)]
        )
    config = factory.call_args.args[0]
    assert config.bypass_blockers is True


def test_run_failure_prints_resume_command(runner, orchestrator, project):
    orchestrator.run.side_effect = PhaseError(Phase.DEVELOPMENT, "no changes", 42)
    result = runner.invoke(cli, ["run", "42", "--auto", "--repo", str(project)])
    assert result.exit_code == 1
    assert "development failed: no changes" in result.output
    assert "Resume with: rite run 42 --auto" in result.output


def test_run_interrupted_exits_130(runner, orchestrator, project):
    snapshot = WorkflowSnapshot(work_item=42, phase=Phase.PUSH_REVIEW)
    orchestrator.run.side_effect = WorkflowInterrupted(snapshot)
    result = runner.invoke(cli, ["run", "42", "--repo", str(project)])
    assert result.exit_code == 130
    assert "Resume with: rite run 42" in result.output


@pytest.mark.parametrize(
    "outcome, code",
    [
        (Merge(), 0),
        (Escalate(issue=5), 1),
        (StaleReroute("old"), 3),
    ],
)
def test_assess_exit_codes(
    runner, orchestrator, project, work_item, pr, outcome, code
):
    orchestrator.prepare.return_value = RunContext(work_item=work_item, auto=False)
    orchestrator.inspector.inspect.return_value = InspectionResult(
        work_item=work_item, pr=pr
    )
    orchestrator.assessor.assess.return_value = outcome
    result = runner.invoke(cli, ["assess", "42", "--repo", str(project)])
    assert result.exit_code == code, result.output


def test_assess_fix_prints_items_and_bumps_retry(
    runner, orchestrator, project, work_item, pr
):
    item = ClassificationItem(
        title="Null check",
        state=ItemState.ACTIONABLE_NOW,
        severity="HIGH",
        reasoning="Crashes.",
    )
    orchestrator.prepare.return_value = RunContext(
        work_item=work_item, auto=False, retry_count=1, pr=pr
    )
    orchestrator.inspector.inspect.return_value = InspectionResult(
        work_item=work_item, pr=pr
    )
    orchestrator.assessor.assess.return_value = FixAndRetry(items=[item])

    result = runner.invoke(cli, ["assess", "42", "--repo", str(project)])

    assert result.exit_code == 2
    assert "### Null check - ACTIONABLE_NOW" in result.output
    snapshot = load_snapshot(orchestrator.config.state_dir, 42)
    assert snapshot.retry_count == 2
    assert snapshot.phase == Phase.DEVELOPMENT
    args = orchestrator.assessor.assess.call_args.args
    assert args[2] == 1


def test_assess_without_pr(runner, orchestrator, project, work_item):
    orchestrator.prepare.return_value = RunContext(work_item=work_item, auto=False)
    orchestrator.inspector.inspect.return_value = InspectionResult(work_item=work_item)
    result = runner.invoke(cli, ["assess", "42", "--repo", str(project)])
    assert result.exit_code == 1
    assert "No open PR for #42" in result.output


def test_batch_continues_after_failure_and_stops_on_batch_blocker(
    runner, orchestrator, project, work_item
):
    blocked = BlockedError(
        BlockerDecision(type="credentials_expired", urgency="normal", work_item=3)
    )
    orchestrator.run.side_effect = [
        RunContext(work_item=work_item, auto=True),
        PhaseError(Phase.MERGE, "checks failing", 2),
        blocked,
    ]

    result = runner.invoke(
        cli, ["batch", "1", "2", "3", "4", "--auto", "--repo", str(project)]
    )

    assert result.exit_code == 1
    assert [c.args[0] for c in orchestrator.run.call_args_list] == [1, 2, 3]
    assert "stopping" in result.output
    assert "1 completed, 2 failed, 1 not started" in result.output
    assert session.load_session(orchestrator.config) is None


def test_batch_respects_session_budget(runner, orchestrator, project, work_item):
    orchestrator.config.max_issues_per_session = 1

    def run(issue):
        session.record_completion(orchestrator.config, issue)
        return RunContext(work_item=work_item, auto=True)

    orchestrator.run.side_effect = run
    result = runner.invoke(cli, ["batch", "1", "2", "--repo", str(project)])

    assert result.exit_code == 0, result.output
    assert "Stopping before #2" in result.output
    assert orchestrator.run.call_count == 1


def test_merge_phase_command(runner, orchestrator, project, work_item):
    orchestrator.run_phase.return_value = RunContext(
        work_item=work_item, auto=False, phase=Phase.COMPLETION
    )
    result = runner.invoke(cli, ["merge", "42", "--repo", str(project)])
    assert result.exit_code == 0
    assert "Merged #42." in result.output
    orchestrator.run_phase.assert_called_once_with(42, Phase.MERGE)


def test_review_phase_command(runner, orchestrator, project):
    result = runner.invoke(cli, ["review", "42", "--repo", str(project)])
    assert result.exit_code == 0
    orchestrator.run_phase.assert_called_once_with(42, Phase.PUSH_REVIEW)


def test_undo_requires_confirmation(runner, project):
    with patch("rite.cli.workflow.undo") as mock_undo:
        result = runner.invoke(cli, ["undo", "42", "--repo", str(project)], input="n\n")
    assert result.exit_code == 1
    mock_undo.assert_not_called()


def test_undo_reports(runner, project):
    report = UndoReport(pr_number=7, closed_issues=[101], reopened=True)
    with patch("rite.cli.workflow.undo", return_value=report) as mock_undo:
        result = runner.invoke(cli, ["undo", "42", "--yes", "--repo", str(project)])
    assert result.exit_code == 0
    assert "Closed PR #7." in result.output
    assert "Closed follow-up #101." in result.output
    assert "Reopened #42." in result.output
    assert mock_undo.call_args.args[2] == 42


def test_status_lists_snapshots(runner, project):
    config = Config.load(project)
    save_snapshot(
        config.state_dir,
        WorkflowSnapshot(work_item=42, phase=Phase.ASSESS_RESOLVE, retry_count=1),
    )
    result = runner.invoke(cli, ["status", "--repo", str(project)])
    assert result.exit_code == 0
    assert "#42" in result.output
    assert "assess_resolve" in result.output


def test_status_empty(runner, project):
    result = runner.invoke(cli, ["status", "--repo", str(project)])
    assert result.exit_code == 0
    assert "No interrupted or in-flight issues." in result.output


def test_status_for_issue(runner, project, work_item, pr):
    inspection = InspectionResult(
        work_item=work_item,
        pr=pr,
        has_implementation=True,
        unpushed_work=True,
    )
    with (
        patch("rite.cli.info.github.get_issue", return_value=work_item),
        patch("rite.cli.info.Inspector") as inspector_cls,
    ):
        inspector_cls.return_value.inspect.return_value = inspection
        result = runner.invoke(cli, ["status", "42", "--repo", str(project)])
    assert result.exit_code == 0, result.output
    assert "#7 rite/issue-42-fix-login-redirect -> main" in result.output
    assert "Next:      push_review" in result.output


def test_config_shows_default(runner):
    result = runner.invoke(cli, ["config"])
    assert result.exit_code == 0
    assert "[workflow]" in result.output


def test_init_ignores_state_dir(runner, project):
    (project / ".gitignore").write_text("node_modules/")
    for _ in range(2):
        result = runner.invoke(cli, ["init", "--repo", str(project)])
        assert result.exit_code == 0
    assert (project / ".rite").is_dir()
    assert (project / ".gitignore").read_text() == "node_modules/\n.rite/\n"
