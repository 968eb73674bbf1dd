"""
Tests for the orchestrated runner.
"""

import json
import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from scenario_runner.checkpoint import CheckpointStore, OrchestratorState
from scenario_runner.errors import ErrorKind, RunnerError
from scenario_runner.events import load_run_events, RunEventType
from scenario_runner.models import MilestoneResult, MilestoneStatus, RunStatus, parse_scenario
from scenario_runner.runner import OrchestratedRunner, new_run_id
from scenario_runner.workspace import GitWorkspaceSetup


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


PLAIN = """
id: plain
name: Plain steps
steps:
  - {id: palette, action: openCommandPalette}
  - {id: type, action: typeText, args: {text: "> Reload"}}
"""

GRAPH = """
id: graph
name: Graph
orchestration:
  failureStrategy: {strategy}
  maxRetries: 1
  milestones:
    - id: a
      name: Open
      steps: [{{id: a-1, action: openCopilotChat}}]
    - id: b
      name: Ask
      dependsOn: [a]
      steps: [{{id: b-1, action: sendChatMessage, args: {{message: hi}}}}]
    - id: c
      name: Extra
      parallel: true
      critical: false
      dependsOn: [a]
      steps: [{{id: c-1, action: openSettings}}]
"""


def graph(strategy="continue"):
    return parse_scenario(GRAPH.format(strategy=strategy))


def step_error():
    return RunnerError("click missed", kind=ErrorKind.STEP_FAILED)


class TestHelpers:
    """Tests for module helpers."""

    def test_run_ids_are_unique(self):
        """Test run ids are regenerated every time."""
        ids = {new_run_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(i) == 12 for i in ids)


class TestOrchestratedRunner:
    """Tests for OrchestratedRunner."""

    def test_plain_scenario_passes(self, driver, runner_config):
        """Test a step list runs as a single milestone."""
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(parse_scenario(PLAIN)))

        assert report.passed
        assert [m.milestone_id for m in report.milestones] == ["main"]
        assert [s.step_id for s in report.steps] == ["palette", "type"]
        assert driver.executed == [("default", "palette"), ("default", "type")]
        assert driver.closed == ["default"]
        assert report.duration_ms >= 0
        assert report.end_time is not None

    def test_artifacts_written(self, driver, runner_config):
        """Test report, events, checkpoint and screenshots land on disk."""
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(parse_scenario(PLAIN)))

        report_path = runner_config.artifacts_path / report.id / OrchestratedRunner.REPORT_FILE
        assert report.artifacts["report"] == str(report_path)
        saved = json.loads(report_path.read_text())
        assert saved["status"] == "passed"
        assert saved["milestones"][0]["milestone_id"] == "main"

        assert (runner_config.checkpoints_path / "plain.json").exists()
        assert report.artifacts["screenshots"] == [report.milestones[0].screenshot]

        events = load_run_events(runner_config.artifacts_path / report.id)
        types = [e.event_type for e in events]
        assert types[0] == RunEventType.RUN_START
        assert types[-1] == RunEventType.RUN_END
        assert RunEventType.SESSION_LAUNCH in types
        assert RunEventType.CHECKPOINT_SAVED in types

    def test_critical_failure_fails_run(self, make_driver, runner_config):
        """Test dependents of a failed critical milestone are reported skipped."""
        driver = make_driver(failures={"a-1": step_error()})
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(graph()))

        assert report.status == RunStatus.FAILED
        assert report.error is None
        assert report.result_for("a").status == MilestoneStatus.FAILED
        for mid in ("b", "c"):
            skipped = report.result_for(mid)
            assert skipped.status == MilestoneStatus.SKIPPED
            assert skipped.error == "Blocked by unmet dependencies: a"

    def test_non_critical_failure_passes_run(self, make_driver, runner_config):
        """Test a failing non-critical milestone does not fail the run."""
        driver = make_driver(failures={"c-1": step_error()})
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(graph()))

        assert report.passed
        assert report.result_for("c").status == MilestoneStatus.FAILED

    def test_abort_reports_error(self, make_driver, runner_config):
        """Test abort stops the run and records why."""
        driver = make_driver(failures={"a-1": step_error()})
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(graph("abort")))

        assert report.status == RunStatus.FAILED
        assert report.error == "Critical milestone 'a' failed: Step 'a-1' failed: click missed"
        assert report.result_for("b").error.startswith("Not attempted: Critical milestone")
        assert driver.closed == ["default"]

    def test_retry_strategy(self, make_driver, runner_config):
        """Test milestone retries through the runner."""
        driver = make_driver(failures={"b-1": [step_error(), None]})
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(graph("retry")))

        assert report.passed
        assert report.result_for("b").retry_count == 1

    def test_setup_failure(self, driver, runner_config, tmp_path):
        """Test a missing application is reported, not raised."""
        runner_config.session.app_path = str(tmp_path / "no-such-app")
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(graph()))

        assert report.status == RunStatus.FAILED
        assert report.error.startswith("Setup failed: Application executable not found")
        assert all(m.status == MilestoneStatus.SKIPPED for m in report.milestones)
        assert report.result_for("a").error.startswith("Not attempted: Setup failed")
        assert driver.executed == []

    def test_total_timeout(self, make_driver, runner_config):
        """Test the run stops at its total timeout and still tears down."""
        scenario = parse_scenario("""
id: slow
name: Slow
orchestration:
  totalTimeout: 100
  milestones:
    - id: a
      name: Forever
      steps: [{id: a-1, action: wait}]
""")
        driver = make_driver(delays={"a-1": 5.0})
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(scenario))

        assert report.status == RunStatus.FAILED
        assert report.error == "Run exceeded total timeout of 100ms"
        assert report.result_for("a").status == MilestoneStatus.FAILED
        assert report.result_for("a").error.startswith("Abandoned")
        assert driver.closed == ["default"]

    def test_resume_from_checkpoint(self, driver, runner_config):
        """Test completed milestones from a checkpoint are not rerun."""
        scenario = graph()
        store = CheckpointStore(runner_config.checkpoints_path)
        prior = OrchestratorState.new("old-run", scenario.id)
        prior.mark_completed("a", MilestoneResult(milestone_id="a", name="Open", status=MilestoneStatus.PASSED))
        store.save(prior)

        runner = OrchestratedRunner(driver, runner_config)
        report = run_async(runner.run(scenario))

        assert report.passed
        assert report.id != "old-run"
        assert ("default", "a-1") not in driver.executed
        assert report.result_for("a").status == MilestoneStatus.PASSED

        saved = store.load(scenario.id)
        assert saved.run_id == report.id
        assert set(saved.completed_milestones) == {"a", "b", "c"}

    def test_fresh_ignores_checkpoint(self, driver, runner_config):
        """Test fresh runs start over."""
        scenario = graph()
        store = CheckpointStore(runner_config.checkpoints_path)
        prior = OrchestratorState.new("old-run", scenario.id)
        prior.mark_completed("a", MilestoneResult(milestone_id="a", name="Open", status=MilestoneStatus.PASSED))
        store.save(prior)

        runner = OrchestratedRunner(driver, runner_config, fresh=True)
        run_async(runner.run(scenario))

        assert ("default", "a-1") in driver.executed

    def test_explicit_checkpoint_path(self, driver, runner_config, tmp_path):
        """Test an explicit checkpoint file is used."""
        path = tmp_path / "custom" / "state.json"
        runner = OrchestratedRunner(driver, runner_config, checkpoint_path=path)

        report = run_async(runner.run(parse_scenario(PLAIN)))

        assert path.exists()
        assert report.artifacts["checkpoint"] == str(path)

    def test_evaluator(self, driver, runner_config):
        """Test the evaluator grades the final report."""
        evaluator = MagicMock()
        evaluator.evaluate = AsyncMock(return_value={"score": 4})
        runner = OrchestratedRunner(driver, runner_config, evaluator=evaluator)

        report = run_async(runner.run(parse_scenario(PLAIN)))

        assert report.evaluation == {"score": 4}
        evaluator.evaluate.assert_awaited_once()

    def test_evaluator_failure_is_logged(self, driver, runner_config):
        """Test a failing evaluator does not change the run outcome."""
        evaluator = MagicMock()
        evaluator.evaluate = AsyncMock(side_effect=RuntimeError("grader offline"))
        runner = OrchestratedRunner(driver, runner_config, evaluator=evaluator)

        report = run_async(runner.run(parse_scenario(PLAIN)))

        assert report.passed
        assert report.evaluation is None

    def test_event_handler(self, driver, runner_config):
        """Test the front end receives live events."""
        seen = []
        runner = OrchestratedRunner(driver, runner_config, event_handler=seen.append)

        run_async(runner.run(parse_scenario(PLAIN)))

        assert seen[0].event_type == RunEventType.RUN_START
        assert seen[-1].event_type == RunEventType.RUN_END

    def test_multiple_sessions(self, driver, runner_config):
        """Test declared sessions are launched, bound and torn down."""
        scenario = parse_scenario("""
id: multi
name: Multi
orchestration:
  sessions:
    - {id: left}
    - {id: right, freshProfile: false}
  milestones:
    - {id: a, name: A, session: left, steps: [{id: a-1, action: openCopilotChat}]}
    - {id: b, name: B, session: right, parallel: true, steps: [{id: b-1, action: openCopilotChat}]}
""")
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(scenario))

        assert report.passed
        assert ("left", "a-1") in driver.executed
        assert ("right", "b-1") in driver.executed
        assert sorted(driver.closed) == ["left", "right"]

        saved = CheckpointStore(runner_config.checkpoints_path).load("multi")
        assert [s.id for s in saved.sessions] == ["left", "right"]

    def test_cloned_workspace_removed_after_run(self, driver, runner_config, tmp_path):
        """Test repository clones are deleted once the run ends."""
        cloned = []

        async def fake_git(args, cwd, timeout):
            if args[:2] == ["git", "clone"]:
                Path(args[-1]).mkdir(parents=True)
                cloned.append(Path(args[-1]))
            return 0, ""

        workspace = GitWorkspaceSetup(tmp_path / "workspaces", runner=fake_git)
        scenario = parse_scenario("""
id: repo
name: Repo
orchestration:
  sessions:
    - {id: editor, repository: {url: "https://github.com/org/project.git"}}
  milestones:
    - {id: a, name: A, steps: [{id: a-1, action: openCopilotChat}]}
""")
        runner = OrchestratedRunner(driver, runner_config, workspace=workspace)

        report = run_async(runner.run(scenario))

        assert report.passed
        assert cloned == [tmp_path / "workspaces" / report.id / "project"]
        assert not (tmp_path / "workspaces" / report.id).exists()

    def test_session_crash(self, make_driver, runner_config):
        """Test a crashed session triggers a partial save and fails later milestones."""
        scenario = parse_scenario("""
id: crashy
name: Crashy
orchestration:
  milestones:
    - {id: a, name: A, critical: false, steps: [{id: a-1, action: wait}]}
    - {id: b, name: B, dependsOn: [a], steps: [{id: b-1, action: wait}]}
""")
        driver = make_driver(delays={"a-1": 0.6})
        driver.healthy = False
        runner = OrchestratedRunner(driver, runner_config)

        report = run_async(runner.run(scenario))

        assert report.result_for("b").status == MilestoneStatus.FAILED
        assert report.result_for("b").error == "No active session available"
        assert report.status == RunStatus.FAILED

        partial = runner_config.checkpoints_path / "crashy-default-PARTIAL.json"
        assert partial.exists()
        assert json.loads(partial.read_text())["state"]["recovered"] is True
