"""
Tests for scenario definitions and result types.
"""

import pytest
from pydantic import ValidationError

from scenario_runner.errors import ScenarioParseError
from scenario_runner.models import (
    FailureStrategy,
    Milestone,
    MilestoneResult,
    MilestoneStatus,
    RunReport,
    RunStatus,
    Step,
    StepResult,
    StepStatus,
    WaitCondition,
    WaitConditionType,
    WaitResult,
    load_scenario,
    parse_scenario,
)


ORCHESTRATED = """
id: chat-basics
name: Chat basics
tags: [chat]
orchestration:
  enabled: true
  totalTimeout: 600000
  failureStrategy: retry
  maxRetries: 1
  milestones:
    - id: open
      name: Open chat
      steps:
        - id: open-chat
          action: openCopilotChat
    - id: ask
      name: Ask a question
      dependsOn: [open]
      parallel: true
      critical: false
      steps:
        - id: send
          action: sendChatMessage
          args:
            message: hello
          timeout: 5000
      waitFor:
        - type: element-present
          target: .chat-response
          timeout: 10000
          pollInterval: 500
"""


class TestStep:
    """Tests for Step validation."""

    def test_unknown_action(self):
        """Test unknown actions are rejected."""
        with pytest.raises(ValidationError, match="Unknown action"):
            Step(id="s", action="flyToMoon")

    def test_required_argument(self):
        """Test actions with required arguments."""
        with pytest.raises(ValidationError, match="message"):
            Step(id="s", action="sendChatMessage")

    def test_alternative_arguments(self):
        """Test clickElement accepts selector or target."""
        assert Step(id="s", action="clickElement", args={"target": "OK"}).args["target"] == "OK"
        assert Step(id="s", action="clickElement", args={"selector": "#ok"}).args["selector"] == "#ok"

    def test_timeout_alias(self):
        """Test timeout is read into timeout_ms."""
        step = Step.model_validate({"id": "s", "action": "wait", "timeout": 250})
        assert step.timeout_ms == 250

    def test_immutable(self):
        """Test definitions are frozen."""
        step = Step(id="s", action="wait")
        with pytest.raises(ValidationError):
            step.id = "other"


class TestWaitCondition:
    """Tests for WaitCondition validation."""

    def test_defaults(self):
        """Test default timeout and poll interval."""
        cond = WaitCondition(type="agentComplete")
        assert cond.timeout_ms == 300_000
        assert cond.poll_interval_ms == 5_000
        assert cond.timeout_seconds == 300.0
        assert cond.poll_interval_seconds == 5.0

    def test_type_aliases(self):
        """Test long-form type names are normalized."""
        cond = WaitCondition.model_validate({"type": "text-present", "expected": "Done"})
        assert cond.type == WaitConditionType.TEXT

    def test_poll_must_be_below_timeout(self):
        """Test poll interval must be shorter than the timeout."""
        with pytest.raises(ValidationError, match="pollInterval"):
            WaitCondition.model_validate({"type": "manual", "timeout": 1000, "pollInterval": 1000})

    def test_short_fixed_delay_without_interval(self):
        """Test a short fixed delay parses without an explicit poll interval."""
        scenario = parse_scenario("""
id: s
name: S
orchestration:
  milestones:
    - id: a
      name: A
      waitFor: [{type: timeout, timeout: 3000}]
""")

        cond = scenario.orchestration.milestones[0].wait_for[0]
        assert cond.type == WaitConditionType.TIMEOUT
        assert cond.timeout_ms == 3000
        assert cond.poll_interval_ms == 1500

    def test_default_interval_scales_with_timeout(self):
        """Test an unset poll interval stays below short timeouts."""
        cond = WaitCondition.model_validate({"type": "element", "target": "#ok", "timeout": 2000})
        assert cond.poll_interval_ms == 1000

        long_wait = WaitCondition.model_validate({"type": "element", "target": "#ok", "timeout": 60_000})
        assert long_wait.poll_interval_ms == 5_000

    def test_fixed_delay_ignores_interval(self):
        """Test fixed delays never poll, so any interval is accepted."""
        cond = WaitCondition.model_validate({"type": "timeout", "timeout": 1000, "pollInterval": 5000})
        assert cond.timeout_ms == 1000

    def test_element_requires_target(self):
        """Test element conditions need a selector."""
        with pytest.raises(ValidationError, match="target"):
            WaitCondition(type="element")

    def test_text_requires_expected(self):
        """Test text conditions need expected text."""
        with pytest.raises(ValidationError, match="expected"):
            WaitCondition(type="text")


class TestOrchestrationGraph:
    """Tests for milestone graph validation."""

    def test_duplicate_ids(self):
        """Test duplicate milestone ids are rejected."""
        text = """
id: s
name: S
orchestration:
  milestones:
    - {id: a, name: A}
    - {id: a, name: A again}
"""
        with pytest.raises(ScenarioParseError, match="Duplicate milestone ids: a"):
            parse_scenario(text)

    def test_unknown_dependency(self):
        """Test dependencies must name declared milestones."""
        text = """
id: s
name: S
orchestration:
  milestones:
    - {id: a, name: A, dependsOn: [ghost]}
"""
        with pytest.raises(ScenarioParseError, match="unknown milestones: ghost"):
            parse_scenario(text)

    def test_unknown_session(self):
        """Test milestones must reference declared sessions."""
        text = """
id: s
name: S
orchestration:
  sessions:
    - {id: left}
  milestones:
    - {id: a, name: A, session: right}
"""
        with pytest.raises(ScenarioParseError, match="unknown session 'right'"):
            parse_scenario(text)

    def test_cycles_are_allowed_at_parse_time(self):
        """Test cyclic graphs parse; the scheduler stops on them."""
        text = """
id: s
name: S
orchestration:
  milestones:
    - {id: a, name: A, dependsOn: [b]}
    - {id: b, name: B, dependsOn: [a]}
"""
        scenario = parse_scenario(text)
        assert [m.id for m in scenario.orchestration.milestones] == ["a", "b"]


class TestParseScenario:
    """Tests for scenario parsing."""

    def test_orchestrated(self):
        """Test a full orchestrated scenario."""
        scenario = parse_scenario(ORCHESTRATED)

        assert scenario.is_orchestrated
        orch = scenario.orchestration
        assert orch.failure_strategy == FailureStrategy.RETRY
        assert orch.max_retries == 1
        assert orch.total_timeout_ms == 600000

        ask = orch.milestones[1]
        assert ask.depends_on == ("open",)
        assert ask.parallel
        assert not ask.critical
        assert ask.steps[0].timeout_ms == 5000
        assert ask.wait_for[0].type == WaitConditionType.ELEMENT
        assert ask.wait_for[0].poll_interval_ms == 500

    def test_milestone_defaults(self):
        """Test milestones are critical, sequential and screenshotted by default."""
        m = Milestone(id="m", name="M")
        assert m.critical
        assert not m.parallel
        assert m.screenshot
        assert m.depends_on == ()

    def test_plain_steps_become_main_milestone(self):
        """Test a step list runs as one milestone."""
        scenario = parse_scenario("""
id: plain
name: Plain
steps:
  - {id: one, action: openCommandPalette}
  - {id: two, action: pressKey, args: {key: Escape}}
""")
        assert not scenario.is_orchestrated

        orch = scenario.effective_orchestration()
        assert len(orch.milestones) == 1
        main = orch.milestones[0]
        assert main.id == "main"
        assert main.name == "Plain"
        assert [s.id for s in main.steps] == ["one", "two"]
        assert main.critical

    def test_disabled_orchestration_runs_steps(self):
        """Test disabled orchestration falls back to the step list."""
        scenario = parse_scenario("""
id: s
name: S
steps:
  - {id: one, action: openCommandPalette}
orchestration:
  enabled: false
  maxRetries: 4
  milestones:
    - {id: a, name: A}
""")
        orch = scenario.effective_orchestration()
        assert [m.id for m in orch.milestones] == ["main"]
        assert orch.max_retries == 4

    def test_no_work(self):
        """Test scenarios must define steps or milestones."""
        with pytest.raises(ScenarioParseError, match="no steps or milestones"):
            parse_scenario("id: s\nname: S\n")

    def test_disabled_orchestration_without_steps(self):
        """Test disabled milestones with no step list are rejected instead of passing empty."""
        with pytest.raises(ScenarioParseError, match="Orchestration is disabled"):
            parse_scenario("""
id: s
name: S
orchestration:
  enabled: false
  milestones:
    - id: a
      name: A
      steps: [{id: a-1, action: typeText, args: {text: hi}}]
""")

    def test_invalid_yaml(self):
        """Test YAML syntax errors."""
        with pytest.raises(ScenarioParseError, match="Invalid YAML"):
            parse_scenario("id: [unclosed", source="bad.yaml")

    def test_not_a_mapping(self):
        """Test non-mapping documents."""
        with pytest.raises(ScenarioParseError, match="must be a mapping"):
            parse_scenario("- just\n- a list\n")

    def test_error_location(self):
        """Test validation errors name the offending field."""
        with pytest.raises(ScenarioParseError) as exc_info:
            parse_scenario("""
id: s
name: S
steps:
  - {id: one, action: teleport}
""")
        assert "steps.0.action" in exc_info.value.message

    def test_load_scenario(self, tmp_path):
        """Test loading from a file."""
        path = tmp_path / "chat.yaml"
        path.write_text(ORCHESTRATED)

        scenario = load_scenario(path)
        assert scenario.id == "chat-basics"

    def test_load_missing_file(self, tmp_path):
        """Test missing files raise a parse error."""
        with pytest.raises(ScenarioParseError, match="Cannot read"):
            load_scenario(tmp_path / "missing.yaml")


class TestResults:
    """Tests for result types."""

    def test_terminal_statuses(self):
        """Test which milestone statuses are terminal."""
        assert MilestoneStatus.PASSED.is_terminal
        assert MilestoneStatus.FAILED.is_terminal
        assert MilestoneStatus.SKIPPED.is_terminal
        assert not MilestoneStatus.RUNNING.is_terminal
        assert not MilestoneStatus.WAITING.is_terminal

    def test_milestone_result_from_dict(self):
        """Test milestone results restore nested records."""
        result = MilestoneResult(
            milestone_id="m",
            name="M",
            status=MilestoneStatus.FAILED,
            step_results=[StepResult(step_id="s", status=StepStatus.FAILED, start_time="t", error="x")],
            wait_results=[WaitResult(condition_type="element", passed=False, wait_time_ms=10)],
            retry_count=2,
            error="x",
        )

        d = result.to_dict()
        assert d["status"] == "failed"
        assert d["step_results"][0]["status"] == "failed"

        restored = MilestoneResult.from_dict(d)
        assert restored.status == MilestoneStatus.FAILED
        assert restored.step_results[0].error == "x"
        assert restored.wait_results[0].wait_time_ms == 10
        assert restored.retry_count == 2

    def test_report_lookup(self):
        """Test report helpers."""
        report = RunReport(
            id="r",
            scenario_id="s",
            scenario_name="S",
            status=RunStatus.PASSED,
            start_time="t",
            milestones=[MilestoneResult(milestone_id="a", name="A", status=MilestoneStatus.PASSED)],
        )
        assert report.passed
        assert report.result_for("a").name == "A"
        assert report.result_for("b") is None
        assert report.to_dict()["milestones"][0]["status"] == "passed"
