"""
Tests for the driver interface and the dry-run driver.
"""

import pytest
import asyncio

from scenario_runner.driver import ActionRegistry, DryRunDriver, LaunchOptions, RegistryDriver
from scenario_runner.errors import ErrorKind, RunnerError
from scenario_runner.models import Step
from scenario_runner.session import SessionContext


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class TestActionRegistry:
    """Tests for ActionRegistry."""

    def test_register_known_action(self):
        """Test registering a handler for a known action."""
        registry = ActionRegistry()

        @registry.handler("pressKey")
        async def press(step, session):
            return [f"pressed {step.args['key']}"]

        assert "pressKey" in registry
        assert registry.get("pressKey") is press
        assert registry.actions == ["pressKey"]

    def test_reject_unknown_action(self):
        """Test only known actions can be registered."""
        registry = ActionRegistry()

        async def handler(step, session):
            return []

        with pytest.raises(ValueError, match="unknown action"):
            registry.register("flyToMoon", handler)


class PartialDriver(RegistryDriver):
    """Registry driver with no-op checks."""

    async def launch_application(self, executable, args, options):
        raise NotImplementedError

    async def wait_for_ready(self, surface, marker, timeout):
        pass

    async def is_element_visible(self, session, selector):
        return False

    async def read_text(self, session, scope="body"):
        return ""

    async def read_notifications(self, session):
        return ""

    async def read_agent_status(self, session):
        return ""

    async def health_check(self, session):
        pass

    async def screenshot(self, session, path):
        pass

    async def close(self, session):
        pass


class TestRegistryDriver:
    """Tests for step dispatch."""

    def test_dispatch(self):
        """Test steps are dispatched to their handler."""
        driver = PartialDriver()

        @driver.registry.handler("typeText")
        async def type_text(step, session):
            return [f"typed {step.args['text']} in {session.id}"]

        step = Step(id="t", action="typeText", args={"text": "hi"})
        logs = run_async(driver.execute_step(step, SessionContext(id="s1")))

        assert logs == ["typed hi in s1"]

    def test_none_logs_become_empty(self):
        """Test handlers may return None."""
        driver = PartialDriver()
        driver.registry.register("selectAll", lambda step, session: asyncio.sleep(0))

        logs = run_async(driver.execute_step(Step(id="a", action="selectAll"), SessionContext(id="s1")))

        assert logs == []

    def test_missing_handler(self):
        """Test actions without a handler fail with STEP_FAILED."""
        driver = PartialDriver()

        with pytest.raises(RunnerError) as exc_info:
            run_async(driver.execute_step(Step(id="a", action="hover"), SessionContext(id="s1")))

        assert exc_info.value.kind == ErrorKind.STEP_FAILED

    def test_step_timeout(self):
        """Test a step exceeding its timeout raises a recoverable TIMEOUT."""
        driver = PartialDriver()

        @driver.registry.handler("wait")
        async def slow(step, session):
            await asyncio.sleep(1)
            return []

        step = Step.model_validate({"id": "slow", "action": "wait", "timeout": 20})
        with pytest.raises(RunnerError) as exc_info:
            run_async(driver.execute_step(step, SessionContext(id="s1")))

        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert exc_info.value.recoverable
        assert "20ms" in str(exc_info.value)


class TestDryRunDriver:
    """Tests for DryRunDriver."""

    def test_every_known_action_succeeds(self):
        """Test dry runs simulate every action."""
        driver = DryRunDriver()
        session = SessionContext(id="s1")

        logs = run_async(driver.execute_step(
            Step(id="msg", action="sendChatMessage", args={"message": "hello"}),
            session,
        ))

        assert logs == ["[dry-run] sendChatMessage {'message': 'hello'}"]
        assert driver.executed == [("s1", "msg")]

    def test_launch_and_ready(self):
        """Test launch returns handles and readiness follows the visible set."""
        driver = DryRunDriver()

        launched = run_async(driver.launch_application("/bin/code", ["--x"], LaunchOptions()))
        assert launched.app["executable"] == "/bin/code"

        run_async(driver.wait_for_ready(launched.surface, ".monaco-workbench", 1.0))
        with pytest.raises(RunnerError):
            run_async(driver.wait_for_ready(launched.surface, ".other", 1.0))

    def test_health_check(self):
        """Test unhealthy dry-run sessions raise APP_CRASHED."""
        driver = DryRunDriver()
        session = SessionContext(id="s1")
        run_async(driver.health_check(session))

        driver.healthy = False
        with pytest.raises(RunnerError) as exc_info:
            run_async(driver.health_check(session))
        assert exc_info.value.kind == ErrorKind.APP_CRASHED

    def test_screenshot_writes_file(self, tmp_path):
        """Test screenshots create the target file."""
        driver = DryRunDriver()
        path = tmp_path / "shots" / "a.png"

        run_async(driver.screenshot(SessionContext(id="s1"), path))

        assert path.exists()
