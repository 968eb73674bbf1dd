"""
Pytest configuration and fixtures.
"""

import asyncio
import pytest

from scenario_runner.config import RunnerConfig
from scenario_runner.driver import DryRunDriver
from scenario_runner.session import SessionContext


@pytest.fixture
def fake_app(tmp_path):
    """An existing file standing in for the application executable."""
    path = tmp_path / "bin" / "code"
    path.parent.mkdir(parents=True)
    path.write_text("#!/bin/sh\n")
    return path


@pytest.fixture
def runner_config(tmp_path, fake_app):
    """Config with storage under tmp_path and no launch delays."""
    return RunnerConfig(
        storage={"base_path": str(tmp_path / "storage")},
        session={
            "app_path": str(fake_app),
            "settle_delay_seconds": 0,
            "launch_timeout_seconds": 1,
            "ready_timeout_seconds": 1,
        },
        health={"interval_seconds": 0.05, "timeout_seconds": 0.05, "max_failures": 3},
        retry={"initial_delay_seconds": 0, "max_delay_seconds": 0},
        orchestration={"milestone_retry_delay_seconds": 0},
    )


class ScriptedDriver(DryRunDriver):
    """
    DryRunDriver with scripted step failures and delays.

    failures maps a step id to either an exception raised on every call or a
    list of exceptions consumed one per call (None in the list means succeed).
    """

    def __init__(self, failures=None, delays=None, **kwargs):
        super().__init__(**kwargs)
        self.failures = dict(failures or {})
        self.delays = dict(delays or {})
        self.calls = {}
        self.running = 0
        self.max_running = 0

    async def execute_step(self, step, session):
        self.calls[step.id] = self.calls.get(step.id, 0) + 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if step.id in self.delays:
                await asyncio.sleep(self.delays[step.id])
            script = self.failures.get(step.id)
            if isinstance(script, list):
                error = script.pop(0) if script else None
            else:
                error = script
            if error is not None:
                raise error
            return await super().execute_step(step, session)
        finally:
            self.running -= 1


@pytest.fixture
def driver():
    """Scripted dry-run driver."""
    return ScriptedDriver()


@pytest.fixture
def make_driver():
    """Factory for scripted drivers."""
    return ScriptedDriver


@pytest.fixture
def session():
    """A live session context without an application behind it."""
    return SessionContext(id="default")
