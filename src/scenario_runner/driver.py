"""
UI automation driver interface.

The runner never touches the application directly. Everything it needs from
the automation backend (launching, step execution, checks behind wait
conditions, health round-trips, screenshots) goes through AutomationDriver.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from scenario_runner.errors import ErrorKind, RunnerError
from scenario_runner.logging import get_logger
from scenario_runner.models import KNOWN_ACTIONS, Step

if TYPE_CHECKING:
    from scenario_runner.session import SessionContext

logger = get_logger(__name__)


@dataclass
class LaunchOptions:
    """Options passed to the driver when starting the application."""

    timeout: float = 60.0
    env: dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None


@dataclass
class LaunchedApplication:
    """Handles returned by a successful launch."""

    app: Any
    surface: Any
    pid: Optional[int] = None


class AutomationDriver(ABC):
    """Abstract automation backend."""

    @abstractmethod
    async def launch_application(
        self,
        executable: str,
        args: list[str],
        options: LaunchOptions,
    ) -> LaunchedApplication:
        """Start the application and return its handles."""

    @abstractmethod
    async def wait_for_ready(self, surface: Any, marker: str, timeout: float) -> None:
        """Block until the readiness marker is visible; raise on timeout."""

    @abstractmethod
    async def execute_step(self, step: Step, session: "SessionContext") -> list[str]:
        """
        Perform one step against a session.

        Returns log lines produced by the step. Raises on failure; raise a
        RunnerError with an ErrorKind when the failure kind is known.
        """

    @abstractmethod
    async def is_element_visible(self, session: "SessionContext", selector: str) -> bool:
        """Report whether an element is currently visible."""

    @abstractmethod
    async def read_text(self, session: "SessionContext", scope: str = "body") -> str:
        """Read visible text within a scope."""

    @abstractmethod
    async def read_notifications(self, session: "SessionContext") -> str:
        """Read the text of the notification surface."""

    @abstractmethod
    async def read_agent_status(self, session: "SessionContext") -> str:
        """Read the agent status text shown by the application."""

    @abstractmethod
    async def health_check(self, session: "SessionContext") -> None:
        """Trivial round-trip against the session surface; raise if unhealthy."""

    @abstractmethod
    async def screenshot(self, session: "SessionContext", path: Path) -> None:
        """Capture the session surface to a PNG file."""

    @abstractmethod
    async def close(self, session: "SessionContext") -> None:
        """Close the application owned by a session."""


ActionHandler = Callable[[Step, "SessionContext"], Awaitable[Optional[list[str]]]]


class ActionRegistry:
    """
    Maps action names to handler coroutines.

    Only names from KNOWN_ACTIONS can be registered, so every action a
    scenario passed validation with has a well-defined dispatch target.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, action: str, handler: ActionHandler) -> None:
        if action not in KNOWN_ACTIONS:
            raise ValueError(f"Cannot register unknown action '{action}'")
        self._handlers[action] = handler

    def handler(self, action: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of register."""
        def decorator(func: ActionHandler) -> ActionHandler:
            self.register(action, func)
            return func
        return decorator

    def get(self, action: str) -> Optional[ActionHandler]:
        return self._handlers.get(action)

    def __contains__(self, action: str) -> bool:
        return action in self._handlers

    @property
    def actions(self) -> list[str]:
        return sorted(self._handlers)


class RegistryDriver(AutomationDriver):
    """Driver whose step execution is dispatched through an ActionRegistry."""

    def __init__(self, registry: Optional[ActionRegistry] = None):
        self.registry = registry or ActionRegistry()

    async def execute_step(self, step: Step, session: "SessionContext") -> list[str]:
        handler = self.registry.get(step.action)
        if handler is None:
            raise RunnerError(
                f"No handler registered for action '{step.action}'",
                kind=ErrorKind.STEP_FAILED,
            )

        coro = handler(step, session)
        if step.timeout_ms:
            try:
                logs = await asyncio.wait_for(coro, timeout=step.timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise RunnerError(
                    f"Step '{step.id}' timed out after {step.timeout_ms}ms",
                    kind=ErrorKind.TIMEOUT,
                    recoverable=True,
                )
        else:
            logs = await coro
        return logs or []


class DryRunDriver(RegistryDriver):
    """
    Driver that simulates the application.

    Every known action succeeds after logging what it would have done. Check
    results come from the visible/texts/notifications/agent_status fields so a
    dry run can still exercise wait conditions.
    """

    def __init__(
        self,
        visible: Optional[set[str]] = None,
        texts: Optional[dict[str, str]] = None,
        notifications: str = "",
        agent_status: str = "complete",
        step_delay: float = 0.0,
    ):
        super().__init__()
        self.visible = visible if visible is not None else {".monaco-workbench"}
        self.texts = texts or {}
        self.notifications = notifications
        self.agent_status = agent_status
        self.step_delay = step_delay
        self.executed: list[tuple[str, str]] = []
        self.closed: list[str] = []
        self.healthy = True
        self._launch_count = 0

        for action in KNOWN_ACTIONS:
            self.registry.register(action, self._simulate)

    async def _simulate(self, step: Step, session: "SessionContext") -> list[str]:
        if self.step_delay:
            await asyncio.sleep(self.step_delay)
        self.executed.append((session.id, step.id))
        logger.info("Dry run step", step_id=step.id, action=step.action, session_id=session.id)
        return [f"[dry-run] {step.action} {step.args}" if step.args else f"[dry-run] {step.action}"]

    async def launch_application(
        self,
        executable: str,
        args: list[str],
        options: LaunchOptions,
    ) -> LaunchedApplication:
        self._launch_count += 1
        logger.info("Dry run launch", executable=executable, args=args)
        return LaunchedApplication(
            app={"executable": executable, "args": list(args)},
            surface={"index": self._launch_count},
        )

    async def wait_for_ready(self, surface: Any, marker: str, timeout: float) -> None:
        if marker not in self.visible:
            raise RunnerError(f"Readiness marker '{marker}' not found", kind=ErrorKind.TIMEOUT)

    async def is_element_visible(self, session: "SessionContext", selector: str) -> bool:
        return selector in self.visible

    async def read_text(self, session: "SessionContext", scope: str = "body") -> str:
        return self.texts.get(scope, "")

    async def read_notifications(self, session: "SessionContext") -> str:
        return self.notifications

    async def read_agent_status(self, session: "SessionContext") -> str:
        return self.agent_status

    async def health_check(self, session: "SessionContext") -> None:
        if not self.healthy:
            raise RunnerError("Session surface not responding", kind=ErrorKind.APP_CRASHED)

    async def screenshot(self, session: "SessionContext", path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")

    async def close(self, session: "SessionContext") -> None:
        self.closed.append(session.id)
