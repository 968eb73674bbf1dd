"""
Application session lifecycle.

SessionManager launches one application instance per declared session,
watches each with a background health monitor, and tears everything down
when the run ends. Monitors never touch session state: they post crash
notices to a queue that the scheduling loop drains through poll_health(),
which is the only place a session is ever marked inactive.
"""

import asyncio
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional

from scenario_runner.config import RunnerConfig
from scenario_runner.driver import AutomationDriver, LaunchOptions
from scenario_runner.errors import ErrorKind, SessionError, SetupError
from scenario_runner.events import EventLog, RunEventType
from scenario_runner.logging import get_logger
from scenario_runner.models import AppVariant, SessionConfig, utc_now_iso
from scenario_runner.workspace import GitWorkspaceSetup, WorkspaceSetup

logger = get_logger(__name__)

DEFAULT_SESSION_ID = "default"

BASE_LAUNCH_ARGS = [
    "--disable-telemetry",
    "--skip-welcome",
    "--skip-release-notes",
    "--disable-workspace-trust",
    "--disable-updates",
]


@dataclass
class SessionContext:
    """A live application session."""

    id: str
    app: Any = None
    surface: Any = None
    workspace_path: Optional[str] = None
    is_active: bool = True
    artifacts_path: Optional[Path] = None
    milestones_run: list[str] = field(default_factory=list)

    @property
    def has_recorded_work(self) -> bool:
        return bool(self.milestones_run)

    def record_work(self, milestone_id: str) -> None:
        if milestone_id not in self.milestones_run:
            self.milestones_run.append(milestone_id)


@dataclass
class CrashNotice:
    """Posted by a health monitor when a session stops responding."""

    session_id: str
    failures: int
    error: Optional[str]
    ts: str = field(default_factory=utc_now_iso)


def executable_candidates(variant: AppVariant, platform: str = sys.platform) -> list[str]:
    """Default install locations for a release channel."""
    insiders = variant in (AppVariant.INSIDERS, AppVariant.EXPLORATION)

    if platform == "darwin":
        name = "Visual Studio Code - Insiders.app" if insiders else "Visual Studio Code.app"
        return [f"/Applications/{name}/Contents/MacOS/Electron"]
    if platform.startswith("win"):
        local = os.environ.get("LOCALAPPDATA", "")
        if insiders:
            return [str(Path(local) / "Programs" / "Microsoft VS Code Insiders" / "Code - Insiders.exe")]
        return [str(Path(local) / "Programs" / "Microsoft VS Code" / "Code.exe")]

    binary = "code-insiders" if insiders else "code"
    found = shutil.which(binary)
    return [p for p in (f"/usr/bin/{binary}", found) if p]


def resolve_executable(
    variant: AppVariant,
    override: Optional[str] = None,
    platform: str = sys.platform,
) -> str:
    """
    Locate the application executable.

    Raises:
        SessionError: If no candidate exists on disk
    """
    candidates = [str(Path(override).expanduser())] if override else executable_candidates(variant, platform)
    for candidate in candidates:
        if Path(candidate).exists():
            return candidate

    raise SessionError(
        f"Application executable not found for variant '{variant.value}' "
        f"(looked in: {', '.join(candidates) or 'nothing'})",
        kind=ErrorKind.APP_NOT_FOUND,
    )


def build_launch_args(
    profile_path: Optional[Path],
    workspace_path: Optional[str],
    extra_args: Iterable[str] = (),
) -> list[str]:
    """Command line for a session launch."""
    args = list(BASE_LAUNCH_ARGS) + list(extra_args)
    if profile_path is not None:
        args += [
            f"--user-data-dir={profile_path / 'user-data'}",
            f"--extensions-dir={profile_path / 'extensions'}",
        ]
    if workspace_path:
        args.append(workspace_path)
    return args


class HealthMonitor:
    """
    Periodic health round-trip for one session.

    Counts consecutive failures; any success resets the count. After
    max_failures in a row it posts a CrashNotice and stops.
    """

    def __init__(
        self,
        session: SessionContext,
        driver: AutomationDriver,
        notices: "asyncio.Queue[CrashNotice]",
        interval: float = 5.0,
        timeout: float = 3.0,
        max_failures: int = 3,
    ):
        self.session = session
        self.driver = driver
        self.notices = notices
        self.interval = interval
        self.timeout = timeout
        self.max_failures = max_failures
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name=f"health-{self.session.id}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def check_once(self) -> bool:
        """One health round-trip. Returns True if the session answered."""
        try:
            await asyncio.wait_for(self.driver.health_check(self.session), timeout=self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.warning(
                "Health check failed",
                session_id=self.session.id,
                failures=self.failures,
                max_failures=self.max_failures,
                error=str(e) or type(e).__name__,
            )
            if self.failures >= self.max_failures:
                self.notices.put_nowait(CrashNotice(
                    session_id=self.session.id,
                    failures=self.failures,
                    error=str(e) or type(e).__name__,
                ))
            return False

        self.failures = 0
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            healthy = await self.check_once()
            if not healthy and self.failures >= self.max_failures:
                return


CrashHandler = Callable[[SessionContext], Awaitable[None]]


class SessionManager:
    """
    Owns every SessionContext of a run.

    Milestones only reference sessions; launching, crash handling and
    teardown all happen here.
    """

    def __init__(
        self,
        driver: AutomationDriver,
        config: Optional[RunnerConfig] = None,
        workspace: Optional[WorkspaceSetup] = None,
        events: Optional[EventLog] = None,
        on_crash: Optional[CrashHandler] = None,
        platform: str = sys.platform,
    ):
        """
        Args:
            driver: Automation driver used to launch and health-check sessions
            config: Runner configuration (launch and health settings)
            workspace: Workspace collaborator; defaults to git clones under storage
            events: Event log for session events
            on_crash: Best-effort partial save invoked for crashed sessions with work
            platform: Platform used to locate the executable
        """
        self.driver = driver
        self.config = config or RunnerConfig()
        self.workspace = workspace or GitWorkspaceSetup(self.config.workspaces_path)
        self.events = events or EventLog()
        self.on_crash = on_crash
        self.platform = platform
        self.sessions: dict[str, SessionContext] = {}
        self._monitors: dict[str, HealthMonitor] = {}
        self._notices: asyncio.Queue[CrashNotice] = asyncio.Queue()

    async def launch(self, session_config: SessionConfig, run_id: str) -> SessionContext:
        """
        Launch one session.

        Raises:
            SetupError: If the workspace cannot be prepared
            SessionError: If the application is missing, fails to start, or never becomes ready
        """
        settings = self.config.session
        sid = session_config.id

        setup = await self.workspace.setup_workspace(session_config, run_id)
        if not setup.success:
            raise SetupError(f"Workspace setup failed for session '{sid}': {setup.error}")
        workspace_path = setup.workspace_path

        executable = resolve_executable(session_config.variant, settings.app_path, self.platform)

        artifacts = self.config.artifacts_path / run_id / sid
        artifacts.mkdir(parents=True, exist_ok=True)
        profile = None
        if session_config.fresh_profile:
            profile = artifacts
            (profile / "user-data").mkdir(parents=True, exist_ok=True)
            (profile / "extensions").mkdir(parents=True, exist_ok=True)

        args = build_launch_args(profile, workspace_path, settings.extra_args)
        logger.info(
            "Launching session",
            session_id=sid,
            executable=executable,
            workspace=workspace_path,
            fresh_profile=session_config.fresh_profile,
        )

        try:
            launched = await asyncio.wait_for(
                self.driver.launch_application(
                    executable,
                    args,
                    LaunchOptions(timeout=settings.launch_timeout_seconds, cwd=workspace_path),
                ),
                timeout=settings.launch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise SessionError(
                f"Application did not start within {settings.launch_timeout_seconds:.0f}s",
                kind=ErrorKind.LAUNCH_FAILED,
                session_id=sid,
            )
        except SessionError:
            raise
        except Exception as e:
            raise SessionError(f"Failed to launch application: {e}", kind=ErrorKind.LAUNCH_FAILED, session_id=sid) from e

        context = SessionContext(
            id=sid,
            app=launched.app,
            surface=launched.surface,
            workspace_path=workspace_path,
            artifacts_path=artifacts,
        )

        try:
            await asyncio.wait_for(
                self.driver.wait_for_ready(launched.surface, settings.ready_selector, settings.ready_timeout_seconds),
                timeout=settings.ready_timeout_seconds,
            )
        except Exception as e:
            await self.close(context)
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            raise SessionError(
                f"Application never became ready ({reason})",
                kind=ErrorKind.TIMEOUT,
                session_id=sid,
            ) from e

        if settings.settle_delay_seconds:
            await asyncio.sleep(settings.settle_delay_seconds)

        self.sessions[sid] = context
        self.events.emit(RunEventType.SESSION_LAUNCH, session_id=sid, workspace=workspace_path)
        logger.info("Session ready", session_id=sid)
        return context

    async def launch_all(self, configs: Iterable[SessionConfig], run_id: str) -> list[SessionContext]:
        """Launch every declared session, closing the ones already up if any fails."""
        launched = []
        try:
            for cfg in configs:
                launched.append(await self.launch(cfg, run_id))
        except BaseException:
            await self.close_all()
            raise
        return launched

    def resolve(self, session_id: Optional[str] = None) -> Optional[SessionContext]:
        """
        Session by ID, or the first session when no ID is given.

        When only the implicit default session exists, every ID maps to it.
        """
        if session_id and session_id in self.sessions:
            return self.sessions[session_id]
        if session_id and set(self.sessions) != {DEFAULT_SESSION_ID}:
            return None
        return next(iter(self.sessions.values()), None)

    def start_health_monitoring(self) -> None:
        """Start a monitor for every active session."""
        health = self.config.health
        for sid, session in self.sessions.items():
            if not session.is_active or sid in self._monitors:
                continue
            monitor = HealthMonitor(
                session,
                self.driver,
                self._notices,
                interval=health.interval_seconds,
                timeout=health.timeout_seconds,
                max_failures=health.max_failures,
            )
            self._monitors[sid] = monitor
            monitor.start()

    async def stop_health_monitoring(self) -> None:
        for monitor in list(self._monitors.values()):
            await monitor.stop()
        self._monitors.clear()

    async def poll_health(self) -> list[SessionContext]:
        """
        Apply pending crash notices.

        Called from the scheduling loop. Returns the sessions newly marked
        inactive.
        """
        crashed = []
        while True:
            try:
                notice = self._notices.get_nowait()
            except asyncio.QueueEmpty:
                break

            session = self.sessions.get(notice.session_id)
            if session is None or not session.is_active:
                continue

            session.is_active = False
            crashed.append(session)
            logger.error(
                "Session crashed",
                session_id=session.id,
                failures=notice.failures,
                error=notice.error,
            )
            self.events.emit(
                RunEventType.SESSION_CRASH,
                success=False,
                session_id=session.id,
                failures=notice.failures,
                error=notice.error,
            )

            if self.on_crash and session.has_recorded_work:
                try:
                    await self.on_crash(session)
                except Exception as e:
                    logger.warning("Partial save after crash failed", session_id=session.id, error=str(e))

        return crashed

    async def close(self, session: SessionContext) -> None:
        """Close a session's application. Errors are logged and swallowed."""
        monitor = self._monitors.pop(session.id, None)
        if monitor:
            await monitor.stop()
        try:
            await self.driver.close(session)
        except Exception as e:
            logger.debug("Session close failed", session_id=session.id, error=str(e))
        session.is_active = False
        self.events.emit(RunEventType.SESSION_CLOSE, session_id=session.id)

    def cleanup_workspaces(self, run_id: str) -> None:
        """Remove the workspaces prepared for a run unless configured to keep them."""
        if self.config.storage.keep_workspaces:
            logger.info("Keeping run workspaces", run_id=run_id)
            return
        try:
            self.workspace.cleanup(run_id)
        except OSError as e:
            logger.warning("Workspace cleanup failed", run_id=run_id, error=str(e))

    async def close_all(self) -> None:
        await self.stop_health_monitoring()
        for session in list(self.sessions.values()):
            await self.close(session)
        logger.info("All sessions closed", count=len(self.sessions))
