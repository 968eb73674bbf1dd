"""
Orchestrated scenario runner.

Ties the pieces of a run together: checkpoint restore, session provisioning,
milestone scheduling under a total timeout, guaranteed teardown, and the
final report.
"""

import asyncio
import json
import time
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol

from scenario_runner.checkpoint import CheckpointStore, OrchestratorState
from scenario_runner.config import RunnerConfig
from scenario_runner.driver import AutomationDriver
from scenario_runner.errors import CriticalMilestoneError, SessionError, SetupError
from scenario_runner.events import EventHandler, EventLog, RunEventType
from scenario_runner.logging import bind_run_context, clear_run_context, get_logger
from scenario_runner.models import (
    Milestone,
    MilestoneResult,
    MilestoneStatus,
    RunReport,
    RunStatus,
    Scenario,
    SessionConfig,
    utc_now_iso,
)
from scenario_runner.resilience import RetryConfig
from scenario_runner.scheduler import MilestoneScheduler
from scenario_runner.session import DEFAULT_SESSION_ID, SessionContext, SessionManager
from scenario_runner.waits import ConfirmCallback, WaitConditionEvaluator
from scenario_runner.workspace import WorkspaceSetup

logger = get_logger(__name__)


class ScenarioEvaluator(Protocol):
    """Grades a finished run."""

    async def evaluate(self, scenario: Scenario, report: RunReport) -> dict[str, Any]:
        ...


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class OrchestratedRunner:
    """
    Runs a scenario end to end.

    All collaborators are injected; nothing is shared between runners.
    """

    REPORT_FILE = "report.json"

    def __init__(
        self,
        driver: AutomationDriver,
        config: Optional[RunnerConfig] = None,
        store: Optional[CheckpointStore] = None,
        workspace: Optional[WorkspaceSetup] = None,
        evaluator: Optional[ScenarioEvaluator] = None,
        confirm: Optional[ConfirmCallback] = None,
        event_handler: Optional[EventHandler] = None,
        checkpoint_path: Optional[Path] = None,
        fresh: bool = False,
    ):
        """
        Args:
            driver: Automation driver
            config: Runner configuration
            store: Checkpoint store; defaults to the storage checkpoints directory
            workspace: Workspace collaborator for sessions
            evaluator: Optional grader applied to the final report
            confirm: Optional channel answering manual-confirmation waits
            event_handler: Receives every run event as it happens
            checkpoint_path: Explicit checkpoint file, overriding the scenario's
            fresh: Ignore any existing checkpoint
        """
        self.driver = driver
        self.config = config or RunnerConfig()
        self.store = store
        self.workspace = workspace
        self.evaluator = evaluator
        self.confirm = confirm
        self.event_handler = event_handler
        self.checkpoint_path = checkpoint_path
        self.fresh = fresh

    def _store_for(self, scenario: Scenario) -> CheckpointStore:
        if self.store is not None:
            return self.store
        orchestration = scenario.orchestration
        override = self.checkpoint_path or (
            Path(orchestration.checkpoint_path) if orchestration and orchestration.checkpoint_path else None
        )
        return CheckpointStore(
            self.config.checkpoints_path,
            path_override=override,
            lock_timeout=self.config.storage.lock_timeout_seconds,
        )

    async def run(self, scenario: Scenario) -> RunReport:
        """
        Run a scenario and return its report.

        Setup failures, aborts and the total timeout are reported on the
        returned report rather than raised.
        """
        orchestration = scenario.effective_orchestration()
        run_id = new_run_id()
        run_dir = self.config.artifacts_path / run_id
        started = time.monotonic()
        start_iso = utc_now_iso()

        bind_run_context(run_id=run_id, scenario_id=scenario.id)
        events = EventLog(run_id=run_id, handler=self.event_handler)
        events.set_run(run_id, run_dir)

        store = self._store_for(scenario)
        prior = None if self.fresh else store.load(scenario.id)
        if prior is not None:
            state = prior.resumed_as(run_id)
            logger.info(
                "Resuming from checkpoint",
                previous_run_id=prior.run_id,
                completed=len(state.completed_milestones),
                failed=len(state.failed_milestones),
            )
        else:
            state = OrchestratorState.new(run_id, scenario.id)

        events.emit(
            RunEventType.RUN_START,
            scenario_id=scenario.id,
            scenario_name=scenario.name,
            milestones=len(orchestration.milestones),
            resumed=prior is not None,
        )
        logger.info(
            "Starting scenario run",
            name=scenario.name,
            milestones=len(orchestration.milestones),
            failure_strategy=orchestration.failure_strategy.value,
        )

        def save_checkpoint() -> None:
            if store.save(state):
                events.emit(
                    RunEventType.CHECKPOINT_SAVED,
                    completed=len(state.completed_milestones),
                    failed=len(state.failed_milestones),
                )

        async def save_partial(session: SessionContext) -> None:
            path = store.save_partial(state, session.id)
            events.emit(
                RunEventType.PARTIAL_SAVE,
                success=path is not None,
                session_id=session.id,
                milestones=list(session.milestones_run),
                path=str(path) if path else None,
            )

        sessions = SessionManager(
            self.driver,
            self.config,
            workspace=self.workspace,
            events=events,
            on_crash=save_partial,
        )
        waits = WaitConditionEvaluator(
            self.driver,
            events=events,
            progress_interval=self.config.orchestration.wait_progress_interval_seconds,
            confirm=self.confirm,
        )
        scheduler = MilestoneScheduler(
            self.driver,
            waits,
            state,
            events=events,
            retry_config=RetryConfig.from_settings(self.config.retry),
            retry_delay=self.config.orchestration.milestone_retry_delay_seconds,
            checkpoint=save_checkpoint,
            checkpoint_interval=orchestration.checkpoint_interval_ms / 1000,
            poll_interval=min(1.0, self.config.health.interval_seconds),
            screenshots_dir=run_dir / "screenshots",
        )

        error: Optional[str] = None
        try:
            session_configs = orchestration.sessions or (
                SessionConfig(id=DEFAULT_SESSION_ID, fresh_profile=self.config.session.fresh_profile),
            )
            await sessions.launch_all(session_configs, run_id)
            for session in sessions.sessions.values():
                state.bind_session(session.id, session.workspace_path)
            sessions.start_health_monitoring()

            await asyncio.wait_for(
                scheduler.run(
                    orchestration.milestones,
                    sessions,
                    orchestration.failure_strategy,
                    orchestration.max_retries,
                ),
                timeout=orchestration.total_timeout_ms / 1000,
            )

        except CriticalMilestoneError as e:
            error = str(e)
            logger.error("Run aborted", milestone_id=e.milestone_id, error=e.reason)
            events.emit(RunEventType.ERROR, success=False, **e.to_dict())

        except (SetupError, SessionError) as e:
            error = f"Setup failed: {e}"
            logger.error("Run setup failed", error=str(e), kind=e.kind.value)
            events.emit(RunEventType.ERROR, success=False, **e.to_dict())

        except asyncio.TimeoutError:
            error = f"Run exceeded total timeout of {orchestration.total_timeout_ms}ms"
            logger.error("Run timed out", total_timeout_ms=orchestration.total_timeout_ms)
            events.emit(RunEventType.ERROR, success=False, kind="timeout", message=error)

        finally:
            await sessions.close_all()
            sessions.cleanup_workspaces(run_id)
            save_checkpoint()

        report = self._build_report(scenario, orchestration.milestones, scheduler, state, events, error)
        report.start_time = start_iso
        report.end_time = utc_now_iso()
        report.duration_ms = int((time.monotonic() - started) * 1000)
        report.artifacts = {
            "screenshots": [m.screenshot for m in report.milestones if m.screenshot],
            "events": str(events.output_path) if events.output_path else None,
            "checkpoint": str(store.path_for(scenario.id)),
            "report": str(run_dir / self.REPORT_FILE),
        }

        if self.evaluator is not None:
            try:
                report.evaluation = await self.evaluator.evaluate(scenario, report)
            except Exception as e:
                logger.warning("Evaluation failed", error=str(e))

        self._write_report(run_dir, report)

        events.emit(
            RunEventType.RUN_END,
            success=report.passed,
            duration_ms=report.duration_ms,
            scenario_id=scenario.id,
            status=report.status.value,
            error=report.error,
        )
        logger.info(
            "Scenario run ended",
            status=report.status.value,
            duration_ms=report.duration_ms,
            milestones=len(report.milestones),
        )
        clear_run_context()
        return report

    def _build_report(
        self,
        scenario: Scenario,
        milestones: tuple[Milestone, ...],
        scheduler: MilestoneScheduler,
        state: OrchestratorState,
        events: EventLog,
        error: Optional[str],
    ) -> RunReport:
        results: list[MilestoneResult] = []

        for m in milestones:
            result = scheduler.results.get(m.id) or state.milestone_results.get(m.id)
            if result is None:
                reason = self._skip_reason(m, state, error)
                result = MilestoneResult(
                    milestone_id=m.id,
                    name=m.name,
                    status=MilestoneStatus.SKIPPED,
                    error=reason,
                    session_id=m.session,
                )
                events.emit(
                    RunEventType.MILESTONE_SKIPPED,
                    milestone_id=m.id,
                    status=MilestoneStatus.SKIPPED.value,
                    reason=reason,
                )
            results.append(result)

        critical = {m.id for m in milestones if m.critical}
        critical_failed = any(
            r.status == MilestoneStatus.FAILED and r.milestone_id in critical for r in results
        )
        status = RunStatus.FAILED if critical_failed or error else RunStatus.PASSED

        return RunReport(
            id=state.run_id,
            scenario_id=scenario.id,
            scenario_name=scenario.name,
            status=status,
            start_time=state.start_time,
            milestones=results,
            steps=[s for r in results for s in r.step_results],
            error=error,
        )

    @staticmethod
    def _skip_reason(
        milestone: Milestone,
        state: OrchestratorState,
        error: Optional[str],
    ) -> str:
        if error:
            return f"Not attempted: {error}"
        unmet = [d for d in milestone.depends_on if d not in state.completed_milestones]
        if unmet:
            return f"Blocked by unmet dependencies: {', '.join(unmet)}"
        return "Not attempted"

    def _write_report(self, run_dir: Path, report: RunReport) -> None:
        path = run_dir / self.REPORT_FILE
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(report.to_dict(), indent=2, default=str))
        except OSError as e:
            logger.warning("Failed to write report", path=str(path), error=str(e))
