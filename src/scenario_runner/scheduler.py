"""
Milestone scheduling.

Milestones form a dependency graph. The scheduler starts every milestone
whose dependencies are complete, runs parallel milestones concurrently as
asyncio tasks, and advances by consuming one finished milestone at a time.
"""

import asyncio
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional

from scenario_runner.checkpoint import OrchestratorState
from scenario_runner.driver import AutomationDriver
from scenario_runner.errors import CriticalMilestoneError, RunnerError, classify_error
from scenario_runner.events import EventLog, RunEventType
from scenario_runner.logging import get_logger
from scenario_runner.models import (
    FailureStrategy,
    Milestone,
    MilestoneResult,
    MilestoneStatus,
    Step,
    StepResult,
    StepStatus,
    utc_now_iso,
)
from scenario_runner.resilience import DEFAULT_RETRY_CONFIG, RetryConfig, with_retry
from scenario_runner.session import SessionContext, SessionManager
from scenario_runner.waits import WaitConditionEvaluator

logger = get_logger(__name__)

NO_SESSION_ERROR = "No active session available"


class MilestoneScheduler:
    """
    Runs a milestone graph against managed sessions.

    The scheduling loop is the only writer of the orchestrator state. Each
    MilestoneResult is mutated only by the task executing that milestone.
    """

    def __init__(
        self,
        driver: AutomationDriver,
        waits: WaitConditionEvaluator,
        state: OrchestratorState,
        events: Optional[EventLog] = None,
        retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
        retry_delay: float = 5.0,
        checkpoint: Optional[Callable[[], Any]] = None,
        checkpoint_interval: float = 60.0,
        poll_interval: float = 1.0,
        screenshots_dir: Optional[Path] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        """
        Args:
            driver: Automation driver used for steps and screenshots
            waits: Evaluator for wait conditions
            state: Orchestrator state, possibly loaded from a checkpoint
            events: Event log
            retry_config: Step-level retry configuration
            retry_delay: Seconds between milestone-level retries
            checkpoint: Callback persisting the state
            checkpoint_interval: Seconds between periodic checkpoint flushes
            poll_interval: Longest the loop waits before polling session health
            screenshots_dir: Where milestone screenshots are written
            sleep: Coroutine used for retry delays
        """
        self.driver = driver
        self.waits = waits
        self.state = state
        self.events = events or EventLog()
        self.retry_config = retry_config
        self.retry_delay = retry_delay
        self.checkpoint = checkpoint
        self.checkpoint_interval = checkpoint_interval
        self.poll_interval = poll_interval
        self.screenshots_dir = screenshots_dir
        self._sleep = sleep
        self.results: dict[str, MilestoneResult] = {}
        self._live: dict[str, MilestoneResult] = {}

    async def run(
        self,
        milestones: Iterable[Milestone],
        sessions: SessionManager,
        failure_strategy: FailureStrategy = FailureStrategy.CONTINUE,
        max_retries: int = 2,
    ) -> list[MilestoneResult]:
        """
        Execute milestones in dependency order.

        Milestones already recorded as completed or failed in the state are
        not run again; their stored results are returned unchanged.

        Returns:
            Results in declaration order, for every milestone that has one

        Raises:
            CriticalMilestoneError: If a critical milestone fails under the abort strategy
        """
        milestones = list(milestones)
        by_id = {m.id: m for m in milestones}
        completed = {mid for mid in self.state.completed_milestones if mid in by_id}
        failed = {mid for mid in self.state.failed_milestones if mid in by_id}
        executing: dict[str, asyncio.Task] = {}

        for mid in self.state.finished_ids & by_id.keys():
            prior = self.state.milestone_results.get(mid)
            if prior is not None:
                self.results[mid] = prior

        if completed or failed:
            logger.info(
                "Resuming milestones",
                already_completed=sorted(completed),
                already_failed=sorted(failed),
            )

        flusher = None
        if self.checkpoint is not None:
            flusher = asyncio.create_task(self._flush_periodically(), name="checkpoint-flush")

        try:
            while len(completed) < len(milestones):
                await sessions.poll_health()

                ready = [
                    m for m in milestones
                    if m.id not in completed
                    and m.id not in failed
                    and m.id not in executing
                    and all(dep in completed for dep in m.depends_on)
                ]

                if not ready and not executing:
                    blocked = [m.id for m in milestones if m.id not in completed and m.id not in failed]
                    logger.warning("No runnable milestones remain", blocked=blocked)
                    break

                for m in ready:
                    if not m.parallel and executing:
                        logger.debug("Deferring sequential milestone", milestone_id=m.id)
                        continue
                    self.state.current_milestone = m.id
                    executing[m.id] = asyncio.create_task(
                        self._execute(m, sessions, failure_strategy, max_retries),
                        name=f"milestone-{m.id}",
                    )

                done, _ = await asyncio.wait(
                    executing.values(),
                    timeout=self.poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    continue

                mid = next(k for k, task in executing.items() if task in done)
                result = self._collect(mid, executing.pop(mid))
                milestone = by_id[mid]
                self.results[mid] = result

                if result.status == MilestoneStatus.PASSED:
                    completed.add(mid)
                    self.state.mark_completed(mid, result)
                elif milestone.critical:
                    failed.add(mid)
                    self.state.mark_failed(mid, result)
                    logger.error("Critical milestone failed", milestone_id=mid, error=result.error)
                    if failure_strategy == FailureStrategy.ABORT:
                        raise CriticalMilestoneError(mid, result.error)
                else:
                    # Non-critical failures must not block dependents
                    completed.add(mid)
                    self.state.mark_completed(mid, result)
                    logger.warning("Non-critical milestone failed", milestone_id=mid, error=result.error)

        finally:
            if flusher is not None:
                flusher.cancel()
                await asyncio.gather(flusher, return_exceptions=True)
            if executing:
                await self._abandon(executing)
            self.state.current_milestone = None

        return [self.results[m.id] for m in milestones if m.id in self.results]

    def _collect(self, milestone_id: str, task: asyncio.Task) -> MilestoneResult:
        try:
            return task.result()
        except Exception as e:
            logger.exception("Milestone task crashed", milestone_id=milestone_id)
            result = self._live.get(milestone_id) or MilestoneResult(milestone_id=milestone_id, name=milestone_id)
            self._finalize(result, MilestoneStatus.FAILED, f"Internal error: {e}")
            return result

    async def _abandon(self, executing: dict[str, asyncio.Task]) -> None:
        """Cancel in-flight milestones and keep what they had done so far."""
        tasks = list(executing.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for mid in list(executing):
            result = self._live.get(mid) or MilestoneResult(milestone_id=mid, name=mid)
            if not result.status.is_terminal:
                self._finalize(result, MilestoneStatus.FAILED, "Abandoned: run stopped before milestone finished")
            self.results[mid] = result
            self.events.emit(
                RunEventType.MILESTONE_COMPLETE,
                success=False,
                milestone_id=mid,
                status=result.status.value,
                error=result.error,
                abandoned=True,
            )
            logger.warning("Milestone abandoned", milestone_id=mid)
        executing.clear()

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.checkpoint_interval)
            try:
                self.checkpoint()
            except Exception as e:
                logger.warning("Periodic checkpoint failed", error=str(e))

    async def _execute(
        self,
        milestone: Milestone,
        sessions: SessionManager,
        failure_strategy: FailureStrategy,
        max_retries: int,
    ) -> MilestoneResult:
        result = MilestoneResult(
            milestone_id=milestone.id,
            name=milestone.name,
            status=MilestoneStatus.RUNNING,
            start_time=utc_now_iso(),
        )
        self._live[milestone.id] = result
        started = time.monotonic()

        logger.info("Milestone started", milestone_id=milestone.id, name=milestone.name)
        self.events.emit(
            RunEventType.MILESTONE_START,
            milestone_id=milestone.id,
            name=milestone.name,
            parallel=milestone.parallel,
            critical=milestone.critical,
        )

        session = None
        while True:
            session = sessions.resolve(milestone.session)
            result.session_id = session.id if session else milestone.session

            if session is None or not session.is_active:
                passed, error = False, NO_SESSION_ERROR
            else:
                session.record_work(milestone.id)
                passed, error = await self._bounded_attempt(milestone, session, result)

            if passed:
                break

            result.error = error
            if failure_strategy == FailureStrategy.RETRY and result.retry_count < max_retries:
                result.retry_count += 1
                logger.warning(
                    "Retrying milestone",
                    milestone_id=milestone.id,
                    retry=result.retry_count,
                    max_retries=max_retries,
                    error=error,
                )
                self.events.emit(
                    RunEventType.MILESTONE_RETRY,
                    success=False,
                    milestone_id=milestone.id,
                    retry=result.retry_count,
                    error=error,
                )
                result.step_results.clear()
                result.wait_results.clear()
                result.status = MilestoneStatus.RUNNING
                await self._sleep(self.retry_delay)
                continue
            break

        if passed:
            self._finalize(result, MilestoneStatus.PASSED, None, started)
            if milestone.screenshot and session is not None:
                result.screenshot = await self._capture(milestone, session)
        else:
            self._finalize(result, MilestoneStatus.FAILED, error, started)

        logger.info(
            "Milestone finished",
            milestone_id=milestone.id,
            status=result.status.value,
            duration_ms=result.duration_ms,
            retries=result.retry_count,
        )
        self.events.emit(
            RunEventType.MILESTONE_COMPLETE,
            success=passed,
            duration_ms=result.duration_ms,
            milestone_id=milestone.id,
            status=result.status.value,
            retry_count=result.retry_count,
            error=result.error,
        )
        return result

    async def _bounded_attempt(
        self,
        milestone: Milestone,
        session: SessionContext,
        result: MilestoneResult,
    ) -> tuple[bool, Optional[str]]:
        if not milestone.timeout_ms:
            return await self._attempt(milestone, session, result)
        try:
            return await asyncio.wait_for(
                self._attempt(milestone, session, result),
                timeout=milestone.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            return False, f"Milestone timed out after {milestone.timeout_ms}ms"

    async def _attempt(
        self,
        milestone: Milestone,
        session: SessionContext,
        result: MilestoneResult,
    ) -> tuple[bool, Optional[str]]:
        """One pass over the steps, then the wait conditions."""
        for step in milestone.steps:
            step_result = await self._run_step(step, session, milestone.id)
            result.step_results.append(step_result)
            if not step_result.passed:
                if step.optional:
                    logger.info("Optional step failed, continuing", step_id=step.id, error=step_result.error)
                    continue
                return False, f"Step '{step.id}' failed: {step_result.error}"

        if milestone.wait_for:
            result.status = MilestoneStatus.WAITING

        for condition in milestone.wait_for:
            wait_result = await self.waits.wait(condition, session)
            result.wait_results.append(wait_result)
            if not wait_result.passed:
                label = condition.description or condition.type.value
                return False, f"Wait condition '{label}' failed: {wait_result.error}"

        return True, None

    async def _run_step(self, step: Step, session: SessionContext, milestone_id: str) -> StepResult:
        start_iso = utc_now_iso()
        started = time.monotonic()
        attempts = 1
        recoverable = False

        self.events.emit(
            RunEventType.STEP_START,
            milestone_id=milestone_id,
            step_id=step.id,
            action=step.action,
            session_id=session.id,
        )

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            nonlocal attempts
            attempts = attempt + 1
            self.events.emit(
                RunEventType.STEP_RETRY,
                success=False,
                milestone_id=milestone_id,
                step_id=step.id,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )

        try:
            logs = await with_retry(
                lambda: self.driver.execute_step(step, session),
                self.retry_config,
                context={"milestone_id": milestone_id, "step_id": step.id},
                on_retry=on_retry,
                sleep=self._sleep,
            )
            status, error, error_kind = StepStatus.PASSED, None, None
        except Exception as e:
            logs, status, error = [], StepStatus.FAILED, str(e) or type(e).__name__
            error_kind = classify_error(e).value
            recoverable = isinstance(e, RunnerError) and e.recoverable

        step_result = StepResult(
            step_id=step.id,
            status=status,
            start_time=start_iso,
            end_time=utc_now_iso(),
            duration_ms=int((time.monotonic() - started) * 1000),
            logs=list(logs),
            error=error,
            error_kind=error_kind,
            attempts=attempts,
        )
        self.events.emit(
            RunEventType.STEP_COMPLETE,
            success=step_result.passed,
            duration_ms=step_result.duration_ms,
            milestone_id=milestone_id,
            step_id=step.id,
            error=error,
            error_kind=error_kind,
            recoverable=recoverable,
        )
        return step_result

    async def _capture(self, milestone: Milestone, session: SessionContext) -> Optional[str]:
        directory = self.screenshots_dir
        if directory is None and session.artifacts_path is not None:
            directory = session.artifacts_path / "screenshots"
        if directory is None:
            return None

        path = directory / f"milestone_{milestone.id}.png"
        try:
            await self.driver.screenshot(session, path)
        except Exception as e:
            logger.warning("Screenshot failed", milestone_id=milestone.id, error=str(e))
            return None
        return str(path)

    @staticmethod
    def _finalize(
        result: MilestoneResult,
        status: MilestoneStatus,
        error: Optional[str],
        started: Optional[float] = None,
    ) -> None:
        result.status = status
        result.error = error
        result.end_time = utc_now_iso()
        if started is not None:
            result.duration_ms = int((time.monotonic() - started) * 1000)
