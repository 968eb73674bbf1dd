"""
Wait condition evaluation.

The evaluator owns the polling and timeout discipline only. Whether an
element is visible or a text is present is answered by the automation
driver.
"""

import asyncio
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from scenario_runner.driver import AutomationDriver
from scenario_runner.events import EventLog, RunEventType
from scenario_runner.logging import get_logger
from scenario_runner.models import WaitCondition, WaitConditionType, WaitResult

if TYPE_CHECKING:
    from scenario_runner.session import SessionContext

logger = get_logger(__name__)

COMPLETION_KEYWORDS = ("complete", "finished", "done")

ConfirmCallback = Callable[[WaitCondition], Awaitable[bool]]


class WaitConditionEvaluator:
    """
    Polls a wait condition until it holds or its timeout elapses.

    wait() never raises: a timeout is reported as a failed WaitResult.
    """

    def __init__(
        self,
        driver: AutomationDriver,
        events: Optional[EventLog] = None,
        progress_interval: float = 30.0,
        confirm: Optional[ConfirmCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        """
        Args:
            driver: Automation driver answering the predicates
            events: Event log for wait_start/progress/complete
            progress_interval: Seconds of wall clock between progress logs
            confirm: Optional external channel for manual confirmations
            clock: Monotonic clock in seconds
            sleep: Coroutine used between polls
        """
        self.driver = driver
        self.events = events or EventLog()
        self.progress_interval = progress_interval
        self.confirm = confirm
        self._clock = clock
        self._sleep = sleep

    async def wait(self, condition: WaitCondition, session: "SessionContext") -> WaitResult:
        """Evaluate a condition against a session."""
        label = condition.description or condition.target or condition.type.value
        self.events.emit(
            RunEventType.WAIT_START,
            condition_type=condition.type.value,
            target=condition.target,
            timeout_ms=condition.timeout_ms,
            session_id=session.id,
        )
        logger.info(
            "Waiting for condition",
            condition=label,
            type=condition.type.value,
            timeout_ms=condition.timeout_ms,
        )

        if condition.type == WaitConditionType.TIMEOUT:
            result = await self._fixed_delay(condition)
        elif condition.type == WaitConditionType.MANUAL and self.confirm is None:
            logger.warning(
                "Manual confirmation required but no confirmation channel configured, continuing",
                condition=label,
            )
            result = WaitResult(
                condition_type=condition.type.value,
                target=condition.target,
                passed=True,
                wait_time_ms=0,
                evidence="manual confirmation assumed",
            )
        else:
            result = await self._poll(condition, session, label)

        self.events.emit(
            RunEventType.WAIT_COMPLETE,
            success=result.passed,
            duration_ms=result.wait_time_ms,
            condition_type=condition.type.value,
            target=condition.target,
            error=result.error,
        )
        return result

    async def _fixed_delay(self, condition: WaitCondition) -> WaitResult:
        start = self._clock()
        await self._sleep(condition.timeout_seconds)
        return WaitResult(
            condition_type=condition.type.value,
            target=condition.target,
            passed=True,
            wait_time_ms=int((self._clock() - start) * 1000),
            evidence=f"waited {condition.timeout_ms}ms",
        )

    async def _poll(
        self,
        condition: WaitCondition,
        session: "SessionContext",
        label: str,
    ) -> WaitResult:
        timeout = condition.timeout_seconds
        start = self._clock()
        last_progress = start

        while self._clock() - start < timeout:
            try:
                satisfied, evidence = await self._check(condition, session)
            except Exception as e:
                logger.debug("Wait check failed", condition=label, error=str(e))
                satisfied, evidence = False, None

            now = self._clock()
            if satisfied:
                elapsed_ms = int((now - start) * 1000)
                logger.info("Condition satisfied", condition=label, wait_time_ms=elapsed_ms)
                return WaitResult(
                    condition_type=condition.type.value,
                    target=condition.target,
                    passed=True,
                    wait_time_ms=elapsed_ms,
                    evidence=evidence,
                )

            if now - last_progress >= self.progress_interval:
                last_progress = now
                elapsed_ms = int((now - start) * 1000)
                logger.info(
                    "Still waiting",
                    condition=label,
                    elapsed_s=round(now - start),
                    timeout_s=round(timeout),
                )
                self.events.emit(
                    RunEventType.WAIT_PROGRESS,
                    condition_type=condition.type.value,
                    elapsed_ms=elapsed_ms,
                )

            remaining = timeout - (now - start)
            if remaining <= 0:
                break
            await self._sleep(min(condition.poll_interval_seconds, remaining))

        elapsed_ms = int((self._clock() - start) * 1000)
        logger.warning("Condition timed out", condition=label, timeout_ms=condition.timeout_ms)
        return WaitResult(
            condition_type=condition.type.value,
            target=condition.target,
            passed=False,
            wait_time_ms=elapsed_ms,
            error=f"Timeout after {condition.timeout_ms}ms",
        )

    async def _check(
        self,
        condition: WaitCondition,
        session: "SessionContext",
    ) -> tuple[bool, Optional[str]]:
        """Evaluate the type-specific predicate once."""
        kind = condition.type

        if kind == WaitConditionType.ELEMENT:
            visible = await self.driver.is_element_visible(session, condition.target)
            return visible, f"element visible: {condition.target}" if visible else None

        if kind == WaitConditionType.TEXT:
            text = await self.driver.read_text(session, condition.target or "body")
            found = condition.expected in text
            return found, f"found text: {condition.expected}" if found else None

        if kind == WaitConditionType.NOTIFICATION:
            text = (await self.driver.read_notifications(session)).strip()
            if condition.expected:
                found = condition.expected in text
            else:
                found = bool(text)
            return found, f"notification: {text[:100]}" if found else None

        if kind == WaitConditionType.AGENT_COMPLETE:
            status = (await self.driver.read_agent_status(session)).lower()
            done = any(word in status for word in COMPLETION_KEYWORDS)
            return done, f"agent status: {status[:100]}" if done else None

        if kind == WaitConditionType.MANUAL:
            confirmed = await self.confirm(condition)
            return confirmed, "confirmed" if confirmed else None

        return False, None
