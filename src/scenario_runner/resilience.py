"""
Retry with exponential backoff for UI automation operations.

Transient automation failures (an element not attached yet, a navigation in
progress) are retried locally so they never surface past the step boundary
unless every attempt fails.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from scenario_runner.config import RetrySettings
from scenario_runner.errors import ErrorKind, RunnerError, is_transient_message
from scenario_runner.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior. Delays are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay: float = 5.0
    retryable_kinds: frozenset[ErrorKind] = frozenset({
        ErrorKind.ELEMENT_NOT_FOUND,
        ErrorKind.ELEMENT_NOT_INTERACTABLE,
        ErrorKind.TIMEOUT,
    })

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryConfig":
        """Build from the retry section of the runner config."""
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_delay_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_delay=settings.max_delay_seconds,
            retryable_kinds=frozenset(ErrorKind(k) for k in settings.retryable_kinds),
        )

    def is_retryable(self, error: BaseException) -> bool:
        """
        Check if an error is retryable.

        Runner errors are judged by their kind alone. Other exceptions come
        from the automation backend and fall back to message matching.
        """
        if isinstance(error, RunnerError):
            return error.kind in self.retryable_kinds
        return is_transient_message(str(error))

    def delays(self) -> list[float]:
        """Sleep durations between attempts, in order."""
        result = []
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            result.append(delay)
            delay = min(delay * self.backoff_multiplier, self.max_delay)
        return result


DEFAULT_RETRY_CONFIG = RetryConfig()

NO_RETRY = RetryConfig(max_attempts=1)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    context: Optional[dict[str, Any]] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run an async operation, retrying retryable failures with backoff.

    Args:
        operation: Zero-argument coroutine function to run
        config: Retry configuration
        context: Extra fields added to retry log lines (step id, session)
        on_retry: Callback on each retry (attempt, error, delay)
        sleep: Coroutine used for backoff delays

    Returns:
        The operation's result

    Raises:
        The last error raised by the operation, unwrapped
    """
    context = context or {}
    delay = config.initial_delay
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not config.is_retryable(e):
                logger.debug(
                    "Non-retryable error",
                    attempt=attempt,
                    error=str(e),
                    **context,
                )
                raise

            if attempt >= config.max_attempts:
                logger.warning(
                    "Retries exhausted",
                    attempts=attempt,
                    error=str(e),
                    **context,
                )
                raise

            logger.warning(
                "Retry scheduled",
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay=delay,
                error=str(e),
                **context,
            )

            if on_retry:
                on_retry(attempt, e, delay)

            await sleep(delay)
            delay = min(delay * config.backoff_multiplier, config.max_delay)
