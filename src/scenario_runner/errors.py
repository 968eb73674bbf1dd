"""
Error taxonomy for scenario runs.

Errors carry an explicit ErrorKind assigned where they originate. Retry
decisions are made from the kind; matching on message text is only used for
exceptions raised by the automation backend that carry no kind.
"""

import re
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Closed set of error classifications."""

    APP_NOT_FOUND = "app_not_found"
    LAUNCH_FAILED = "launch_failed"
    APP_CRASHED = "app_crashed"
    ELEMENT_NOT_FOUND = "element_not_found"
    ELEMENT_NOT_INTERACTABLE = "element_not_interactable"
    TIMEOUT = "timeout"
    STEP_FAILED = "step_failed"
    WAIT_FAILED = "wait_failed"
    WORKSPACE_FAILED = "workspace_failed"
    CHECKPOINT_INVALID = "checkpoint_invalid"
    UNKNOWN = "unknown"


class RunnerError(Exception):
    """Base error raised by runner components."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        recoverable: bool = False,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.kind = kind
        self.recoverable = recoverable
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for event logs."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


class SessionError(RunnerError):
    """Raised when an application session cannot be launched or used."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.LAUNCH_FAILED,
        session_id: Optional[str] = None,
    ):
        super().__init__(message, kind=kind, details={"session_id": session_id})
        self.session_id = session_id


class SetupError(RunnerError):
    """Raised when run setup fails before any milestone executes."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.WORKSPACE_FAILED):
        super().__init__(message, kind=kind)


class CriticalMilestoneError(RunnerError):
    """Raised when a critical milestone fails under the abort strategy."""

    def __init__(self, milestone_id: str, reason: Optional[str] = None):
        self.milestone_id = milestone_id
        self.reason = reason
        message = f"Critical milestone '{milestone_id}' failed"
        if reason:
            message += f": {reason}"
        super().__init__(message, kind=ErrorKind.STEP_FAILED)


class ScenarioParseError(Exception):
    """Raised when a scenario document cannot be parsed or validated."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.message = message
        self.source = source
        text = f"{source}: {message}" if source else message
        super().__init__(text)


# Transient failure text reported by browser-automation backends
TRANSIENT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"timeout",
        r"timed out",
        r"element is not attached",
        r"element is not visible",
        r"element is not enabled",
        r"element is not stable",
        r"element is outside of the viewport",
        r"waiting for selector",
        r"target closed",
        r"navigation interrupted",
        r"execution context was destroyed",
        r"frame was detached",
        r"connection closed",
        r"browser has been closed",
    )
]


def is_transient_message(message: str) -> bool:
    """Check whether an error message looks like a transient automation failure."""
    return any(p.search(message) for p in TRANSIENT_PATTERNS)


def classify_error(error: BaseException) -> ErrorKind:
    """
    Derive an ErrorKind for any exception.

    RunnerError instances keep their own kind. Foreign exceptions are mapped
    from their type or message so the rest of the runner only ever sees kinds.
    """
    if isinstance(error, RunnerError):
        return error.kind
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT

    message = str(error).lower()
    if "not attached" in message or "waiting for selector" in message:
        return ErrorKind.ELEMENT_NOT_FOUND
    if "not visible" in message or "not enabled" in message or "not stable" in message:
        return ErrorKind.ELEMENT_NOT_INTERACTABLE
    if "timeout" in message or "timed out" in message:
        return ErrorKind.TIMEOUT
    return ErrorKind.UNKNOWN
