"""
Run lifecycle events.

Every observable transition of a run (milestones starting and finishing,
retries, wait progress, session crashes, checkpoint flushes) is recorded as
a RunEvent. Events are kept in memory, appended to a JSONL file when an
output path is set, and forwarded to an optional handler so a front end can
render progress. The same files feed the `scenario-runner stats` command.
"""

import json
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from scenario_runner.logging import get_logger
from scenario_runner.models import utc_now_iso

logger = get_logger(__name__)


class RunEventType(str, Enum):
    """Types of run events."""

    # Run
    RUN_START = "run_start"
    RUN_END = "run_end"

    # Milestones
    MILESTONE_START = "milestone_start"
    MILESTONE_RETRY = "milestone_retry"
    MILESTONE_COMPLETE = "milestone_complete"
    MILESTONE_SKIPPED = "milestone_skipped"

    # Steps
    STEP_START = "step_start"
    STEP_RETRY = "step_retry"
    STEP_COMPLETE = "step_complete"

    # Wait conditions
    WAIT_START = "wait_start"
    WAIT_PROGRESS = "wait_progress"
    WAIT_COMPLETE = "wait_complete"

    # Sessions
    SESSION_LAUNCH = "session_launch"
    SESSION_CRASH = "session_crash"
    SESSION_CLOSE = "session_close"

    # Persistence
    CHECKPOINT_SAVED = "checkpoint_saved"
    PARTIAL_SAVE = "partial_save"

    ERROR = "error"


@dataclass
class RunEvent:
    """Single event record."""

    ts: str
    run_id: Optional[str]
    event_type: RunEventType
    success: bool = True
    duration_ms: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["event_type"] = self.event_type.value
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


EventHandler = Callable[[RunEvent], None]


class EventLog:
    """
    Collects, forwards and persists run events.

    Handler failures are logged and never interrupt the run.
    """

    EVENTS_FILE = "events.jsonl"

    def __init__(
        self,
        run_id: Optional[str] = None,
        output_path: Optional[Path] = None,
        handler: Optional[EventHandler] = None,
    ):
        self.run_id = run_id
        self.output_path = output_path
        self.handler = handler
        self._events: List[RunEvent] = []
        self._counts: Dict[str, int] = defaultdict(int)
        self._durations: Dict[str, List[int]] = defaultdict(list)
        self._failures: Dict[str, int] = defaultdict(int)

    def set_run(self, run_id: str, run_path: Optional[Path] = None) -> None:
        """
        Bind the log to a run.

        Args:
            run_id: Run identifier
            run_path: Optional artifact directory of the run
        """
        self.run_id = run_id
        if run_path:
            self.output_path = run_path / self.EVENTS_FILE

    @property
    def events(self) -> List[RunEvent]:
        return list(self._events)

    def of_type(self, event_type: RunEventType) -> List[RunEvent]:
        return [e for e in self._events if e.event_type == event_type]

    def emit(
        self,
        event_type: RunEventType,
        success: bool = True,
        duration_ms: Optional[int] = None,
        **data: Any,
    ) -> RunEvent:
        """
        Record an event.

        Args:
            event_type: Type of event
            success: Whether the transition represents success
            duration_ms: Duration in milliseconds
            **data: Additional event data

        Returns:
            The recorded event
        """
        event = RunEvent(
            ts=utc_now_iso(),
            run_id=self.run_id,
            event_type=event_type,
            success=success,
            duration_ms=duration_ms,
            data=data,
        )

        self._events.append(event)
        self._update_aggregates(event)
        self._persist(event)

        if self.handler:
            try:
                self.handler(event)
            except Exception as e:
                logger.warning("Event handler failed", event_type=event_type.value, error=str(e))

        return event

    def get_summary(self) -> Dict[str, Any]:
        """Summary of everything recorded so far."""
        return {
            "run_id": self.run_id,
            "total_events": len(self._events),
            "counts": dict(self._counts),
            "failures": dict(self._failures),
            "durations": _duration_stats(self._durations),
        }

    def _update_aggregates(self, event: RunEvent) -> None:
        key = event.event_type.value
        self._counts[key] += 1
        if event.duration_ms is not None:
            self._durations[key].append(event.duration_ms)
        if not event.success:
            self._failures[key] += 1

    def _persist(self, event: RunEvent) -> None:
        if not self.output_path:
            return

        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.output_path, "a") as f:
                f.write(event.to_json() + "\n")
        except OSError as e:
            logger.warning("Failed to persist event", error=str(e))


def _duration_stats(durations: Dict[str, List[int]]) -> Dict[str, Dict[str, float]]:
    return {
        key: {
            "count": len(values),
            "total_ms": sum(values),
            "avg_ms": sum(values) / len(values),
            "min_ms": min(values),
            "max_ms": max(values),
        }
        for key, values in durations.items()
        if values
    }


def load_run_events(run_path: Path) -> List[RunEvent]:
    """
    Load events from a run directory.

    Malformed lines are skipped.
    """
    events_file = run_path / EventLog.EVENTS_FILE
    if not events_file.exists():
        return []

    events = []
    with open(events_file, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                data["event_type"] = RunEventType(data["event_type"])
                events.append(RunEvent(**data))
            except (ValueError, KeyError, TypeError):
                continue

    return events


def aggregate_run_stats(run_path: Path) -> Dict[str, Any]:
    """
    Aggregate stats from a run's event log.

    Returns:
        Aggregated statistics, or an empty dict when the run has no events
    """
    events = load_run_events(run_path)
    if not events:
        return {}

    counts: Dict[str, int] = defaultdict(int)
    durations: Dict[str, List[int]] = defaultdict(list)
    milestones: Dict[str, str] = {}
    failures = 0
    retries = 0
    status = None

    for e in events:
        counts[e.event_type.value] += 1
        if e.duration_ms is not None:
            durations[e.event_type.value].append(e.duration_ms)
        if not e.success:
            failures += 1
        if e.event_type in (RunEventType.STEP_RETRY, RunEventType.MILESTONE_RETRY):
            retries += 1
        if e.event_type in (RunEventType.MILESTONE_COMPLETE, RunEventType.MILESTONE_SKIPPED):
            milestones[e.data.get("milestone_id", "?")] = e.data.get("status", "")
        if e.event_type == RunEventType.RUN_END:
            status = e.data.get("status")

    return {
        "run_id": events[0].run_id,
        "scenario_id": events[0].data.get("scenario_id"),
        "total_events": len(events),
        "status": status,
        "counts": dict(counts),
        "durations": _duration_stats(durations),
        "milestones": milestones,
        "failures": failures,
        "retries": retries,
    }
