"""
Atomic checkpointing and resume support.

The orchestrator state of a run is persisted as one JSON document per
scenario. Each save overwrites the whole file atomically (write to a temp
file in the same directory, then rename) under a file lock. A missing or
unreadable checkpoint is never an error: the run simply starts fresh.
"""

import copy
import json
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, List

from filelock import FileLock, Timeout

from scenario_runner.logging import get_logger
from scenario_runner.models import MilestoneResult, utc_now_iso

logger = get_logger(__name__)

SCHEMA_VERSION = 1


@dataclass
class SessionBinding:
    """Session ID and the workspace it was bound to."""

    id: str
    workspace_path: Optional[str] = None


@dataclass
class OrchestratorState:
    """Progress of an orchestrated run."""

    run_id: str
    scenario_id: str
    start_time: str
    current_milestone: Optional[str] = None
    completed_milestones: List[str] = field(default_factory=list)
    failed_milestones: List[str] = field(default_factory=list)
    milestone_results: dict[str, MilestoneResult] = field(default_factory=dict)
    sessions: List[SessionBinding] = field(default_factory=list)
    last_checkpoint_time: Optional[str] = None
    partial: bool = False
    recovered: bool = False

    @classmethod
    def new(cls, run_id: str, scenario_id: str) -> "OrchestratorState":
        return cls(run_id=run_id, scenario_id=scenario_id, start_time=utc_now_iso())

    def mark_completed(self, milestone_id: str, result: MilestoneResult) -> None:
        """Record a milestone that no longer blocks its dependents."""
        if milestone_id in self.failed_milestones:
            self.failed_milestones.remove(milestone_id)
        if milestone_id not in self.completed_milestones:
            self.completed_milestones.append(milestone_id)
        self.milestone_results[milestone_id] = result

    def mark_failed(self, milestone_id: str, result: MilestoneResult) -> None:
        """Record a critical milestone failure."""
        if milestone_id in self.completed_milestones:
            self.completed_milestones.remove(milestone_id)
        if milestone_id not in self.failed_milestones:
            self.failed_milestones.append(milestone_id)
        self.milestone_results[milestone_id] = result

    @property
    def finished_ids(self) -> set[str]:
        return set(self.completed_milestones) | set(self.failed_milestones)

    def bind_session(self, session_id: str, workspace_path: Optional[str]) -> None:
        for binding in self.sessions:
            if binding.id == session_id:
                binding.workspace_path = workspace_path
                return
        self.sessions.append(SessionBinding(id=session_id, workspace_path=workspace_path))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "scenario_id": self.scenario_id,
            "start_time": self.start_time,
            "current_milestone": self.current_milestone,
            "completed_milestones": list(self.completed_milestones),
            "failed_milestones": list(self.failed_milestones),
            "milestone_results": {k: v.to_dict() for k, v in self.milestone_results.items()},
            "sessions": [{"id": s.id, "workspace_path": s.workspace_path} for s in self.sessions],
            "last_checkpoint_time": self.last_checkpoint_time,
            "partial": self.partial,
            "recovered": self.recovered,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorState":
        """Create from dictionary."""
        data = dict(data)
        data["milestone_results"] = {
            k: MilestoneResult.from_dict(v) for k, v in data.get("milestone_results", {}).items()
        }
        data["sessions"] = [SessionBinding(**s) for s in data.get("sessions", [])]
        state = cls(**data)
        overlap = set(state.completed_milestones) & set(state.failed_milestones)
        if overlap:
            raise ValueError(f"Milestones both completed and failed: {', '.join(sorted(overlap))}")
        return state

    def resumed_as(self, run_id: str) -> "OrchestratorState":
        """Copy of this state owned by a new run."""
        state = OrchestratorState.from_dict(copy.deepcopy(self.to_dict()))
        state.run_id = run_id
        state.partial = False
        state.recovered = False
        return state


class CheckpointStore:
    """
    One checkpoint file per scenario.

    Files live at <directory>/<scenario_id>.json unless an explicit path is
    configured for the run.
    """

    LOCK_TIMEOUT = 5.0

    def __init__(
        self,
        directory: Path,
        path_override: Optional[Path] = None,
        lock_timeout: float = LOCK_TIMEOUT,
    ):
        """
        Args:
            directory: Directory holding checkpoint files
            path_override: Explicit checkpoint file used for every scenario
            lock_timeout: Seconds to wait for the file lock
        """
        self.directory = Path(directory).expanduser()
        self.path_override = Path(path_override).expanduser() if path_override else None
        self.lock_timeout = lock_timeout

    def path_for(self, scenario_id: str) -> Path:
        if self.path_override:
            return self.path_override
        return self.directory / f"{scenario_id}.json"

    def save(self, state: OrchestratorState) -> bool:
        """
        Persist the full state, overwriting any previous checkpoint.

        The state is serialized before any I/O, so later mutations by the
        scheduler never leak into a write in progress.

        Returns:
            True if the checkpoint was written
        """
        state.last_checkpoint_time = utc_now_iso()
        payload = {"schema_version": SCHEMA_VERSION, "state": state.to_dict()}
        path = self.path_for(state.scenario_id)

        if self._atomic_write(path, payload):
            logger.debug(
                "Checkpoint saved",
                scenario_id=state.scenario_id,
                completed=len(state.completed_milestones),
                failed=len(state.failed_milestones),
                path=str(path),
            )
            return True
        return False

    def save_partial(self, state: OrchestratorState, session_id: str) -> Optional[Path]:
        """
        Write a recovered copy of the state after a session crash.

        The copy sits next to the regular checkpoint and is tagged
        partial/recovered; the regular checkpoint is left untouched.
        """
        snapshot = state.to_dict()
        snapshot["partial"] = True
        snapshot["recovered"] = True
        snapshot["last_checkpoint_time"] = utc_now_iso()

        regular = self.path_for(state.scenario_id)
        path = regular.with_name(f"{regular.stem}-{session_id}-PARTIAL.json")
        if self._atomic_write(path, {"schema_version": SCHEMA_VERSION, "state": snapshot}):
            logger.info("Partial checkpoint saved", session_id=session_id, path=str(path))
            return path
        return None

    def load(self, scenario_id: str) -> Optional[OrchestratorState]:
        """
        Load the checkpoint of a scenario.

        Returns:
            The stored state, or None when there is none or it cannot be used
        """
        path = self.path_for(scenario_id)
        if not path.exists():
            logger.debug("No checkpoint file found", path=str(path))
            return None

        try:
            with self._lock(path):
                with open(path, "r") as f:
                    data = json.load(f)
        except Timeout:
            logger.warning("Lock timeout while loading checkpoint", path=str(path))
            return None
        except (OSError, ValueError) as e:
            logger.error("Failed to load checkpoint", path=str(path), error=str(e))
            return None

        if not isinstance(data, dict):
            logger.error("Failed to load checkpoint", path=str(path), error="not a JSON object")
            return None

        # Files written before the envelope existed hold the bare state
        version = data.get("schema_version", 1)
        body = data.get("state", data) if "schema_version" in data else data

        if not isinstance(version, int) or version > SCHEMA_VERSION:
            logger.warning(
                "Checkpoint written by a newer version, starting fresh",
                path=str(path),
                schema_version=version,
            )
            return None

        try:
            state = OrchestratorState.from_dict(body)
        except (TypeError, ValueError, KeyError) as e:
            logger.error("Failed to load checkpoint", path=str(path), error=str(e))
            return None

        if state.scenario_id != scenario_id:
            logger.warning(
                "Checkpoint belongs to another scenario, ignoring",
                expected=scenario_id,
                found=state.scenario_id,
            )
            return None

        logger.info(
            "Checkpoint loaded",
            scenario_id=scenario_id,
            completed=len(state.completed_milestones),
            failed=len(state.failed_milestones),
        )
        return state

    def clear(self, scenario_id: str) -> bool:
        """Delete the checkpoint of a scenario. Returns True if one existed."""
        path = self.path_for(scenario_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Checkpoint cleared", scenario_id=scenario_id)
        return True

    def list_checkpoints(self) -> List[dict[str, Any]]:
        """Summaries of every checkpoint in the directory, newest first."""
        found = []
        if not self.directory.exists():
            return found

        for path in self.directory.glob("*.json"):
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                body = data.get("state", data)
                found.append({
                    "scenario_id": body.get("scenario_id", path.stem),
                    "run_id": body.get("run_id"),
                    "completed": len(body.get("completed_milestones", [])),
                    "failed": len(body.get("failed_milestones", [])),
                    "partial": body.get("partial", False),
                    "last_checkpoint_time": body.get("last_checkpoint_time"),
                    "path": str(path),
                })
            except (OSError, ValueError, AttributeError):
                continue

        found.sort(key=lambda c: c.get("last_checkpoint_time") or "", reverse=True)
        return found

    def _atomic_write(self, path: Path, payload: dict[str, Any]) -> bool:
        text = json.dumps(payload, indent=2)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with self._lock(path):
                fd, temp_path = tempfile.mkstemp(
                    suffix=".json",
                    prefix=".checkpoint_",
                    dir=str(path.parent),
                )
                try:
                    with os.fdopen(fd, "w") as f:
                        f.write(text)
                    shutil.move(temp_path, path)
                except BaseException:
                    if os.path.exists(temp_path):
                        os.unlink(temp_path)
                    raise
        except Timeout:
            logger.warning("Lock timeout during checkpoint write", path=str(path))
            return False
        except OSError as e:
            logger.error("Failed to write checkpoint", path=str(path), error=str(e))
            return False
        return True

    def _lock(self, path: Path) -> FileLock:
        return FileLock(str(path) + ".lock", timeout=self.lock_timeout)
