"""
Scenario definitions and run results.

Scenario definitions are Pydantic models validated once at parse time and
treated as immutable afterwards. Results are plain dataclasses mutated by the
coroutine that owns them and serialized with to_dict/from_dict.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from scenario_runner.errors import ScenarioParseError


def utc_now_iso() -> str:
    """Get current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


KNOWN_ACTIONS = frozenset({
    "launchVSCodeWithProfile",
    "openCommandPalette",
    "openCopilotChat",
    "openInlineChat",
    "sendChatMessage",
    "typeText",
    "pressKey",
    "wait",
    "clickElement",
    "selectFromList",
    "selectFromDropdown",
    "createFile",
    "selectAll",
    "openFile",
    "openSettings",
    "acceptSuggestion",
    "setBreakpoint",
    "runTerminalCommand",
    "hover",
    "githubLogin",
    "signInWithGitHub",
    "clickModelPicker",
    "selectModel",
    "openExtensionsPanel",
    "searchExtensions",
    "installExtension",
    "openAgentMode",
    "startBackgroundAgent",
})

# Arguments an action cannot run without; a tuple means "any one of"
REQUIRED_ACTION_ARGS: dict[str, tuple[str, ...]] = {
    "sendChatMessage": ("message",),
    "typeText": ("text",),
    "pressKey": ("key",),
    "clickElement": ("selector", "target"),
    "openFile": ("path",),
}


class _Definition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


# ============================================================================
# Scenario definitions
# ============================================================================


class Step(_Definition):
    """A single UI automation step."""

    id: str
    action: str
    description: Optional[str] = None
    args: dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(default=None, alias="timeout", gt=0)
    optional: bool = False

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        if v not in KNOWN_ACTIONS:
            raise ValueError(f"Unknown action '{v}'")
        return v

    @model_validator(mode="after")
    def validate_args(self) -> "Step":
        required = REQUIRED_ACTION_ARGS.get(self.action)
        if required and not any(self.args.get(name) for name in required):
            names = '" or "'.join(required)
            raise ValueError(f'{self.action} requires a "{names}" argument')
        return self


class WaitConditionType(str, Enum):
    """Kinds of wait condition."""

    ELEMENT = "element"
    TEXT = "text"
    NOTIFICATION = "notification"
    TIMEOUT = "timeout"
    MANUAL = "manual"
    AGENT_COMPLETE = "agentComplete"


WAIT_TYPE_ALIASES = {
    "element-present": WaitConditionType.ELEMENT,
    "text-present": WaitConditionType.TEXT,
    "notification-present": WaitConditionType.NOTIFICATION,
    "fixed-timeout": WaitConditionType.TIMEOUT,
    "manual-confirmation": WaitConditionType.MANUAL,
    "agent-complete-signal": WaitConditionType.AGENT_COMPLETE,
    "agent_complete": WaitConditionType.AGENT_COMPLETE,
}


class WaitCondition(_Definition):
    """A polled predicate with a timeout."""

    type: WaitConditionType
    target: Optional[str] = None
    expected: Optional[str] = None
    timeout_ms: int = Field(default=300_000, alias="timeout", gt=0)
    poll_interval_ms: int = Field(default=5_000, alias="pollInterval", gt=0)
    description: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if isinstance(v, str) and v in WAIT_TYPE_ALIASES:
            return WAIT_TYPE_ALIASES[v]
        return v

    @model_validator(mode="before")
    @classmethod
    def default_poll_interval(cls, data: Any) -> Any:
        # Unset intervals scale down for short waits
        if not isinstance(data, dict) or "pollInterval" in data or "poll_interval_ms" in data:
            return data
        timeout = data.get("timeout", data.get("timeout_ms"))
        if isinstance(timeout, int) and not isinstance(timeout, bool) and timeout > 0:
            return {**data, "pollInterval": max(1, min(5_000, timeout // 2))}
        return data

    @model_validator(mode="after")
    def validate_interval(self) -> "WaitCondition":
        if self.type != WaitConditionType.TIMEOUT and self.poll_interval_ms >= self.timeout_ms:
            raise ValueError(
                f"pollInterval ({self.poll_interval_ms}ms) must be less than "
                f"timeout ({self.timeout_ms}ms)"
            )
        if self.type == WaitConditionType.ELEMENT and not self.target:
            raise ValueError("element wait condition requires a target")
        if self.type == WaitConditionType.TEXT and not self.expected:
            raise ValueError("text wait condition requires expected text")
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000


class Milestone(_Definition):
    """A dependency-ordered unit of work made of steps and wait conditions."""

    id: str
    name: str
    description: Optional[str] = None
    steps: tuple[Step, ...] = ()
    depends_on: tuple[str, ...] = Field(default=(), alias="dependsOn")
    parallel: bool = False
    critical: bool = True
    wait_for: tuple[WaitCondition, ...] = Field(default=(), alias="waitFor")
    screenshot: bool = True
    timeout_ms: Optional[int] = Field(default=None, alias="timeout", gt=0)
    session: Optional[str] = None


class RepositoryConfig(_Definition):
    """Repository cloned into a session workspace."""

    url: str
    ref: Optional[str] = None
    subdir: Optional[str] = None
    setup_commands: tuple[str, ...] = Field(default=(), alias="setupCommands")


class AppVariant(str, Enum):
    """Release channel of the target application."""

    STABLE = "stable"
    INSIDERS = "insiders"
    EXPLORATION = "exploration"


class SessionConfig(_Definition):
    """Declared application session."""

    id: str
    workspace_path: Optional[str] = Field(default=None, alias="workspacePath")
    repository: Optional[RepositoryConfig] = None
    fresh_profile: bool = Field(default=True, alias="freshProfile")
    variant: AppVariant = Field(default=AppVariant.STABLE, alias="vscodeVersion")


class FailureStrategy(str, Enum):
    """How the scheduler reacts to a failed milestone."""

    CONTINUE = "continue"
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


class OrchestrationConfig(_Definition):
    """Milestone graph and its execution policy."""

    enabled: bool = True
    total_timeout_ms: int = Field(default=1_800_000, alias="totalTimeout", gt=0)
    milestones: tuple[Milestone, ...] = ()
    sessions: tuple[SessionConfig, ...] = ()
    checkpoint_interval_ms: int = Field(default=60_000, alias="checkpointInterval", gt=0)
    checkpoint_path: Optional[str] = Field(default=None, alias="checkpointPath")
    failure_strategy: FailureStrategy = Field(default=FailureStrategy.CONTINUE, alias="failureStrategy")
    max_retries: int = Field(default=2, alias="maxRetries", ge=0)

    @model_validator(mode="after")
    def validate_graph(self) -> "OrchestrationConfig":
        ids = [m.id for m in self.milestones]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate milestone ids: {', '.join(duplicates)}")

        known = set(ids)
        for m in self.milestones:
            missing = [d for d in m.depends_on if d not in known]
            if missing:
                raise ValueError(f"Milestone '{m.id}' depends on unknown milestones: {', '.join(missing)}")

        session_ids = {s.id for s in self.sessions}
        if len(session_ids) != len(self.sessions):
            raise ValueError("Duplicate session ids")
        for m in self.milestones:
            if m.session and session_ids and m.session not in session_ids:
                raise ValueError(f"Milestone '{m.id}' references unknown session '{m.session}'")
        return self


class Scenario(_Definition):
    """A scenario definition as loaded from YAML."""

    id: str
    name: str
    description: Optional[str] = None
    tags: tuple[str, ...] = ()
    steps: tuple[Step, ...] = ()
    orchestration: Optional[OrchestrationConfig] = None

    @model_validator(mode="after")
    def validate_has_work(self) -> "Scenario":
        if not self.steps and not (self.orchestration and self.orchestration.milestones):
            raise ValueError("Scenario has no steps or milestones defined")
        if not self.steps and not self.is_orchestrated:
            raise ValueError("Orchestration is disabled and the scenario has no steps to run")
        return self

    @property
    def is_orchestrated(self) -> bool:
        return bool(
            self.orchestration
            and self.orchestration.enabled
            and self.orchestration.milestones
        )

    def effective_orchestration(self) -> OrchestrationConfig:
        """
        Orchestration used to run this scenario.

        A plain step list becomes one critical milestone named after the
        scenario, so every scenario runs through the same scheduler.
        """
        if self.is_orchestrated:
            return self.orchestration
        base = self.orchestration or OrchestrationConfig()
        main = Milestone(id="main", name=self.name, steps=self.steps)
        return base.model_copy(update={"milestones": (main,)})


def parse_scenario(text: str, source: Optional[str] = None) -> Scenario:
    """
    Parse and validate a scenario YAML document.

    Raises:
        ScenarioParseError: On invalid YAML or schema violations
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ScenarioParseError(f"Invalid YAML: {e}", source=source) from e

    if not isinstance(data, dict):
        raise ScenarioParseError("Scenario document must be a mapping", source=source)

    try:
        return Scenario.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'scenario'}: {err['msg']}"
            for err in e.errors()
        )
        raise ScenarioParseError(problems, source=source) from e


def load_scenario(path: Path) -> Scenario:
    """Read and parse a scenario file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ScenarioParseError(f"Cannot read scenario file: {e}", source=str(path)) from e
    return parse_scenario(text, source=str(path))


# ============================================================================
# Results
# ============================================================================


class StepStatus(str, Enum):
    """Terminal status of a step."""

    PASSED = "passed"
    FAILED = "failed"


class MilestoneStatus(str, Enum):
    """Lifecycle of a milestone result."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (MilestoneStatus.PASSED, MilestoneStatus.FAILED, MilestoneStatus.SKIPPED)


class RunStatus(str, Enum):
    """Terminal status of a run."""

    PASSED = "passed"
    FAILED = "failed"


@dataclass
class StepResult:
    """Outcome of one step execution."""

    step_id: str
    status: StepStatus
    start_time: str
    end_time: Optional[str] = None
    duration_ms: int = 0
    logs: list[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 1

    @property
    def passed(self) -> bool:
        return self.status == StepStatus.PASSED

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepResult":
        data = dict(data)
        data["status"] = StepStatus(data["status"])
        return cls(**data)


@dataclass
class WaitResult:
    """Outcome of one wait condition."""

    condition_type: str
    passed: bool
    wait_time_ms: int
    target: Optional[str] = None
    evidence: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WaitResult":
        return cls(**data)


@dataclass
class MilestoneResult:
    """Outcome of a milestone, finalized once it reaches a terminal status."""

    milestone_id: str
    name: str
    status: MilestoneStatus = MilestoneStatus.PENDING
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_ms: int = 0
    step_results: list[StepResult] = field(default_factory=list)
    wait_results: list[WaitResult] = field(default_factory=list)
    retry_count: int = 0
    error: Optional[str] = None
    screenshot: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["step_results"] = [s.to_dict() for s in self.step_results]
        d["wait_results"] = [w.to_dict() for w in self.wait_results]
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MilestoneResult":
        data = dict(data)
        data["status"] = MilestoneStatus(data["status"])
        data["step_results"] = [StepResult.from_dict(s) for s in data.get("step_results", [])]
        data["wait_results"] = [WaitResult.from_dict(w) for w in data.get("wait_results", [])]
        return cls(**data)


@dataclass
class RunReport:
    """Final report of a scenario run."""

    id: str
    scenario_id: str
    scenario_name: str
    status: RunStatus
    start_time: str
    end_time: Optional[str] = None
    duration_ms: int = 0
    milestones: list[MilestoneResult] = field(default_factory=list)
    steps: list[StepResult] = field(default_factory=list)
    artifacts: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    evaluation: Optional[dict[str, Any]] = None

    @property
    def passed(self) -> bool:
        return self.status == RunStatus.PASSED

    def result_for(self, milestone_id: str) -> Optional[MilestoneResult]:
        return next((m for m in self.milestones if m.milestone_id == milestone_id), None)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["milestones"] = [m.to_dict() for m in self.milestones]
        d["steps"] = [s.to_dict() for s in self.steps]
        return d
