"""
Configuration schema using Pydantic.

Runner configuration is loaded from a YAML file, with environment variables
overriding file values. Nothing secret is ever read from or written to the
config file.
"""

from pathlib import Path
from typing import Optional, List, Dict, Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required values."""

    def __init__(self, message: str, field: Optional[str] = None, suggestions: Optional[List[str]] = None):
        self.message = message
        self.field = field
        self.suggestions = suggestions or []
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [self.message]
        if self.field:
            lines.append(f"  Field: {self.field}")
        if self.suggestions:
            lines.append("  Suggestions:")
            for s in self.suggestions:
                lines.append(f"    - {s}")
        return "\n".join(lines)


class RetrySettings(BaseModel):
    """Step-level retry defaults."""

    max_attempts: int = Field(default=3, ge=1, le=20)
    initial_delay_seconds: float = Field(default=0.5, ge=0.0, le=60.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    max_delay_seconds: float = Field(default=5.0, ge=0.0, le=300.0)
    retryable_kinds: List[str] = Field(
        default=["element_not_found", "element_not_interactable", "timeout"],
        description="ErrorKind values retried by the step executor",
    )

    @field_validator("retryable_kinds")
    @classmethod
    def validate_kinds(cls, v: List[str]) -> List[str]:
        from scenario_runner.errors import ErrorKind

        known = {k.value for k in ErrorKind}
        unknown = [k for k in v if k not in known]
        if unknown:
            raise ValueError(f"Unknown error kinds: {', '.join(unknown)}")
        return v


class SessionSettings(BaseModel):
    """Application launch configuration."""

    app_path: Optional[str] = Field(default=None, description="Explicit path to the application executable")
    launch_timeout_seconds: float = Field(default=60.0, ge=1.0, le=600.0)
    ready_timeout_seconds: float = Field(default=60.0, ge=1.0, le=600.0)
    ready_selector: str = Field(default=".monaco-workbench")
    settle_delay_seconds: float = Field(default=2.0, ge=0.0, le=60.0)
    extra_args: List[str] = Field(default_factory=list)
    fresh_profile: bool = Field(default=True, description="Default for the implicit single session")


class HealthSettings(BaseModel):
    """Session health monitoring."""

    interval_seconds: float = Field(default=5.0, gt=0.0, le=300.0)
    timeout_seconds: float = Field(default=3.0, gt=0.0, le=60.0)
    max_failures: int = Field(default=3, ge=1, le=20)

    @model_validator(mode="after")
    def validate_timeout(self) -> "HealthSettings":
        if self.timeout_seconds > self.interval_seconds:
            raise ValueError(
                f"health.timeout_seconds ({self.timeout_seconds}) "
                f"must be <= health.interval_seconds ({self.interval_seconds})"
            )
        return self


class OrchestrationSettings(BaseModel):
    """Scheduler behavior not carried by the scenario itself."""

    milestone_retry_delay_seconds: float = Field(default=5.0, ge=0.0, le=600.0)
    wait_progress_interval_seconds: float = Field(default=30.0, gt=0.0, le=3600.0)


class StorageSettings(BaseModel):
    """Storage and persistence configuration."""

    base_path: str = Field(default="~/.scenario-runner")
    lock_timeout_seconds: float = Field(default=5.0, gt=0.0, le=120.0)
    keep_workspaces: bool = False


class RunnerConfig(BaseModel):
    """Root configuration for the scenario runner."""

    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    retry: RetrySettings = Field(default_factory=RetrySettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    @property
    def storage_path(self) -> Path:
        """Get resolved storage path."""
        return Path(self.storage.base_path).expanduser()

    @property
    def checkpoints_path(self) -> Path:
        """Directory holding one checkpoint per scenario."""
        return self.storage_path / "checkpoints"

    @property
    def artifacts_path(self) -> Path:
        """Directory holding per-run artifacts."""
        return self.storage_path / "artifacts"

    @property
    def workspaces_path(self) -> Path:
        """Directory holding cloned workspaces."""
        return self.storage_path / "workspaces"

    @model_validator(mode="after")
    def validate_consistency(self) -> "RunnerConfig":
        """Validate cross-field consistency."""
        if self.retry.max_delay_seconds < self.retry.initial_delay_seconds:
            raise ValueError(
                f"retry.max_delay_seconds ({self.retry.max_delay_seconds}) "
                f"must be >= retry.initial_delay_seconds ({self.retry.initial_delay_seconds})"
            )
        return self


class EnvOverrides(BaseSettings):
    """Environment variables that override config file values."""

    model_config = SettingsConfigDict(env_prefix="SCENARIO_RUNNER_", extra="ignore")

    storage_path: Optional[str] = None
    app_path: Optional[str] = None
    log_level: Optional[str] = None
    max_retries: Optional[int] = None
    milestone_retry_delay: Optional[float] = None


def get_default_config_path() -> Path:
    """Get default config file path."""
    return Path.home() / ".scenario-runner" / "config.yaml"


def load_config(config_path: Optional[str] = None) -> RunnerConfig:
    """
    Load configuration from YAML file.

    Falls back to defaults if the default file doesn't exist.
    Environment variables override config file values.

    Args:
        config_path: Path to config file (optional)

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If config file is missing or invalid
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(
                f"Config file not found: {path}",
                suggestions=[
                    f"Create the config file at {path}",
                    "Or run without --config to use defaults",
                ],
            )
    else:
        path = get_default_config_path()

    data: Dict[str, Any] = {}

    if path.exists():
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            raise ConfigurationError(
                f"Invalid YAML in config file: {path}",
                suggestions=[
                    f"Check syntax at line {mark.line + 1 if mark else 'unknown'}",
                    "Use a YAML validator to check your config",
                ],
            )
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config file must contain a mapping: {path}",
                suggestions=["Top-level keys are retry, session, health, orchestration, storage"],
            )

    data = _deep_merge(data, _get_env_overrides())

    try:
        return RunnerConfig(**data)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}",
            suggestions=[
                "Check field names and values in your config",
                "Run 'scenario-runner config --show' to see effective values",
            ],
        )


def _get_env_overrides() -> Dict[str, Any]:
    """Get configuration overrides from environment variables."""
    env = EnvOverrides()
    overrides: Dict[str, Any] = {}

    mappings = {
        "storage_path": ("storage", "base_path"),
        "app_path": ("session", "app_path"),
        "max_retries": ("retry", "max_attempts"),
        "milestone_retry_delay": ("orchestration", "milestone_retry_delay_seconds"),
    }

    for attr, (section, field) in mappings.items():
        value = getattr(env, attr)
        if value is not None:
            overrides.setdefault(section, {})[field] = value

    if env.log_level:
        overrides["log_level"] = env.log_level.upper()

    return overrides


def _deep_merge(base: Dict, overlay: Dict) -> Dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def save_config(config: RunnerConfig, config_path: Optional[str] = None) -> Path:
    """Save configuration to YAML file."""
    path = Path(config_path) if config_path else get_default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(config.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)

    return path
