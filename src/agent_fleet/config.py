"""Fleet configuration models and environment resolution.

Every tunable is resolved with the precedence explicit value > environment
variable > built-in default. Numeric environment overrides that do not parse,
are not finite, or fall outside the allowed range are ignored with a warning.
"""

from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Any, ClassVar, Dict, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from agent_fleet.monitoring.logging import get_logger

logger = get_logger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def env_number(
    env_var: str,
    default: float,
    *,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
    integer: bool = False,
    environ: Optional[Dict[str, str]] = None,
) -> float:
    """Read a numeric override from the environment, falling back to ``default``."""
    source = os.environ if environ is None else environ
    raw = source.get(env_var)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = float(str(raw).strip())
    except ValueError:
        logger.warning("config.env.unparseable", env_var=env_var, value=raw)
        return default
    if not math.isfinite(value):
        logger.warning("config.env.non_finite", env_var=env_var, value=raw)
        return default
    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        logger.warning(
            "config.env.out_of_range",
            env_var=env_var,
            value=value,
            minimum=minimum,
            maximum=maximum,
        )
        return default
    return int(value) if integer else value


def env_bool(env_var: str, default: bool, environ: Optional[Dict[str, str]] = None) -> bool:
    source = os.environ if environ is None else environ
    raw = source.get(env_var)
    if raw is None or raw == "":
        return default
    key = str(raw).strip().lower()
    if key in TRUE_VALUES:
        return True
    if key in FALSE_VALUES:
        return False
    return default


def env_str(env_var: str, environ: Optional[Dict[str, str]] = None) -> Optional[str]:
    """Return a trimmed environment value, treating empty strings as unset."""
    source = os.environ if environ is None else environ
    raw = source.get(env_var)
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


class EnvSection(BaseModel):
    """Base for config sections whose numeric fields accept env overrides.

    ``ENV_NUMBERS`` maps field name to ``(env_var, minimum, maximum)``.
    """

    ENV_NUMBERS: ClassVar[Dict[str, Tuple[str, Optional[float], Optional[float]]]] = {}

    @model_validator(mode="before")
    @classmethod
    def apply_env_overrides(cls, data: Any) -> Any:
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return data
        values = dict(data)
        for field_name, (env_var, minimum, maximum) in cls.ENV_NUMBERS.items():
            if values.get(field_name) is not None:
                continue
            default = cls.model_fields[field_name].default
            values[field_name] = env_number(
                env_var,
                default,
                minimum=minimum,
                maximum=maximum,
                integer=isinstance(default, int) and not isinstance(default, bool),
            )
        return values


class EventBusConfig(EnvSection):
    """Event bus capacity, dedup and liveness settings."""

    ENV_NUMBERS: ClassVar[Dict[str, Tuple[str, Optional[float], Optional[float]]]] = {
        "max_event_log": ("AGENT_FLEET_MAX_EVENT_LOG", 10, 100_000),
        "dedupe_window_seconds": ("AGENT_FLEET_DEDUPE_WINDOW_SECONDS", 0, 60),
        "stale_threshold_seconds": ("AGENT_FLEET_STALE_THRESHOLD_SECONDS", 1, 86_400),
        "stale_check_interval_seconds": ("AGENT_FLEET_STALE_CHECK_INTERVAL_SECONDS", 0.1, 3_600),
        "max_error_patterns_per_task": ("AGENT_FLEET_MAX_ERROR_HISTORY", 1, 10_000),
        "max_auto_retries": ("AGENT_FLEET_MAX_AUTO_RETRIES", 0, 100),
    }

    max_event_log: int = Field(500, ge=1, description="Ring buffer capacity")
    dedupe_window_seconds: float = Field(0.5, ge=0, description="Duplicate suppression window")
    stale_threshold_seconds: float = Field(90.0, gt=0, description="Heartbeat silence before an agent is stale")
    stale_check_interval_seconds: float = Field(30.0, gt=0, description="Stale sweep period")
    max_error_patterns_per_task: int = Field(50, ge=1, description="Error history kept per task")
    max_auto_retries: int = Field(5, ge=0, description="Auto-retries per task before escalating to block")
    broadcast_channels: Tuple[str, ...] = ("agents", "tasks", "overview")


class ClassifierConfig(EnvSection):
    """Recovery state machine ceilings and cooldowns."""

    ENV_NUMBERS: ClassVar[Dict[str, Tuple[str, Optional[float], Optional[float]]]] = {
        "max_consecutive_errors": ("AGENT_FLEET_MAX_CONSECUTIVE_ERRORS", 1, 100),
        "workflow_retry_ceiling": ("AGENT_FLEET_WORKFLOW_RETRY_CEILING", 1, 20),
        "generic_retry_ceiling": ("AGENT_FLEET_GENERIC_RETRY_CEILING", 1, 20),
        "cooldown_seconds": ("AGENT_FLEET_COOLDOWN_SECONDS", 1, 86_400),
        "rate_limit_cooldown_seconds": ("AGENT_FLEET_RATE_LIMIT_COOLDOWN_SECONDS", 1, 86_400),
        "rate_limit_pause_threshold": ("AGENT_FLEET_RATE_LIMIT_PAUSE_THRESHOLD", 1, 1_000),
    }

    max_consecutive_errors: int = Field(5, ge=1)
    workflow_retry_ceiling: int = Field(3, ge=1, description="Occurrence that turns push/test/lint/build retries into manual")
    generic_retry_ceiling: int = Field(3, ge=1, description="Occurrence that turns unrecognized errors into manual")
    cooldown_seconds: float = Field(300.0, gt=0, description="Rate-limit flood window")
    rate_limit_cooldown_seconds: float = Field(60.0, gt=0)
    rate_limit_pause_threshold: int = Field(3, ge=1, description="Rate-limit hits in the window that pause the executor")


class RunnerConfig(EnvSection):
    """Executor turn limits."""

    ENV_NUMBERS: ClassVar[Dict[str, Tuple[str, Optional[float], Optional[float]]]] = {
        "turn_timeout_seconds": ("AGENT_FLEET_TURN_TIMEOUT_SECONDS", 1, 86_400),
        "max_stream_retries": ("AGENT_FLEET_MAX_STREAM_RETRIES", 0, 20),
    }

    turn_timeout_seconds: float = Field(3600.0, gt=0)
    max_stream_retries: int = Field(5, ge=0)
    stream_retry_base_seconds: float = Field(2.0, ge=0)
    stream_retry_max_seconds: float = Field(32.0, ge=0)


class SyncConfig(EnvSection):
    """External board connection and reconciliation settings."""

    ENV_NUMBERS: ClassVar[Dict[str, Tuple[str, Optional[float], Optional[float]]]] = {
        "poll_interval_seconds": ("AGENT_FLEET_SYNC_INTERVAL_SECONDS", 5, 86_400),
        "rate_limit_retry_seconds": ("GH_RATE_LIMIT_RETRY_SECONDS", 1, 3_600),
        "command_timeout_seconds": ("AGENT_FLEET_GH_TIMEOUT_SECONDS", 1, 600),
        "claim_ttl_seconds": ("AGENT_FLEET_CLAIM_TTL_SECONDS", 60, 604_800),
        "issues_list_limit": ("GITHUB_ISSUES_LIST_LIMIT", 1, 10_000),
        "command_backoff_seconds": ("GH_PROJECT_COMMAND_BACKOFF_SECONDS", 1, 86_400),
        "owner_retry_seconds": ("GH_PROJECT_OWNER_RETRY_SECONDS", 1, 86_400),
        "project_rate_limit_backoff_seconds": ("GH_PROJECT_RATE_LIMIT_BACKOFF_SECONDS", 1, 86_400),
        "warning_throttle_seconds": ("GH_RATE_LIMIT_WARNING_THROTTLE_SECONDS", 0, 86_400),
    }

    repository: Optional[str] = Field(None, description="owner/repo of the board")
    project_mode: Optional[str] = Field(None, description="'issues' or 'kanban'")
    project_id: Optional[str] = None
    project_number: Optional[str] = None
    project_owner: Optional[str] = None
    task_label: Optional[str] = None
    enforce_task_label: Optional[bool] = None
    poll_interval_seconds: float = Field(60.0, gt=0)
    rate_limit_retry_seconds: float = Field(60.0, gt=0)
    command_timeout_seconds: float = Field(30.0, gt=0)
    claim_ttl_seconds: float = Field(3600.0, gt=0, description="Age after which a local claim is considered stale")
    issues_list_limit: int = Field(1000, ge=1)
    transient_retry_delays: Tuple[float, ...] = (2.0, 4.0, 8.0)
    command_backoff_seconds: float = Field(60.0, gt=0, description="Base backoff after a failed project command")
    command_backoff_max_seconds: float = Field(1800.0, gt=0)
    owner_retry_seconds: float = Field(300.0, gt=0, description="Backoff after every candidate owner was rejected")
    project_rate_limit_backoff_seconds: float = Field(300.0, gt=0)
    warning_throttle_seconds: float = Field(60.0, ge=0)

    @field_validator("repository", "project_id", "project_number", "project_owner", "task_label", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("repository")
    @classmethod
    def validate_repo_format(cls, v: Optional[str]) -> Optional[str]:
        """Validate repo is in 'owner/repo' format."""
        if v is None:
            return v
        parts = v.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Invalid repo format: {v}. Expected 'owner/repo'")
        return v

    @model_validator(mode="after")
    def resolve_from_env(self) -> "SyncConfig":
        if self.repository is None:
            repo = env_str("GITHUB_REPOSITORY")
            if repo and repo.count("/") == 1:
                self.repository = repo
        if self.project_owner is None:
            self.project_owner = env_str("GITHUB_PROJECT_OWNER")
        if self.task_label is None:
            self.task_label = env_str("AGENT_FLEET_TASK_LABEL") or "agent-fleet"
        if self.enforce_task_label is None:
            self.enforce_task_label = env_bool("AGENT_FLEET_ENFORCE_TASK_LABEL", False)
        return self

    @property
    def owner(self) -> Optional[str]:
        return self.repository.split("/")[0] if self.repository else None

    @property
    def repo(self) -> Optional[str]:
        return self.repository.split("/")[1] if self.repository else None


class NotificationSettings(BaseModel):
    """Slack delivery for block and pause notices."""

    enabled: bool = True
    channel: Optional[str] = Field(None, validate_default=True)
    token: Optional[str] = Field(None, validate_default=True)

    @field_validator("token", mode="before")
    @classmethod
    def resolve_token(cls, v: Optional[str]) -> Optional[str]:
        if v:
            return v
        return env_str("SLACK_BOT_TOKEN")

    @field_validator("channel", mode="before")
    @classmethod
    def resolve_channel(cls, v: Optional[str]) -> Optional[str]:
        if v:
            return v
        return env_str("AGENT_FLEET_SLACK_CHANNEL")


class FleetConfig(BaseModel):
    """Top-level configuration for one orchestrator instance."""

    state_dir: Path = Field(default_factory=lambda: Path(env_str("AGENT_FLEET_STATE_DIR") or "~/.agent-fleet"))
    db_path: Optional[Path] = None
    log_level: Literal["debug", "info"] = "info"
    event_bus: EventBusConfig = Field(default_factory=EventBusConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator("state_dir", mode="after")
    @classmethod
    def expand_state_dir(cls, v: Path) -> Path:
        return Path(v).expanduser()

    @property
    def resolved_db_path(self) -> Path:
        return Path(self.db_path).expanduser() if self.db_path else self.state_dir / "tasks.db"

    @property
    def backoff_state_path(self) -> Path:
        return self.state_dir / "gh-backoff.json"

    @property
    def snapshot_path(self) -> Path:
        return self.state_dir / "task-snapshot.json"


def load_config(path: Optional[Path] = None) -> FleetConfig:
    """Load configuration from a YAML file, or defaults plus environment."""
    if path is None:
        return FleetConfig()

    config_path = Path(path).expanduser()
    if not config_path.exists():
        logger.warning("config.file.not_found", path=str(config_path))
        return FleetConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    logger.debug("config.loaded", path=str(config_path), sections=sorted(raw))
    return FleetConfig(**raw)
