"""Configuration for the backlog runner.

Settings are declared as Pydantic models with sensible defaults, loaded from
a YAML file and validated before the control loop starts. Any validation
problem surfaces as a ConfigurationError so the CLI can exit non-zero.
"""

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from backlog_runner.errors import ConfigurationError
from backlog_runner.models import Priority

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(".backlog-runner/config.yaml")

NOTIFICATION_EVENTS = (
    "task_started",
    "task_completed",
    "task_failed",
    "budget_warning",
    "budget_exceeded",
    "auto_merge",
    "session_ended",
)


class GitHubConfig(BaseModel):
    """Issue tracker coordinates and board column names."""

    repo: str | None = Field(None, description="Repository in owner/name form")
    project_number: int | None = Field(None, description="Project board number")
    ready_column: str = "Ready"
    in_progress_column: str = "In Progress"
    review_column: str = "In Review"
    done_column: str = "Done"
    failed_label: str = Field(
        "needs-attention", description="Label added to tasks that fail"
    )


class BranchConfig(BaseModel):
    base: str = "main"
    prefix: str = "feature/issue-"


class PriorityLabels(BaseModel):
    """Label sets mapping to each priority class."""

    critical: list[str] = Field(
        default_factory=lambda: ["priority:critical", "P0", "urgent"]
    )
    high: list[str] = Field(default_factory=lambda: ["priority:high", "P1"])
    normal: list[str] = Field(default_factory=lambda: ["priority:normal", "P2"])
    low: list[str] = Field(
        default_factory=lambda: ["priority:low", "P3", "backlog"]
    )

    def as_label_sets(self) -> dict[Priority, frozenset[str]]:
        return {
            Priority.CRITICAL: frozenset(self.critical),
            Priority.HIGH: frozenset(self.high),
            Priority.NORMAL: frozenset(self.normal),
            Priority.LOW: frozenset(self.low),
        }


class PriorityConfig(BaseModel):
    enabled: bool = True
    labels: PriorityLabels = Field(default_factory=PriorityLabels)


class DependencyConfig(BaseModel):
    """Dependency checking settings."""

    enabled: bool = True
    patterns: list[str] = Field(
        default_factory=lambda: ["depends on", "blocked by", "requires"]
    )
    check_linked_issues: bool = True
    cache_timeout: float = Field(
        300.0, ge=0, description="Seconds a blocking check stays cached"
    )

    @field_validator("patterns")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Reject blank trigger phrases."""
        cleaned = [p.strip() for p in v]
        if any(not p for p in cleaned):
            raise ValueError("Dependency patterns must be non-empty strings")
        return cleaned


class BudgetConfig(BaseModel):
    """Cost limits in USD. A missing or zero limit means unlimited."""

    per_task_limit: float | None = Field(None, ge=0)
    per_session_limit: float | None = Field(None, ge=0)
    warning_threshold: int = Field(80, ge=1, le=100)
    on_task_budget_exceeded: Literal["skip", "fail", "warn"] = "skip"
    on_session_budget_exceeded: Literal["stop"] = "stop"


class InteractiveConfig(BaseModel):
    """Human approval checkpoints."""

    enabled: bool = False
    approve_pre_task: bool = False
    approve_phase1: bool = True
    approve_phase2: bool = True
    show_diff: bool = True
    timeout: float = Field(0, ge=0, description="Seconds to wait; 0 waits forever")
    poll_interval: float = Field(1.0, gt=0)
    on_timeout: Literal["reject", "approve"] = "reject"
    on_reject: Literal["skip", "fail"] = "skip"

    def checkpoint_enabled(self, checkpoint: str) -> bool:
        """Whether a named checkpoint requires approval."""
        if not self.enabled:
            return False
        return bool(getattr(self, f"approve_{checkpoint}", False))


class IterationConfig(BaseModel):
    max_iterations: int = Field(5, ge=1)
    ready_promise: str = "READY_FOR_PR"
    completion_promise: str = "COMPLETE"
    test_command: str | None = None
    build_command: str | None = None
    task_timeout: float = Field(30, ge=0, description="Minutes; 0 disables")
    auto_merge: bool = False
    merge_commit_prefix: str = "[AUTO-MERGE]"
    issue_prefix: str = "[BOT]"
    prompt_template: Path | None = None
    on_max_iterations: Literal["skip", "rollback", "retry-later"] = Field(
        "skip",
        description="What happens to a task that ran out of iterations or time",
    )


class HookConfig(BaseModel):
    """A user script run at one point of the task lifecycle."""

    script: str = Field(
        ..., description="Executable path, absolute or relative to the state dir"
    )
    timeout: float = Field(30.0, gt=0, description="Seconds before the script is killed")
    can_abort: bool = Field(
        False, description="A failing or timed out script aborts the current phase"
    )
    enabled: bool = True


class HooksConfig(BaseModel):
    """Lifecycle hooks. Only pre_task and pre_pr can abort anything."""

    pre_task: HookConfig | None = None
    post_implementation: HookConfig | None = None
    pre_pr: HookConfig | None = None
    post_pr: HookConfig | None = None
    post_merge: HookConfig | None = None
    on_failure: HookConfig | None = None
    on_budget_warning: HookConfig | None = None

    def get(self, name: str) -> HookConfig | None:
        if name not in type(self).model_fields:
            raise ValueError(f"Unknown hook: {name}")
        return getattr(self, name)


class AgentConfig(BaseModel):
    command: str = "claude"
    model: str | None = None
    max_turns: int = Field(50, ge=1)
    show_tool_details: bool = True


class WebhookChannelConfig(BaseModel):
    enabled: bool = False
    webhook_url: str | None = None
    events: dict[str, bool] = Field(
        default_factory=lambda: {event: True for event in NOTIFICATION_EVENTS}
    )

    @model_validator(mode="after")
    def require_url_when_enabled(self) -> "WebhookChannelConfig":
        if self.enabled and not self.webhook_url:
            raise ValueError("webhook_url is required when the channel is enabled")
        return self

    def wants(self, event: str) -> bool:
        return self.enabled and self.events.get(event, True)


class RateLimitConfig(BaseModel):
    min_interval: float = Field(1.0, ge=0)
    burst_limit: int = Field(5, ge=1)
    burst_window: float = Field(60.0, gt=0)


class NotificationConfig(BaseModel):
    enabled: bool = False
    discord: WebhookChannelConfig = Field(default_factory=WebhookChannelConfig)
    slack: WebhookChannelConfig = Field(default_factory=WebhookChannelConfig)
    generic: WebhookChannelConfig = Field(default_factory=WebhookChannelConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field("INFO", description="Console logging level")
    log_dir: Path | None = Field(None, description="Directory for rotating log files")
    max_log_size_mb: int = Field(10, ge=1)
    max_log_files: int = Field(5, ge=0)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate that the log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of {valid_levels}")
        return v.upper()


class TelemetryConfig(BaseModel):
    otlp_endpoint: str = Field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "backlog-runner"


class RunnerConfig(BaseModel):
    """Top-level configuration for a backlog runner session.

    All settings have defaults; a YAML file overrides any subset of them via
    load(), and from_env() applies environment variable overrides on top.
    """

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    branch: BranchConfig = Field(default_factory=BranchConfig)
    priority: PriorityConfig = Field(default_factory=PriorityConfig)
    dependencies: DependencyConfig = Field(default_factory=DependencyConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    interactive: InteractiveConfig = Field(default_factory=InteractiveConfig)
    iteration: IterationConfig = Field(default_factory=IterationConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    poll_interval: float = Field(10.0, gt=0)
    consecutive_empty_threshold: int = Field(2, ge=1)
    on_empty_queue: Literal["exit", "wait"] = "exit"

    state_dir: Path = Path(".backlog-runner")
    metrics_retention_days: int = Field(30, ge=0)
    max_persistence_failures: int = Field(3, ge=1)
    dry_run: bool = False

    @classmethod
    def load(cls, config_path: str | Path) -> "RunnerConfig":
        """Load and validate a YAML configuration file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Validated RunnerConfig

        Raises:
            ConfigurationError: If the file is missing, not valid YAML,
                or fails validation
        """
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                error_code="CONF-FileNotFound",
                details={"path": str(path)},
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in {path}: {e}",
                error_code="CONF-InvalidYaml",
                details={"path": str(path)},
            ) from e

        if data is None:
            logger.warning(f"Empty configuration file: {path}")
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration root must be a mapping: {path}",
                error_code="CONF-InvalidYaml",
                details={"path": str(path)},
            )

        config = cls.from_dict(data, source=str(path))
        logger.info(f"Loaded configuration from {path}")
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str = "<dict>") -> "RunnerConfig":
        """Validate a configuration mapping.

        Raises:
            ConfigurationError: If validation fails
        """
        try:
            return cls(**data)
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ConfigurationError(
                f"Invalid configuration in {source}: " + "; ".join(problems),
                error_code="CONF-ValidationFailed",
                details={"source": source, "errors": problems},
            ) from e

    @classmethod
    def from_env(cls, config_path: str | Path | None = None) -> "RunnerConfig":
        """Load config with environment variable overrides.

        Environment variables:
            BACKLOG_RUNNER_CONFIG: Config file path (default: .backlog-runner/config.yaml)
            BACKLOG_RUNNER_STATE_DIR: Override state_dir
            BACKLOG_RUNNER_POLL_INTERVAL: Override poll_interval
            OTLP_ENDPOINT: Override telemetry.otlp_endpoint
        """
        path = Path(
            config_path or os.getenv("BACKLOG_RUNNER_CONFIG", str(DEFAULT_CONFIG_PATH))
        )
        config = cls.load(path) if path.exists() or config_path else cls()

        overrides: dict[str, Any] = {}
        if state_dir := os.getenv("BACKLOG_RUNNER_STATE_DIR"):
            overrides["state_dir"] = Path(state_dir)
        if poll_interval := os.getenv("BACKLOG_RUNNER_POLL_INTERVAL"):
            try:
                overrides["poll_interval"] = float(poll_interval)
            except ValueError as e:
                raise ConfigurationError(
                    f"BACKLOG_RUNNER_POLL_INTERVAL must be a number, got {poll_interval!r}",
                    error_code="CONF-InvalidEnv",
                ) from e
        if endpoint := os.getenv("OTLP_ENDPOINT"):
            overrides["telemetry"] = config.telemetry.model_copy(
                update={"otlp_endpoint": endpoint}
            )

        if overrides:
            config = cls.from_dict(
                {**config.model_dump(), **overrides}, source="environment"
            )
        return config
