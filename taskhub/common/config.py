"""Configuration models using Pydantic for validation."""

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from ruamel.yaml import YAML

logger = structlog.get_logger(__name__)


class RetryConfig(BaseModel):
    """Retry settings for job store operations (claim, transition, scan).

    Store calls that fail with a ``StoreError`` are retried with exponential
    backoff before the failure is reported as an operational alert.
    """

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of attempts per store operation",
    )
    backoff_multiplier: float = Field(
        default=1.0,
        ge=0.01,
        le=10.0,
        description="Multiplier for exponential backoff calculation",
    )
    min_wait: float = Field(
        default=0.1,
        ge=0.0,
        le=60.0,
        description="Minimum wait time between retries in seconds",
    )
    max_wait: float = Field(
        default=2.0,
        ge=0.0,
        le=300.0,
        description="Maximum wait time between retries in seconds",
    )


class HTTPConfig(BaseModel):
    """Configuration for HTTP client."""

    timeout: int = Field(
        default=60,
        ge=1,
        le=600,
        description="Request timeout in seconds",
    )
    max_redirects: int = Field(
        default=5,
        ge=0,
        le=20,
        description="Maximum number of redirects to follow",
    )
    verify_ssl: bool = Field(
        default=True,
        description="Whether to verify SSL certificates",
    )
    max_connections: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum number of connections in the pool",
    )
    max_keepalive_connections: int = Field(
        default=20,
        ge=0,
        le=100,
        description="Maximum number of keep-alive connections",
    )


class FileLoggingConfig(BaseModel):
    """Configuration for file-based logging.

    File logging uses daily rotation with 7-day retention.
    Log files are stored as taskhub.log in config_dir.
    """

    enabled: bool = Field(
        default=False,
        description="Enable file logging (logs to taskhub.log in config_dir)",
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(
        default="INFO",
        description="Log level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    format: str = Field(
        default="json",
        description="Log format: json or text",
    )
    file: FileLoggingConfig = Field(
        default_factory=FileLoggingConfig,
        description="File logging configuration",
    )
    third_party: Dict[str, str] = Field(
        default_factory=dict,
        description="Log levels for third-party libraries (advanced)",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is supported."""
        valid_formats = ["json", "text"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class AIServiceConfig(BaseModel):
    """Configuration for the generative-AI API the task handlers call."""

    base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="Base URL of the AI API",
    )
    api_key: Optional[str] = Field(
        default=None,
        description="Bearer token for the AI API (falls back to TASKHUB_AI_API_KEY)",
    )
    text_model: str = Field(default="glm-4", description="Chat model for text tasks")
    vision_model: str = Field(default="glm-4v", description="Model for image understanding")
    image_model: str = Field(default="cogview-3", description="Model for image generation")
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    default_max_tokens: int = Field(default=1024, ge=1)
    document_max_tokens: int = Field(default=4096, ge=1)
    http: HTTPConfig = Field(
        default_factory=HTTPConfig,
        description="HTTP client settings for AI calls",
    )

    def resolved_api_key(self) -> Optional[str]:
        """Return the configured API key, or the TASKHUB_AI_API_KEY env var."""
        return self.api_key or os.environ.get("TASKHUB_AI_API_KEY") or None


class DatabaseConfig(BaseModel):
    """Configuration for the SQLite job store."""

    database_path: str = Field(
        default="taskhub.db",
        description="SQLite file path (relative paths resolve against config_dir)",
    )
    enable_wal_mode: bool = Field(default=True, description="Enable WAL journal mode")
    connection_timeout: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Connection busy timeout in seconds",
    )


class RetentionConfig(BaseModel):
    """Retention caps for finished jobs.

    Completed jobs are kept for a day (and at most ``completed_max_count`` of
    them); failed jobs are kept for a week to aid diagnosis.
    """

    completed_max_age_seconds: Optional[int] = Field(default=24 * 3600, ge=0)
    completed_max_count: Optional[int] = Field(default=1000, ge=0)
    failed_max_age_seconds: Optional[int] = Field(default=7 * 24 * 3600, ge=0)
    failed_max_count: Optional[int] = Field(default=None, ge=0)
    interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How often the background purge runs",
    )


class QueueConfig(BaseModel):
    """Configuration for a single job queue instance."""

    concurrency: int = Field(default=2, ge=1, le=64, description="Worker pool size")
    max_attempts: int = Field(default=3, ge=1, le=50, description="Default attempts per job")
    backoff_delay: float = Field(
        default=2.0,
        ge=0.0,
        description="Base delay in seconds; retry n waits backoff_delay * 2^(n-1)",
    )
    poll_interval: float = Field(
        default=0.5,
        gt=0,
        description="Idle worker poll interval in seconds",
    )
    stall_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds without heartbeat before an active job is stalled",
    )
    heartbeat_interval: Optional[float] = Field(
        default=None,
        gt=0,
        description="Heartbeat period (defaults to a third of stall_timeout)",
    )
    stall_check_interval: Optional[float] = Field(
        default=None,
        gt=0,
        description="Stall detector period (defaults to half of stall_timeout)",
    )
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    store_retry: RetryConfig = Field(default_factory=RetryConfig)

    @model_validator(mode="after")
    def validate_heartbeat(self) -> "QueueConfig":
        """Heartbeats must arrive faster than the stall timeout."""
        if self.heartbeat_interval is not None and self.heartbeat_interval >= self.stall_timeout:
            raise ValueError("heartbeat_interval must be smaller than stall_timeout")
        return self

    @property
    def effective_heartbeat_interval(self) -> float:
        return self.heartbeat_interval or self.stall_timeout / 3

    @property
    def effective_stall_check_interval(self) -> float:
        return self.stall_check_interval or self.stall_timeout / 2


class NotificationConfig(BaseModel):
    """Configuration for completion notifications."""

    enabled: bool = Field(default=True, description="Enqueue notifications on completion")
    notify_on_failure: bool = Field(
        default=False,
        description="Also notify the owner when a task fails terminally",
    )
    summary_length: int = Field(
        default=200,
        ge=10,
        le=5000,
        description="Maximum characters of result summary in notifications",
    )
    queue: QueueConfig = Field(
        default_factory=lambda: QueueConfig(concurrency=1),
        description="Queue settings for the notification worker",
    )


class Config(BaseModel):
    """Main configuration class for TaskHub.

    Environment Variables:
    - TASKHUB_CONFIG_DIR: Override config_dir
    - TASKHUB_AI_API_KEY: AI API key when not set in YAML

    Relative paths (database_path) are resolved against config_dir at runtime.
    """

    config_dir: Optional[Path] = Field(
        default=None,
        description="Configuration directory (database, logs). Resolved from TASKHUB_CONFIG_DIR or defaults.",
    )
    store_backend: Literal["sqlite", "memory"] = Field(
        default="sqlite",
        description="Job store implementation",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    ai: AIServiceConfig = Field(default_factory=AIServiceConfig)
    tasks: QueueConfig = Field(
        default_factory=QueueConfig,
        description="Queue settings for AI tasks",
    )
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    def resolve_paths(self, create_dirs: bool = True) -> "Config":
        """
        Resolve config_dir from environment or defaults.

        Args:
            create_dirs: If True, create the directory if it doesn't exist

        Returns:
            Self with resolved paths (for chaining)
        """
        if self.config_dir is None:
            object.__setattr__(self, "config_dir", _get_default_config_dir())

        if create_dirs:
            self.config_dir.mkdir(parents=True, exist_ok=True)

        logger.debug("paths_resolved", config_dir=str(self.config_dir))
        return self

    def get_database_path(self) -> Path:
        """Get absolute database path, resolved against config_dir."""
        path = Path(self.database.database_path)
        if path.is_absolute():
            return path
        config_dir = self.config_dir or _get_default_config_dir()
        return config_dir / path

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """
        Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Config object with validated configuration

        Raises:
            FileNotFoundError: If config file doesn't exist
            pydantic.ValidationError: If configuration is invalid
        """
        yaml_loader = YAML(typ="safe")

        with open(path, "r", encoding="utf-8") as f:
            data = yaml_loader.load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_string(cls, yaml_string: str) -> "Config":
        """
        Load configuration from YAML string.

        Example:
            >>> config = Config.from_yaml_string("tasks:\\n  concurrency: 4")
        """
        data = yaml.safe_load(yaml_string)
        return cls.model_validate(data or {})

    def to_yaml_string(self, exclude_secrets: bool = True) -> str:
        """Serialize non-default settings to YAML, hiding the API key by default."""
        data: Dict[str, Any] = self.model_dump(mode="json", exclude_defaults=True)
        if exclude_secrets and "ai" in data:
            data["ai"].pop("api_key", None)
        data.pop("config_dir", None)
        return yaml.safe_dump(data, sort_keys=False)


def _get_default_config_dir() -> Path:
    """
    Get default config directory based on environment.

    Priority:
    1. TASKHUB_CONFIG_DIR environment variable
    2. $HOME/TaskHub otherwise
    """
    env_config_dir = os.environ.get("TASKHUB_CONFIG_DIR")
    if env_config_dir:
        return Path(env_config_dir)
    return Path.home() / "TaskHub"

