"""Common utilities and shared components for TaskHub."""

from .config import (
    AIServiceConfig,
    Config,
    DatabaseConfig,
    HTTPConfig,
    LoggingConfig,
    NotificationConfig,
    QueueConfig,
    RetentionConfig,
    RetryConfig,
)
from .http_client import AsyncHTTPClient
from .logging_config import bind_context, clear_context, setup_logging

__all__ = [
    "AIServiceConfig",
    "AsyncHTTPClient",
    "Config",
    "DatabaseConfig",
    "HTTPConfig",
    "LoggingConfig",
    "NotificationConfig",
    "QueueConfig",
    "RetentionConfig",
    "RetryConfig",
    "bind_context",
    "clear_context",
    "setup_logging",
]
