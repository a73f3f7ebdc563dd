"""Shared pytest fixtures for all tests."""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import respx
import structlog

from taskhub.common.config import (
    AIServiceConfig,
    Config,
    DatabaseConfig,
    HTTPConfig,
    LoggingConfig,
    QueueConfig,
    RetryConfig,
)


class FakeClock:
    """Controllable UTC clock for queue tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Provide a clock that only moves when told to."""
    return FakeClock()


@pytest.fixture
def queue_config() -> QueueConfig:
    """Queue settings with store retries that do not sleep."""
    return QueueConfig(
        concurrency=2,
        max_attempts=3,
        backoff_delay=2.0,
        poll_interval=0.01,
        stall_timeout=30.0,
        store_retry=RetryConfig(max_attempts=2, min_wait=0.0, max_wait=0.0),
    )


@pytest.fixture
def ai_config() -> AIServiceConfig:
    """AI service settings pointing at a mocked endpoint."""
    return AIServiceConfig(
        base_url="https://ai.test/api/v4",
        api_key="test-key",
        http=HTTPConfig(timeout=5),
    )


@pytest.fixture
def sample_config(tmp_path: Path) -> Config:
    """Provide a sample configuration for tests."""
    return Config(
        config_dir=tmp_path,
        store_backend="memory",
        database=DatabaseConfig(database_path=str(tmp_path / "test_taskhub.db"), enable_wal_mode=False),
        logging=LoggingConfig(level="DEBUG", format="text"),
    )


@pytest.fixture
def mock_http():
    """Provide a respx mock for httpx requests."""
    with respx.mock(assert_all_called=False) as respx_mock:
        yield respx_mock


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging so they never outlive a test's streams."""
    yield
    logging.getLogger().handlers.clear()
    structlog.contextvars.clear_contextvars()
