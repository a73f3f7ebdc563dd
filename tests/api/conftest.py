"""Shared pytest fixtures for API tests."""

from pathlib import Path
from typing import Callable, Generator, Optional

import pytest
from fastapi.testclient import TestClient

from taskhub.common.config import (
    AIServiceConfig,
    Config,
    LoggingConfig,
    NotificationConfig,
    QueueConfig,
    RetryConfig,
)
from taskhub.web.main import create_app
from taskhub.web.settings import APISettings, get_settings

AI_BASE_URL = "https://ai.test/api/v4"


@pytest.fixture
def api_settings(monkeypatch) -> Generator[APISettings, None, None]:
    """Provide test API settings through the environment."""
    monkeypatch.setenv("TASKHUB_API_LOG_REQUESTS", "false")  # Reduce noise in tests
    monkeypatch.setenv("TASKHUB_API_ALLOWED_ORIGINS", '["*"]')
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


def build_test_config(tmp_path: Path, api_key: Optional[str] = "test-key") -> Config:
    """Configuration with an in-memory store and fast-polling workers."""
    queue = QueueConfig(
        concurrency=2,
        max_attempts=2,
        backoff_delay=0.0,
        poll_interval=0.01,
        store_retry=RetryConfig(max_attempts=2, min_wait=0.0, max_wait=0.0),
    )
    return Config(
        config_dir=tmp_path,
        store_backend="memory",
        logging=LoggingConfig(level="WARNING", format="text"),  # Reduce noise in tests
        ai=AIServiceConfig(base_url=AI_BASE_URL, api_key=api_key),
        tasks=queue,
        notifications=NotificationConfig(queue=queue.model_copy(update={"concurrency": 1})),
    )


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory for test configurations rooted in the test's tmp_path."""

    def _make(api_key: Optional[str] = "test-key") -> Config:
        return build_test_config(tmp_path, api_key=api_key)

    return _make


@pytest.fixture
def test_config(make_config) -> Config:
    """Provide a test configuration."""
    return make_config()


@pytest.fixture
def make_client(api_settings: APISettings) -> Generator[Callable[[Config], TestClient], None, None]:
    """
    Factory for started TestClients.

    Entering the client runs the app lifespan, so the task runtime and its
    workers are live for the duration of the test.
    """
    clients: list[TestClient] = []

    def _make(config: Config) -> TestClient:
        client = TestClient(create_app(config))
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def test_app(make_client, test_config: Config) -> TestClient:
    """Provide a FastAPI TestClient with a running in-memory runtime."""
    return make_client(test_config)
