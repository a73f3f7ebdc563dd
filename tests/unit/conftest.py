"""Fixtures for unit tests: job stores, registries and queues."""

from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from taskhub.common.config import QueueConfig
from taskhub.core.db.connection import DatabaseConnection
from taskhub.tasks.models import TaskType
from taskhub.tasks.queue import JobQueue
from taskhub.tasks.registry import HandlerRegistry
from taskhub.tasks.sqlite_store import SQLiteJobStore
from taskhub.tasks.store import InMemoryJobStore, JobStore


class RecordingHandler:
    """Handler that records payloads and replays scripted outcomes.

    Each entry in ``outcomes`` is either an exception (raised) or a value
    (returned). Once the script runs out, ``default`` is returned.
    """

    def __init__(self, *outcomes: Any, default: Any = None):
        self.outcomes = list(outcomes)
        self.default = {"ok": True} if default is None else default
        self.calls: list[Any] = []

    async def __call__(self, payload: Any) -> Any:
        self.calls.append(payload)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return self.default


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request: pytest.FixtureRequest, tmp_path: Path) -> AsyncGenerator[JobStore, None]:
    """Provide each job store implementation with the ``tasks`` namespace."""
    if request.param == "memory":
        memory_store = InMemoryJobStore("tasks")
        yield memory_store
        await memory_store.close()
        return

    database = DatabaseConnection(tmp_path / "jobs.db", enable_wal=False)
    sqlite_store = SQLiteJobStore(database, "tasks")
    await sqlite_store.initialize()
    yield sqlite_store
    await database.close()


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def registry(handler: RecordingHandler) -> HandlerRegistry:
    """Registry with the recording handler for every task type."""
    registry = HandlerRegistry()
    for task_type in TaskType:
        registry.register(task_type, handler)
    return registry


@pytest.fixture
def memory_queue(registry: HandlerRegistry, queue_config: QueueConfig, clock) -> JobQueue:
    """Queue over an in-memory store driven by the fake clock."""
    return JobQueue(InMemoryJobStore("tasks"), registry, queue_config, clock=clock)


@pytest.fixture
def make_handler():
    """Factory for handlers with scripted outcomes."""
    return RecordingHandler
