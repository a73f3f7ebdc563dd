"""Process wiring: the task queue, the notification queue and their collaborators.

A TaskRuntime is built once at process start and handed to whatever needs the
queues (the web app, the CLI, tests). Nothing here is module-level state.

Example:
    >>> runtime = await create_runtime(load_config())
    >>> await runtime.start()
    >>> job = await runtime.tasks.submit(TaskType.TEXT_GEN, payload)
    >>> await runtime.close()
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from taskhub.api.ai_client import AIClient
from taskhub.common.config import Config
from taskhub.core.db.connection import DatabaseConnection
from taskhub.core.event_bus import EventBus
from taskhub.notifications.email import EmailSender, LogEmailSender
from taskhub.notifications.handlers import register_notification_handlers
from taskhub.notifications.hooks import CompletionNotifier
from taskhub.tasks.handlers import register_ai_handlers
from taskhub.tasks.models import utcnow
from taskhub.tasks.queue import JobQueue
from taskhub.tasks.registry import HandlerRegistry
from taskhub.tasks.sqlite_store import SQLiteJobStore
from taskhub.tasks.store import InMemoryJobStore, JobStore

logger = structlog.get_logger(__name__)

TASK_QUEUE = "tasks"
NOTIFICATION_QUEUE = "notifications"


@dataclass
class TaskRuntime:
    """Explicit engine instances owned by one process."""

    config: Config
    event_bus: EventBus
    tasks: JobQueue
    notifications: JobQueue
    ai_client: AIClient
    email_sender: EmailSender
    database: Optional[DatabaseConnection] = None

    @property
    def queues(self) -> Dict[str, JobQueue]:
        return {TASK_QUEUE: self.tasks, NOTIFICATION_QUEUE: self.notifications}

    async def start(self) -> None:
        """Open the AI client and start both worker pools."""
        await self.ai_client.open()
        await self.tasks.start()
        await self.notifications.start()
        logger.info("runtime_started", store_backend=self.config.store_backend)

    async def get_stats(self) -> Dict[str, Dict[str, int]]:
        return {name: (await queue.get_stats()).as_dict() for name, queue in self.queues.items()}

    async def clean(self, grace_seconds: Optional[float] = None) -> Dict[str, Dict[str, int]]:
        return {name: await queue.clean(grace_seconds) for name, queue in self.queues.items()}

    async def close(self) -> None:
        """Stop the queues, then release the AI client and the database."""
        await self.tasks.close()
        await self.notifications.close()
        await self.ai_client.aclose()
        if self.database is not None:
            await self.database.close()
        logger.info("runtime_closed")


async def _create_stores(config: Config) -> tuple[JobStore, JobStore, Optional[DatabaseConnection]]:
    if config.store_backend == "memory":
        return InMemoryJobStore(TASK_QUEUE), InMemoryJobStore(NOTIFICATION_QUEUE), None

    database = DatabaseConnection(
        config.get_database_path(),
        enable_wal=config.database.enable_wal_mode,
        timeout=config.database.connection_timeout,
    )
    task_store = SQLiteJobStore(database, TASK_QUEUE)
    await task_store.initialize()
    return task_store, SQLiteJobStore(database, NOTIFICATION_QUEUE), database


async def create_runtime(
    config: Config,
    *,
    ai_client: Optional[AIClient] = None,
    email_sender: Optional[EmailSender] = None,
    clock: Callable[[], datetime] = utcnow,
    **queue_options: Any,
) -> TaskRuntime:
    """
    Build the task and notification queues for ``config``.

    Args:
        config: Application configuration
        ai_client: AI client (default: built from config.ai)
        email_sender: Email backend (default: LogEmailSender)
        clock: Time source shared by both queues
        **queue_options: Extra keyword arguments for the task JobQueue (e.g. policy)

    Returns:
        Runtime with queues created but not started
    """
    ai_client = ai_client or AIClient(config.ai)
    email_sender = email_sender or LogEmailSender()
    task_store, notification_store, database = await _create_stores(config)

    event_bus = EventBus()

    notification_registry = HandlerRegistry()
    register_notification_handlers(notification_registry, email_sender)
    notifications = JobQueue(
        notification_store,
        notification_registry,
        config.notifications.queue,
        clock=clock,
    )

    task_registry = HandlerRegistry()
    register_ai_handlers(task_registry, ai_client)
    tasks = JobQueue(
        task_store,
        task_registry,
        config.tasks,
        event_bus=event_bus,
        clock=clock,
        **queue_options,
    )

    if config.notifications.enabled:
        CompletionNotifier(notifications, config.notifications).attach(event_bus)

    logger.info(
        "runtime_created",
        store_backend=config.store_backend,
        task_concurrency=config.tasks.concurrency,
        notifications_enabled=config.notifications.enabled,
    )
    return TaskRuntime(
        config=config,
        event_bus=event_bus,
        tasks=tasks,
        notifications=notifications,
        ai_client=ai_client,
        email_sender=email_sender,
        database=database,
    )
