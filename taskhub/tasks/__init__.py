"""Background task queue: job models, stores, handlers and the queue engine."""

from .handlers import dispatch_ai_task, register_ai_handlers
from .metrics import QueueStats
from .models import (
    Job,
    JobPriority,
    JobSnapshot,
    JobState,
    JobType,
    NotificationType,
    TaskType,
)
from .policy import RetryPolicy, always_retry, retry_unless
from .queue import JobQueue
from .registry import HandlerRegistry
from .sqlite_store import SQLiteJobStore
from .store import InMemoryJobStore, JobStore

__all__ = [
    "HandlerRegistry",
    "InMemoryJobStore",
    "Job",
    "JobPriority",
    "JobQueue",
    "JobSnapshot",
    "JobState",
    "JobStore",
    "JobType",
    "NotificationType",
    "QueueStats",
    "RetryPolicy",
    "SQLiteJobStore",
    "TaskType",
    "always_retry",
    "dispatch_ai_task",
    "register_ai_handlers",
    "retry_unless",
]
