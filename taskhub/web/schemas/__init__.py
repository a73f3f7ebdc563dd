"""Request/response schemas for the HTTP API."""

from .tasks import (
    AdminQueueStatsResponse,
    HealthCheckResponse,
    QueueCleanRequest,
    QueueCleanResponse,
    QueueStatsResponse,
    TaskListResponse,
    TaskStatusResponse,
    TaskSubmitRequest,
    TaskSubmitResponse,
)

__all__ = [
    "AdminQueueStatsResponse",
    "HealthCheckResponse",
    "QueueCleanRequest",
    "QueueCleanResponse",
    "QueueStatsResponse",
    "TaskListResponse",
    "TaskStatusResponse",
    "TaskSubmitRequest",
    "TaskSubmitResponse",
]
