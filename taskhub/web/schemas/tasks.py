"""Task submission, status and queue administration schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from taskhub.tasks.models import JobState, JobType


class TaskSubmitRequest(BaseModel):
    """Request to submit an AI task.

    Attributes:
        type: Task type (e.g. ``text-gen``)
        payload: Type-specific parameters
        priority: Lower runs first (default: per-type default)
        external_id: Caller correlation key (default: generated)
        max_attempts: Attempt ceiling (default: queue setting)
        user_id: Owner of the task
        notify_to: Email address notified on completion

    Example:
        >>> request = TaskSubmitRequest(
        ...     type="text-gen",
        ...     payload={"messages": [{"role": "user", "content": "Hello"}]},
        ... )
    """

    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = Field(default=None, ge=0)
    external_id: Optional[str] = Field(default=None, min_length=1, max_length=200)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=50)
    user_id: Optional[int] = None
    notify_to: Optional[str] = Field(default=None, min_length=3)


class TaskSubmitResponse(BaseModel):
    """Accepted task submission."""

    job_id: str
    external_id: str
    type: JobType
    state: JobState
    priority: int


class TaskStatusResponse(BaseModel):
    """Task status snapshot polled by clients."""

    id: str
    external_id: str
    type: JobType
    state: JobState
    attempts: int
    max_attempts: int
    result: Any | None = None
    failure_reason: str | None = None
    created_at: datetime
    processed_at: datetime | None = None
    finished_at: datetime | None = None

    model_config = {"from_attributes": True}


class TaskListResponse(BaseModel):
    """List of tasks response."""

    tasks: list[TaskStatusResponse]
    total: int


class QueueStatsResponse(BaseModel):
    """Job counts per state for one queue."""

    waiting: int
    active: int
    completed: int
    failed: int
    stalled: int
    total: int


class AdminQueueStatsResponse(BaseModel):
    """Counts for the task queue and the notification queue."""

    tasks: QueueStatsResponse
    notifications: QueueStatsResponse


class QueueCleanRequest(BaseModel):
    """Purge request; without grace_seconds the configured retention applies."""

    grace_seconds: Optional[float] = Field(default=None, ge=0)


class QueueCleanResponse(BaseModel):
    """Number of purged jobs per queue and terminal state."""

    tasks: dict[str, int]
    notifications: dict[str, int]


class HealthCheckResponse(BaseModel):
    """Health check endpoint response."""

    status: str = Field(description="Health status ('ok' or 'error')")
    version: str = Field(description="API version string")
    store_backend: str = Field(description="Job store implementation in use")
    ai_configured: bool = Field(description="Whether an AI API key is configured")
