"""Job models, enums and the job state machine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from taskhub.core.exceptions import InvalidTransitionError
from taskhub.tasks.payloads import JobPayload


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskType(str, Enum):
    """AI task types processed by the task queue."""

    TEXT_GEN = "text-gen"
    IMAGE_GEN = "image-gen"
    IMAGE_UNDERSTAND = "image-understand"
    DOCUMENT_PROCESS = "document-process"
    EXCEL_PROCESS = "excel-process"


class NotificationType(str, Enum):
    """Notification types processed by the notification queue."""

    TASK_COMPLETED = "task-completed"
    WELCOME = "welcome"
    PASSWORD_RESET = "password-reset"
    PAYMENT_SUCCESS = "payment-success"


JobType = Union[TaskType, NotificationType]


class JobState(str, Enum):
    """Job state enumeration."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})

# Edges of the job state machine. Nothing leaves a terminal state.
TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.WAITING: frozenset({JobState.ACTIVE}),
    JobState.ACTIVE: frozenset(
        {JobState.COMPLETED, JobState.WAITING, JobState.FAILED, JobState.STALLED}
    ),
    JobState.STALLED: frozenset({JobState.WAITING, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


class JobPriority(int, Enum):
    """Job priority levels.

    Lower values = higher priority (processed first).
    """

    HIGH = 1
    ABOVE_NORMAL = 2
    NORMAL = 3
    BELOW_NORMAL = 4
    LOW = 5


# Lightweight text work is ranked ahead of heavyweight image generation.
DEFAULT_PRIORITIES: dict[str, int] = {
    TaskType.TEXT_GEN.value: JobPriority.HIGH,
    TaskType.IMAGE_UNDERSTAND.value: JobPriority.HIGH,
    TaskType.DOCUMENT_PROCESS.value: JobPriority.ABOVE_NORMAL,
    TaskType.EXCEL_PROCESS.value: JobPriority.ABOVE_NORMAL,
    TaskType.IMAGE_GEN.value: JobPriority.NORMAL,
}

MAX_FAILURE_REASON_LENGTH = 500


def default_priority(job_type: Any) -> int:
    """Return the default priority for a job type (enum member or raw value)."""
    value = getattr(job_type, "value", job_type)
    return int(DEFAULT_PRIORITIES.get(value, JobPriority.LOW))


class Job(BaseModel):
    """Background job model.

    Attributes:
        id: Engine-assigned unique identifier (UUID)
        external_id: Caller correlation key, unique within the queue namespace
        queue: Namespace of the queue owning the job
        type: Job type selecting the handler
        payload: Typed payload; ``payload.kind`` equals ``type``
        priority: Lower value is claimed first
        state: Current state in the job state machine
        attempts: Execution attempts so far
        max_attempts: Attempt ceiling
        result: Handler result, set only on completion
        failure_reason: Human-readable reason, set only on terminal failure
        last_error: Message of the most recent retried failure
        created_at: Submission time
        processed_at: Time of the first claim
        finished_at: Time of the terminal transition
        available_at: Earliest time a waiting job may be claimed
        heartbeat_at: Last liveness signal from the worker holding the job
        worker_id: Worker currently holding the job
        user_id: Owner of the job in the calling system
        notify_to: Contact address for the completion notification
    """

    id: str = Field(default_factory=lambda: str(uuid4()), frozen=True)
    external_id: str = Field(default_factory=lambda: f"task_{uuid4().hex}", frozen=True)
    queue: str = Field(default="tasks", frozen=True)
    type: JobType = Field(frozen=True)
    payload: JobPayload = Field(frozen=True)
    priority: int = Field(default=int(JobPriority.LOW), ge=0, frozen=True)
    state: JobState = JobState.WAITING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1, frozen=True)
    result: Any | None = None
    failure_reason: str | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow, frozen=True)
    processed_at: datetime | None = None
    finished_at: datetime | None = None
    available_at: datetime = Field(default_factory=utcnow)
    heartbeat_at: datetime | None = None
    worker_id: str | None = None
    user_id: int | None = None
    notify_to: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _apply_type_defaults(cls, data: Any) -> Any:
        """Fill ``payload.kind`` and ``priority`` from the job type when omitted."""
        if not isinstance(data, dict):
            return data

        job_type = data.get("type")
        type_value = getattr(job_type, "value", job_type)
        payload = data.get("payload")

        if isinstance(payload, dict) and "kind" not in payload and type_value is not None:
            data = {**data, "payload": {**payload, "kind": type_value}}
        if data.get("priority") is None and type_value is not None:
            data = {**data, "priority": default_priority(type_value)}
        return data

    @model_validator(mode="after")
    def _check_payload_kind(self) -> "Job":
        if self.payload.kind != self.type.value:
            raise ValueError(
                f"Payload kind '{self.payload.kind}' does not match job type '{self.type.value}'"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        """True once the job is completed or failed."""
        return self.state in TERMINAL_STATES

    @property
    def can_retry(self) -> bool:
        """True while another attempt is allowed."""
        return self.attempts < self.max_attempts

    def transition_to(self, target: JobState) -> None:
        """Move to ``target``, rejecting edges outside the state machine."""
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Job {self.id} cannot move from {self.state.value} to {target.value}",
                from_state=self.state.value,
                to_state=target.value,
            )
        self.state = target

    def mark_active(self, worker_id: str, now: datetime | None = None) -> None:
        """Claim the job for a worker and count the attempt."""
        if not self.can_retry:
            raise InvalidTransitionError(
                f"Job {self.id} has exhausted {self.max_attempts} attempts",
                from_state=self.state.value,
                to_state=JobState.ACTIVE.value,
            )
        now = now or utcnow()
        self.transition_to(JobState.ACTIVE)
        self.attempts += 1
        if self.processed_at is None:
            self.processed_at = now
        self.heartbeat_at = now
        self.worker_id = worker_id

    def mark_completed(self, result: Any, now: datetime | None = None) -> None:
        """Mark job as completed with the handler result."""
        self.transition_to(JobState.COMPLETED)
        self.result = {} if result is None else result
        self.finished_at = now or utcnow()
        self.worker_id = None

    def mark_retrying(self, error: str, available_at: datetime) -> None:
        """Return a failed attempt to the waiting state until ``available_at``."""
        self.transition_to(JobState.WAITING)
        self.last_error = error
        self.available_at = available_at
        self.heartbeat_at = None
        self.worker_id = None

    def mark_failed(self, reason: str, now: datetime | None = None) -> None:
        """Mark job as terminally failed."""
        self.transition_to(JobState.FAILED)
        self.failure_reason = reason[:MAX_FAILURE_REASON_LENGTH] or "Unknown error"
        self.finished_at = now or utcnow()
        self.worker_id = None

    def mark_stalled(self) -> None:
        """Mark an active job whose worker stopped sending heartbeats."""
        self.transition_to(JobState.STALLED)

    def mark_requeued(self, now: datetime | None = None) -> None:
        """Put a stalled job back in the waiting state for immediate reclaim."""
        self.transition_to(JobState.WAITING)
        self.available_at = now or utcnow()
        self.heartbeat_at = None
        self.worker_id = None

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot.model_validate(self, from_attributes=True)


class JobSnapshot(BaseModel):
    """Read-only status view returned to polling clients."""

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

    model_config = {"frozen": True}
