"""Async event bus for job lifecycle events.

The queue engine emits an event after every committed terminal or retry
transition. Subscribers (such as the completion notifier) react without the
engine knowing about them, and a failing subscriber never affects the job.

Example:
    >>> bus = EventBus()
    >>> bus.subscribe(notifier.handle_event)
    >>>
    >>> # Emitted by the job queue after a transition is committed
    >>> await bus.emit_job_completed(job)
    >>> await bus.emit_job_failed(job)
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from taskhub.tasks.models import Job

logger = structlog.get_logger(__name__)

JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"
JOB_RETRYING = "job_retrying"
JOB_STALLED = "job_stalled"


@dataclass(frozen=True)
class JobEvent:
    """A committed job transition.

    Attributes:
        event_type: One of ``job_completed``, ``job_failed``, ``job_retrying``, ``job_stalled``
        job: Copy of the job as committed
        timestamp: When the event was created
        details: Event-specific extras (e.g. retry delay)
    """

    event_type: str
    job: "Job"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[JobEvent], Awaitable[None]]


class EventBus:
    """Fan-out of job events to async subscribers.

    Subscribers are awaited in registration order. Exceptions they raise are
    logged and swallowed.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)
        logger.info(
            "event_bus_subscriber_added",
            subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
            total=len(self._subscribers),
        )

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def _broadcast(self, event: JobEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(event)
            except Exception as e:
                logger.error(
                    "event_bus_subscriber_error",
                    event_type=event.event_type,
                    job_id=event.job.id,
                    error=str(e),
                    exc_info=True,
                )

    def _create_event(self, event_type: str, job: "Job", **details: Any) -> JobEvent:
        return JobEvent(event_type=event_type, job=job.model_copy(deep=True), details=details)

    async def emit(self, event_type: str, job: "Job", **details: Any) -> None:
        """Create and deliver an event to every subscriber."""
        event = self._create_event(event_type, job, **details)
        logger.debug(
            "event_bus_emit",
            event_type=event_type,
            job_id=job.id,
            subscribers=len(self._subscribers),
        )
        await self._broadcast(event)

    async def emit_job_completed(self, job: "Job") -> None:
        await self.emit(JOB_COMPLETED, job)

    async def emit_job_failed(self, job: "Job") -> None:
        await self.emit(JOB_FAILED, job, failure_reason=job.failure_reason)

    async def emit_job_retrying(self, job: "Job", delay_seconds: float) -> None:
        await self.emit(JOB_RETRYING, job, delay_seconds=delay_seconds, error=job.last_error)

    async def emit_job_stalled(self, job: "Job") -> None:
        await self.emit(JOB_STALLED, job)
