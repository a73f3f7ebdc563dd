"""Core infrastructure: exceptions, event bus and database access."""

from .event_bus import EventBus, JobEvent
from .exceptions import (
    AIServiceError,
    AIServiceNotConfiguredError,
    DuplicateJobError,
    InvalidPayloadError,
    InvalidTransitionError,
    JobQueueError,
    NotificationError,
    RegistryFrozenError,
    StoreError,
    StoreUnavailableError,
    TaskHubError,
    UnknownJobTypeError,
)

__all__ = [
    "AIServiceError",
    "AIServiceNotConfiguredError",
    "DuplicateJobError",
    "EventBus",
    "InvalidPayloadError",
    "InvalidTransitionError",
    "JobEvent",
    "JobQueueError",
    "NotificationError",
    "RegistryFrozenError",
    "StoreError",
    "StoreUnavailableError",
    "TaskHubError",
    "UnknownJobTypeError",
]
