"""Exceptions for the task queue, job store and external collaborators."""

from typing import Optional


class TaskHubError(Exception):
    """Base exception for TaskHub errors."""

    pass


# Job queue exceptions
class JobQueueError(TaskHubError):
    """Base exception for job queue errors."""

    pass


class UnknownJobTypeError(JobQueueError, ValueError):
    """Raised at submission when no handler is registered for the job type."""

    def __init__(self, message: str, job_type: Optional[str] = None):
        super().__init__(message)
        self.job_type = job_type


class InvalidPayloadError(JobQueueError, ValueError):
    """Raised at submission when the payload does not match the job type."""

    def __init__(self, message: str, job_type: Optional[str] = None):
        super().__init__(message)
        self.job_type = job_type


class DuplicateJobError(JobQueueError):
    """Raised when an external_id is already used in the queue namespace."""

    def __init__(self, message: str, external_id: Optional[str] = None):
        super().__init__(message)
        self.external_id = external_id


class InvalidTransitionError(JobQueueError):
    """Raised when a job state change is not an edge of the state machine."""

    def __init__(self, message: str, from_state: Optional[str] = None, to_state: Optional[str] = None):
        super().__init__(message)
        self.from_state = from_state
        self.to_state = to_state


class RegistryFrozenError(JobQueueError):
    """Raised when registering a handler after the queue has started."""

    pass


# Job store exceptions
class StoreError(TaskHubError):
    """Base exception for job store failures."""

    pass


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached or is closed."""

    pass


# AI service exceptions
class AIServiceError(TaskHubError):
    """Raised when a call to the generative-AI API fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AIServiceNotConfiguredError(AIServiceError):
    """Raised when the AI API key has not been configured."""

    def __init__(self, message: str = "AI service is not configured: set ai.api_key"):
        super().__init__(message, status_code=503)


# Notification exceptions
class NotificationError(TaskHubError):
    """Raised when a notification cannot be delivered."""

    def __init__(self, message: str, recipient: Optional[str] = None):
        super().__init__(message)
        self.recipient = recipient


class MigrationError(StoreError):
    """Raised when a schema migration cannot be applied."""

    def __init__(self, message: str, version: Optional[int] = None, filename: Optional[str] = None):
        super().__init__(message)
        self.version = version
        self.filename = filename
