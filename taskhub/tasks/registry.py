"""Mapping from job type to the async handler that executes it."""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from taskhub.core.exceptions import RegistryFrozenError, UnknownJobTypeError
from taskhub.tasks.models import JobType

logger = structlog.get_logger(__name__)

JobHandler = Callable[[Any], Awaitable[Any]]


class HandlerRegistry:
    """Static registry of job handlers.

    Handlers are registered at process startup. The owning queue freezes the
    registry when it starts, after which the handler set cannot change.

    Example:
        >>> registry = HandlerRegistry()
        >>> registry.register(TaskType.TEXT_GEN, handle_text_gen)
        >>> registry.freeze()
    """

    def __init__(self) -> None:
        self._handlers: dict[JobType, JobHandler] = {}
        self._frozen = False

    def register(self, job_type: JobType, handler: JobHandler) -> None:
        """Register the handler for a job type, replacing any earlier one.

        Raises:
            RegistryFrozenError: If the registry has been frozen
        """
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register handler for {job_type.value}: registry is frozen"
            )
        self._handlers[job_type] = handler
        logger.info("job_handler_registered", job_type=job_type.value)

    def get(self, job_type: JobType) -> JobHandler:
        """Return the handler for ``job_type``.

        Raises:
            UnknownJobTypeError: If no handler is registered
        """
        try:
            return self._handlers[job_type]
        except KeyError:
            raise UnknownJobTypeError(
                f"No handler registered for job type: {getattr(job_type, 'value', job_type)}",
                job_type=getattr(job_type, "value", str(job_type)),
            ) from None

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    @property
    def types(self) -> list[JobType]:
        return list(self._handlers)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True
