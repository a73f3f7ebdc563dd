"""Retry and backoff policy for failed job attempts."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

RetryPredicate = Callable[[BaseException], bool]


def always_retry(error: BaseException) -> bool:
    """Default predicate: every handler failure is retried."""
    return True


def retry_unless(*exc_types: type[BaseException]) -> RetryPredicate:
    """Build a predicate that fails fast on the given exception types.

    Example:
        >>> policy = RetryPolicy(should_retry=retry_unless(ValidationError))
    """

    def predicate(error: BaseException) -> bool:
        return not isinstance(error, exc_types)

    predicate.__name__ = f"retry_unless({', '.join(t.__name__ for t in exc_types)})"
    return predicate


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff between attempts plus a retriable-failure predicate.

    Attributes:
        base_delay: Delay in seconds before the first retry
        should_retry: Predicate deciding whether a handler error may be retried
    """

    base_delay: float = 2.0
    should_retry: RetryPredicate = field(default=always_retry)

    def delay_for(self, attempts: int) -> timedelta:
        """Delay before the next claim after the ``attempts``-th failed attempt."""
        exponent = max(attempts - 1, 0)
        return timedelta(seconds=self.base_delay * (2**exponent))

    def allows_retry(self, attempts: int, max_attempts: int, error: BaseException) -> bool:
        return attempts < max_attempts and self.should_retry(error)
