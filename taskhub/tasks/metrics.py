"""Point-in-time queue statistics for the admin dashboard.

Example:
    >>> stats = await queue.get_stats()
    >>> print(f"{stats.waiting} waiting, {stats.active} active")
"""

from dataclasses import asdict, dataclass

from taskhub.tasks.models import JobState


@dataclass(frozen=True)
class QueueStats:
    """Job counts per state.

    Counts come from a single store scan, so they are consistent with each
    other but may lag transitions that happen while the scan runs.

    Attributes:
        waiting: Jobs waiting to be claimed (including backoff delays)
        active: Jobs held by a worker
        completed: Successfully completed jobs still retained
        failed: Terminally failed jobs still retained
        stalled: Jobs detected as abandoned and not yet requeued
    """

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    stalled: int = 0

    @classmethod
    def from_counts(cls, counts: dict[JobState, int]) -> "QueueStats":
        return cls(**{state.value: counts.get(state, 0) for state in JobState})

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.stalled

    def as_dict(self) -> dict[str, int]:
        data = asdict(self)
        data["total"] = self.total
        return data
