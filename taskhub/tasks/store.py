"""Job store interface and in-memory implementation.

The job store is the single source of truth for job state. Every mutation the
queue performs after submission is either an atomic claim or a
compare-and-set keyed on ``(state, attempts)``: ``attempts`` changes on every
claim, so it doubles as a lease token that fences off a worker whose job was
recovered by the stall detector in the meantime.
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from datetime import datetime

import structlog

from taskhub.core.exceptions import DuplicateJobError, StoreUnavailableError
from taskhub.tasks.models import TERMINAL_STATES, Job, JobState

logger = structlog.get_logger(__name__)


class JobStore(ABC):
    """Durable record store for the jobs of one queue namespace."""

    def __init__(self, queue: str) -> None:
        self.queue = queue

    @abstractmethod
    async def add(self, job: Job) -> None:
        """Persist a new waiting job.

        Raises:
            DuplicateJobError: If the external_id already exists in this namespace
        """

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Fetch a job by engine id."""

    @abstractmethod
    async def get_by_external_id(self, external_id: str) -> Job | None:
        """Fetch a job by caller correlation key."""

    @abstractmethod
    async def claim(self, worker_id: str, now: datetime) -> Job | None:
        """Atomically claim the next eligible waiting job.

        Picks the lowest priority value, then the oldest submission, among
        waiting jobs whose ``available_at`` has passed and whose attempts are
        not exhausted. The returned job is already ``active`` with its attempt
        counted.
        """

    @abstractmethod
    async def compare_and_set(self, job: Job, expected_state: JobState, expected_attempts: int) -> bool:
        """Write ``job`` only if the stored state and attempts still match."""

    @abstractmethod
    async def heartbeat(self, job_id: str, attempts: int, now: datetime) -> bool:
        """Refresh the liveness stamp of an active job held under ``attempts``."""

    @abstractmethod
    async def scan(self, state: JobState | None = None, limit: int | None = None) -> list[Job]:
        """List jobs, optionally filtered by state, in claim order."""

    @abstractmethod
    async def count_by_state(self) -> dict[JobState, int]:
        """Count jobs per state."""

    @abstractmethod
    async def purge(
        self,
        state: JobState,
        finished_before: datetime | None = None,
        keep_latest: int | None = None,
    ) -> int:
        """Delete terminal jobs finished before a cutoff or beyond a count cap.

        Raises:
            ValueError: If ``state`` is not a terminal state
        """

    async def close(self) -> None:
        """Release resources held by the store."""


def _check_purgeable(state: JobState) -> None:
    if state not in TERMINAL_STATES:
        raise ValueError(f"Only terminal jobs can be purged, got {state.value}")


def _claim_order(job: Job, seq: int) -> tuple[int, int]:
    return (job.priority, seq)


class InMemoryJobStore(JobStore):
    """Job store held in process memory.

    Mutations are serialised behind an asyncio lock, which makes claim and
    compare-and-set atomic for all workers of the event loop. Jobs are copied
    on the way in and out so callers never share mutable records with the store.
    """

    def __init__(self, queue: str = "tasks") -> None:
        super().__init__(queue)
        self._jobs: dict[str, Job] = {}
        self._by_external_id: dict[str, str] = {}
        self._seq: dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailableError(f"Job store for queue '{self.queue}' is closed")

    async def add(self, job: Job) -> None:
        async with self._lock:
            self._check_open()
            if job.external_id in self._by_external_id:
                raise DuplicateJobError(
                    f"Job with external_id '{job.external_id}' already exists",
                    external_id=job.external_id,
                )
            self._jobs[job.id] = job.model_copy(deep=True)
            self._by_external_id[job.external_id] = job.id
            self._seq[job.id] = next(self._counter)

    async def get(self, job_id: str) -> Job | None:
        self._check_open()
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def get_by_external_id(self, external_id: str) -> Job | None:
        self._check_open()
        job_id = self._by_external_id.get(external_id)
        return await self.get(job_id) if job_id else None

    async def claim(self, worker_id: str, now: datetime) -> Job | None:
        async with self._lock:
            self._check_open()
            eligible = [
                job
                for job in self._jobs.values()
                if job.state == JobState.WAITING and job.available_at <= now and job.can_retry
            ]
            if not eligible:
                return None

            job = min(eligible, key=lambda j: _claim_order(j, self._seq[j.id]))
            job.mark_active(worker_id, now)
            return job.model_copy(deep=True)

    async def compare_and_set(self, job: Job, expected_state: JobState, expected_attempts: int) -> bool:
        async with self._lock:
            self._check_open()
            current = self._jobs.get(job.id)
            if current is None:
                return False
            if current.state != expected_state or current.attempts != expected_attempts:
                return False
            self._jobs[job.id] = job.model_copy(deep=True)
            return True

    async def heartbeat(self, job_id: str, attempts: int, now: datetime) -> bool:
        async with self._lock:
            self._check_open()
            current = self._jobs.get(job_id)
            if current is None or current.state != JobState.ACTIVE or current.attempts != attempts:
                return False
            current.heartbeat_at = now
            return True

    async def scan(self, state: JobState | None = None, limit: int | None = None) -> list[Job]:
        self._check_open()
        jobs = [j for j in self._jobs.values() if state is None or j.state == state]
        jobs.sort(key=lambda j: _claim_order(j, self._seq[j.id]))
        if limit is not None:
            jobs = jobs[:limit]
        return [j.model_copy(deep=True) for j in jobs]

    async def count_by_state(self) -> dict[JobState, int]:
        self._check_open()
        counts = {state: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state] += 1
        return counts

    async def purge(
        self,
        state: JobState,
        finished_before: datetime | None = None,
        keep_latest: int | None = None,
    ) -> int:
        _check_purgeable(state)
        async with self._lock:
            self._check_open()
            finished = sorted(
                (j for j in self._jobs.values() if j.state == state),
                key=lambda j: (j.finished_at, self._seq[j.id]),
                reverse=True,
            )
            doomed: set[str] = set()
            if keep_latest is not None:
                doomed.update(j.id for j in finished[keep_latest:])
            if finished_before is not None:
                doomed.update(
                    j.id for j in finished if j.finished_at is not None and j.finished_at < finished_before
                )

            for job_id in doomed:
                job = self._jobs.pop(job_id)
                self._by_external_id.pop(job.external_id, None)
                self._seq.pop(job_id, None)
            if doomed:
                logger.debug("jobs_purged", queue=self.queue, state=state.value, count=len(doomed))
            return len(doomed)

    async def close(self) -> None:
        self._closed = True
