"""Async job queue engine backed by a durable job store."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from taskhub.common.config import QueueConfig
from taskhub.common.logging_config import bind_context, clear_context
from taskhub.core.event_bus import EventBus
from taskhub.core.exceptions import InvalidPayloadError, StoreError, UnknownJobTypeError
from taskhub.tasks.metrics import QueueStats
from taskhub.tasks.models import (
    MAX_FAILURE_REASON_LENGTH,
    Job,
    JobSnapshot,
    JobState,
    JobType,
    NotificationType,
    TaskType,
    utcnow,
)
from taskhub.tasks.policy import RetryPolicy
from taskhub.tasks.registry import HandlerRegistry
from taskhub.tasks.store import JobStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def failure_message(error: BaseException) -> str:
    """Human-readable failure text: the exception message, or its class name."""
    message = str(error).strip() or type(error).__name__
    return message[:MAX_FAILURE_REASON_LENGTH]


def resolve_job_type(job_type: Any) -> JobType:
    """Map an enum member or raw string onto a known job type.

    Raises:
        UnknownJobTypeError: If the value is not a task or notification type
    """
    if isinstance(job_type, (TaskType, NotificationType)):
        return job_type
    for enum in (TaskType, NotificationType):
        try:
            return enum(job_type)
        except ValueError:
            continue
    raise UnknownJobTypeError(f"Unknown job type: {job_type}", job_type=str(job_type))


class JobQueue:
    """Async job queue with a worker pool over a shared job store.

    Provides background task execution with:
    - Durable submission (the job is stored before submit returns)
    - Priority ordering, FIFO within a priority
    - Bounded concurrency via a fixed worker pool
    - Retry with exponential backoff, then terminal failure
    - Heartbeats and stall detection for abandoned jobs
    - Age and count based retention of finished jobs
    - Lifecycle events published on an EventBus

    All coordination goes through the store: workers claim atomically and
    every later transition is a compare-and-set on ``(state, attempts)``.

    Example:
        >>> registry = HandlerRegistry()
        >>> registry.register(TaskType.TEXT_GEN, handle_text_gen)
        >>> queue = JobQueue(InMemoryJobStore(), registry, QueueConfig(concurrency=2))
        >>> await queue.start()
        >>>
        >>> job = await queue.submit(TaskType.TEXT_GEN, {"messages": [{"content": "hi"}]})
        >>> snapshot = await queue.get_status(job.external_id)
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        config: QueueConfig | None = None,
        *,
        policy: RetryPolicy | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize job queue.

        Args:
            store: Job store holding this queue's namespace
            registry: Handlers for the job types this queue accepts
            config: Queue settings (default: QueueConfig())
            policy: Retry policy (default: backoff from config, always retry)
            event_bus: Bus receiving lifecycle events (optional)
            clock: Source of the current UTC time
        """
        self.store = store
        self.name = store.queue
        self.registry = registry
        self.config = config or QueueConfig()
        self.policy = policy or RetryPolicy(base_delay=self.config.backoff_delay)
        self.event_bus = event_bus
        self.clock = clock
        self.workers: list[asyncio.Task[None]] = []
        self.stall_task: asyncio.Task[None] | None = None
        self.retention_task: asyncio.Task[None] | None = None
        self.running = False
        self._wakeup = asyncio.Event()

    # -- store access -------------------------------------------------------

    def _log_store_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "job_store_retry_attempt",
            queue=self.name,
            attempt=retry_state.attempt_number,
            error=str(error) if error else None,
        )

    async def _store_call(
        self,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run a store operation, retrying on StoreError.

        Raises:
            StoreError: After exhausting retries (logged as job_store_unavailable)
        """
        retry_config = self.config.store_retry

        @retry(
            stop=stop_after_attempt(retry_config.max_attempts),
            wait=wait_exponential(
                multiplier=retry_config.backoff_multiplier,
                min=retry_config.min_wait,
                max=retry_config.max_wait,
            ),
            retry=retry_if_exception_type(StoreError),
            before_sleep=self._log_store_retry,
            reraise=True,
        )
        async def _call() -> T:
            return await fn(*args, **kwargs)

        try:
            return await _call()
        except StoreError as e:
            logger.error(
                "job_store_unavailable",
                queue=self.name,
                operation=operation,
                error=str(e),
            )
            raise

    async def _commit(self, job: Job, expected_state: JobState, expected_attempts: int) -> bool:
        """Write a worker outcome; a lost compare-and-set discards it."""
        committed = await self._store_call(
            "compare_and_set",
            self.store.compare_and_set,
            job,
            expected_state,
            expected_attempts,
        )
        if not committed:
            logger.warning(
                "job_outcome_discarded",
                queue=self.name,
                job_id=job.id,
                outcome=job.state.value,
                attempt=expected_attempts,
            )
        return committed

    # -- producer API -------------------------------------------------------

    async def submit(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | BaseModel,
        *,
        priority: int | None = None,
        external_id: str | None = None,
        max_attempts: int | None = None,
        user_id: int | None = None,
        notify_to: str | None = None,
    ) -> Job:
        """Submit a job to the queue.

        The job is persisted in the ``waiting`` state before this returns.

        Args:
            job_type: Job type (enum member or its string value)
            payload: Payload dict or payload model for the type
            priority: Lower is claimed first (default: per-type default)
            external_id: Caller correlation key (default: generated)
            max_attempts: Attempt ceiling (default: from config)
            user_id: Owner of the job
            notify_to: Address for the completion notification

        Returns:
            The stored job

        Raises:
            UnknownJobTypeError: If no handler is registered for the type
            InvalidPayloadError: If the payload does not fit the type
            DuplicateJobError: If external_id is already used in this queue
            StoreError: If the store stays unavailable
        """
        resolved = resolve_job_type(job_type)
        if resolved not in self.registry:
            raise UnknownJobTypeError(
                f"No handler registered for job type: {resolved.value}",
                job_type=resolved.value,
            )

        fields: dict[str, Any] = {
            "type": resolved,
            "payload": payload,
            "queue": self.name,
            "priority": priority,
            "max_attempts": self.config.max_attempts if max_attempts is None else max_attempts,
            "user_id": user_id,
            "notify_to": notify_to,
        }
        if external_id is not None:
            fields["external_id"] = external_id
        now = self.clock()
        fields["created_at"] = now
        fields["available_at"] = now

        try:
            job = Job.model_validate(fields)
        except ValidationError as e:
            raise InvalidPayloadError(
                f"Invalid payload for job type {resolved.value}: {e}",
                job_type=resolved.value,
            ) from e

        await self._store_call("add", self.store.add, job)
        self._wakeup.set()

        logger.info(
            "job_submitted",
            queue=self.name,
            job_id=job.id,
            external_id=job.external_id,
            job_type=job.type.value,
            priority=job.priority,
        )
        return job

    async def get_status(self, external_id: str) -> JobSnapshot | None:
        """Return the latest committed snapshot for a correlation key."""
        job = await self._store_call("get_by_external_id", self.store.get_by_external_id, external_id)
        return job.snapshot() if job else None

    async def get_job(self, job_id: str) -> Job | None:
        return await self._store_call("get", self.store.get, job_id)

    async def list_jobs(self, state: JobState | None = None, limit: int = 100) -> list[Job]:
        """List jobs in claim order, optionally filtered by state."""
        return await self._store_call("scan", self.store.scan, state, limit)

    async def get_stats(self) -> QueueStats:
        """Count jobs per state at call time."""
        counts = await self._store_call("count_by_state", self.store.count_by_state)
        return QueueStats.from_counts(counts)

    # -- worker side --------------------------------------------------------

    async def process_next(self, worker_id: str) -> bool:
        """Claim and execute one job.

        Returns:
            True if a job was processed, False if none was eligible
        """
        job = await self._store_call("claim", self.store.claim, worker_id, self.clock())
        if job is None:
            return False
        await self._execute(job, worker_id)
        return True

    async def drain(self, worker_id: str = "drain") -> int:
        """Process eligible jobs until none is left; returns how many ran."""
        processed = 0
        while await self.process_next(worker_id):
            processed += 1
        return processed

    async def _execute(self, job: Job, worker_id: str) -> None:
        bind_context(queue=self.name, job_id=job.id, worker_id=worker_id)
        logger.info(
            "job_started",
            job_type=job.type.value,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            priority=job.priority,
        )

        try:
            heartbeat = asyncio.create_task(self._heartbeat(job))
            error: Exception | None = None
            result: Any = None
            try:
                handler = self.registry.get(job.type)
                result = to_jsonable_python(await handler(job.payload))
            except asyncio.CancelledError:
                # Left active; the stall detector returns it to waiting.
                logger.warning("job_interrupted", job_type=job.type.value)
                raise
            except Exception as e:
                error = e
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

            if error is None:
                await self._handle_success(job, result)
            else:
                await self._handle_failure(job, error)
        finally:
            clear_context("queue", "job_id", "worker_id")

    async def _handle_success(self, job: Job, result: Any) -> None:
        completed = job.model_copy(deep=True)
        completed.mark_completed(result, self.clock())
        if not await self._commit(completed, JobState.ACTIVE, job.attempts):
            return

        logger.info(
            "job_completed",
            job_type=job.type.value,
            attempts=completed.attempts,
        )
        if self.event_bus is not None:
            await self.event_bus.emit_job_completed(completed)

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        message = failure_message(error)
        now = self.clock()
        updated = job.model_copy(deep=True)

        if self.policy.allows_retry(job.attempts, job.max_attempts, error):
            delay = self.policy.delay_for(job.attempts)
            updated.mark_retrying(message, now + delay)
            if not await self._commit(updated, JobState.ACTIVE, job.attempts):
                return
            logger.warning(
                "job_retry_scheduled",
                job_type=job.type.value,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                delay_seconds=delay.total_seconds(),
                error=message,
            )
            if self.event_bus is not None:
                await self.event_bus.emit_job_retrying(updated, delay.total_seconds())
            return

        updated.mark_failed(message, now)
        if not await self._commit(updated, JobState.ACTIVE, job.attempts):
            return
        logger.error(
            "job_failed",
            job_type=job.type.value,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            failure_reason=updated.failure_reason,
            exc_info=error,
        )
        if self.event_bus is not None:
            await self.event_bus.emit_job_failed(updated)

    async def _heartbeat(self, job: Job) -> None:
        """Refresh the job's liveness stamp until cancelled or the lease is lost."""
        interval = self.config.effective_heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            try:
                alive = await self.store.heartbeat(job.id, job.attempts, self.clock())
            except StoreError as e:
                logger.warning("job_heartbeat_failed", queue=self.name, job_id=job.id, error=str(e))
                continue
            if not alive:
                logger.warning("job_lease_lost", queue=self.name, job_id=job.id, attempt=job.attempts)
                return

    async def _worker(self, worker_id: str) -> None:
        """Background worker coroutine."""
        logger.info("worker_started", queue=self.name, worker_id=worker_id)

        while self.running:
            try:
                processed = await self.process_next(worker_id)
            except StoreError:
                # Already logged as job_store_unavailable
                processed = False
            except Exception as e:
                logger.error(
                    "worker_error",
                    queue=self.name,
                    worker_id=worker_id,
                    error=str(e),
                    exc_info=True,
                )
                processed = False

            if not processed and self.running:
                await self._wait_for_work()

        logger.info("worker_stopped", queue=self.name, worker_id=worker_id)

    async def _wait_for_work(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.poll_interval)
        except asyncio.TimeoutError:
            return
        self._wakeup.clear()

    # -- maintenance --------------------------------------------------------

    async def check_stalled(self) -> int:
        """Recover active jobs whose heartbeat is older than the stall timeout.

        Each such job moves to ``stalled`` and then back to ``waiting`` while
        attempts remain, or to ``failed`` once they are exhausted. Jobs left in
        ``stalled`` by an interrupted earlier run are resolved as well.

        Returns:
            Number of jobs recovered
        """
        now = self.clock()
        cutoff = now - timedelta(seconds=self.config.stall_timeout)

        for job in await self._store_call("scan", self.store.scan, JobState.ACTIVE):
            last_seen = job.heartbeat_at or job.processed_at or job.created_at
            if last_seen >= cutoff:
                continue

            stalled = job.model_copy(deep=True)
            stalled.mark_stalled()
            committed = await self._store_call(
                "compare_and_set",
                self.store.compare_and_set,
                stalled,
                JobState.ACTIVE,
                job.attempts,
            )
            if not committed:
                continue

            logger.warning(
                "job_stalled",
                queue=self.name,
                job_id=job.id,
                job_type=job.type.value,
                worker_id=job.worker_id,
                attempt=job.attempts,
                last_heartbeat=last_seen.isoformat(),
            )
            if self.event_bus is not None:
                await self.event_bus.emit_job_stalled(stalled)

        recovered = 0
        for job in await self._store_call("scan", self.store.scan, JobState.STALLED):
            if await self._resolve_stalled(job, now):
                recovered += 1
        return recovered

    async def _resolve_stalled(self, job: Job, now: datetime) -> bool:
        resolved = job.model_copy(deep=True)
        if resolved.can_retry:
            resolved.mark_requeued(now)
        else:
            resolved.mark_failed(
                f"Job stalled: no heartbeat within {self.config.stall_timeout:g}s "
                f"on attempt {job.attempts} of {job.max_attempts}",
                now,
            )

        committed = await self._store_call(
            "compare_and_set",
            self.store.compare_and_set,
            resolved,
            JobState.STALLED,
            job.attempts,
        )
        if not committed:
            return False

        if resolved.state == JobState.WAITING:
            logger.warning("job_requeued", queue=self.name, job_id=job.id, attempt=job.attempts)
            self._wakeup.set()
        else:
            logger.error(
                "job_failed",
                queue=self.name,
                job_id=job.id,
                job_type=job.type.value,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                failure_reason=resolved.failure_reason,
            )
            if self.event_bus is not None:
                await self.event_bus.emit_job_failed(resolved)
        return True

    async def clean(self, grace_seconds: float | None = None) -> dict[str, int]:
        """Purge finished jobs past their retention window.

        Args:
            grace_seconds: Purge every completed/failed job finished longer ago
                than this, instead of applying the configured retention

        Returns:
            Number of purged jobs per terminal state
        """
        now = self.clock()
        retention = self.config.retention

        def cutoff(max_age: float | None) -> datetime | None:
            return now - timedelta(seconds=max_age) if max_age is not None else None

        if grace_seconds is not None:
            plan = {
                JobState.COMPLETED: (cutoff(grace_seconds), None),
                JobState.FAILED: (cutoff(grace_seconds), None),
            }
        else:
            plan = {
                JobState.COMPLETED: (
                    cutoff(retention.completed_max_age_seconds),
                    retention.completed_max_count,
                ),
                JobState.FAILED: (
                    cutoff(retention.failed_max_age_seconds),
                    retention.failed_max_count,
                ),
            }

        removed: dict[str, int] = {}
        for state, (finished_before, keep_latest) in plan.items():
            removed[state.value] = await self._store_call(
                "purge",
                self.store.purge,
                state,
                finished_before=finished_before,
                keep_latest=keep_latest,
            )

        if any(removed.values()):
            logger.info("jobs_cleaned", queue=self.name, **removed)
        return removed

    async def _periodic(self, name: str, interval: float, action: Callable[[], Awaitable[Any]]) -> None:
        """Run a maintenance action every ``interval`` seconds while running."""
        logger.info(f"{name}_started", queue=self.name, interval=interval)

        while self.running:
            try:
                await asyncio.sleep(interval)
                await action()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{name}_error", queue=self.name, error=str(e), exc_info=True)

        logger.info(f"{name}_stopped", queue=self.name)

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Freeze the handler registry and start workers and maintenance loops."""
        if self.running:
            logger.warning("job_queue_already_running", queue=self.name)
            return

        self.registry.freeze()
        self.running = True
        self.workers = [
            asyncio.create_task(self._worker(f"{self.name}-{i}"))
            for i in range(self.config.concurrency)
        ]
        self.stall_task = asyncio.create_task(
            self._periodic(
                "stall_monitor",
                self.config.effective_stall_check_interval,
                self.check_stalled,
            )
        )
        self.retention_task = asyncio.create_task(
            self._periodic("retention", self.config.retention.interval_seconds, self.clean)
        )
        logger.info(
            "job_queue_started",
            queue=self.name,
            concurrency=self.config.concurrency,
            handlers=[t.value for t in self.registry.types],
        )

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop workers, letting in-flight jobs finish for up to ``timeout`` seconds.

        Jobs still running after the timeout are cancelled and stay ``active``
        until the stall detector recovers them.
        """
        if not self.running:
            return

        logger.info("job_queue_stopping", queue=self.name)
        self.running = False
        self._wakeup.set()

        for task in (self.stall_task, self.retention_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self.stall_task, self.retention_task) if t is not None),
            return_exceptions=True,
        )
        self.stall_task = None
        self.retention_task = None

        if self.workers:
            _, pending = await asyncio.wait(self.workers, timeout=timeout)
            for worker in pending:
                worker.cancel()
            await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers.clear()
        logger.info("job_queue_stopped", queue=self.name)

    async def close(self) -> None:
        """Stop the queue and release its store."""
        await self.stop()
        await self.store.close()
