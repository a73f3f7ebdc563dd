"""Tests for job queue functionality."""

import asyncio
from collections import Counter
from datetime import timedelta

import pytest
import structlog
from pydantic import BaseModel

from taskhub.common.config import QueueConfig, RetentionConfig, RetryConfig
from taskhub.core.event_bus import EventBus, JobEvent
from taskhub.core.exceptions import (
    DuplicateJobError,
    InvalidPayloadError,
    RegistryFrozenError,
    StoreUnavailableError,
    UnknownJobTypeError,
)
from taskhub.tasks.models import JobState, NotificationType, TaskType
from taskhub.tasks.policy import RetryPolicy, retry_unless
from taskhub.tasks.queue import JobQueue, failure_message, resolve_job_type
from taskhub.tasks.registry import HandlerRegistry
from taskhub.tasks.store import InMemoryJobStore

TEXT_PAYLOAD = {"messages": [{"role": "user", "content": "Hello"}]}


def text_payload(content: str) -> dict:
    return {"messages": [{"role": "user", "content": content}]}


def build_queue(store, handler, config, clock, **kwargs) -> JobQueue:
    registry = HandlerRegistry()
    for task_type in TaskType:
        registry.register(task_type, handler)
    return JobQueue(store, registry, config, clock=clock, **kwargs)


async def wait_for_state(queue: JobQueue, external_id: str, *states: JobState, timeout: float = 5.0):
    """Poll a job until it reaches one of ``states``."""

    async def poll():
        while True:
            snapshot = await queue.get_status(external_id)
            if snapshot is not None and snapshot.state in states:
                return snapshot
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(poll(), timeout)


class FlakyStore(InMemoryJobStore):
    """In-memory store whose claim and add fail a set number of times."""

    def __init__(self, claim_failures: int = 0, add_failures: int = 0):
        super().__init__("tasks")
        self.claim_failures = claim_failures
        self.add_failures = add_failures

    async def claim(self, worker_id, now):
        if self.claim_failures > 0:
            self.claim_failures -= 1
            raise StoreUnavailableError("database is locked")
        return await super().claim(worker_id, now)

    async def add(self, job):
        if self.add_failures > 0:
            self.add_failures -= 1
            raise StoreUnavailableError("database is locked")
        await super().add(job)


class TestHelpers:
    """Tests for module helpers."""

    def test_failure_message_uses_exception_text(self):
        """Test that the failure reason is the exception message."""
        assert failure_message(ValueError("Simulated failure")) == "Simulated failure"

    def test_failure_message_falls_back_to_class_name(self):
        """Test that an empty exception message falls back to the class name."""
        assert failure_message(KeyError()) == "KeyError"

    def test_failure_message_is_truncated(self):
        """Test that long failure reasons are truncated to 500 characters."""
        assert len(failure_message(RuntimeError("x" * 1000))) == 500

    def test_resolve_job_type(self):
        """Test resolving task and notification types from strings and enums."""
        assert resolve_job_type("text-gen") is TaskType.TEXT_GEN
        assert resolve_job_type("welcome") is NotificationType.WELCOME
        assert resolve_job_type(TaskType.IMAGE_GEN) is TaskType.IMAGE_GEN

    def test_resolve_unknown_job_type(self):
        """Test that an unknown type string raises UnknownJobTypeError."""
        with pytest.raises(UnknownJobTypeError):
            resolve_job_type("video-gen")


class TestSubmit:
    """Tests for job submission."""

    @pytest.mark.asyncio
    async def test_submit_persists_waiting_job(self, memory_queue, clock):
        """Test that submit stores the job in waiting state before returning."""
        job = await memory_queue.submit(
            TaskType.TEXT_GEN,
            TEXT_PAYLOAD,
            external_id="order-1",
            user_id=42,
            notify_to="user@example.com",
        )

        stored = await memory_queue.get_job(job.id)
        assert stored.state == JobState.WAITING
        assert stored.external_id == "order-1"
        assert stored.user_id == 42
        assert stored.created_at == clock.now
        assert stored.max_attempts == 3
        assert stored.queue == "tasks"

    @pytest.mark.asyncio
    async def test_submit_accepts_string_type(self, memory_queue):
        """Test submitting by type string with the per-type default priority."""
        job = await memory_queue.submit("image-gen", {"prompt": "a cat"})

        assert job.type == TaskType.IMAGE_GEN
        assert job.priority == 3

    @pytest.mark.asyncio
    async def test_submit_overrides(self, memory_queue):
        """Test explicit priority and max_attempts overrides."""
        job = await memory_queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, priority=9, max_attempts=7)

        assert job.priority == 9
        assert job.max_attempts == 7

    @pytest.mark.asyncio
    async def test_submit_rejects_zero_max_attempts(self, memory_queue):
        """An explicit max_attempts of 0 is invalid, not a request for the default."""
        with pytest.raises(InvalidPayloadError):
            await memory_queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=0)

        assert await memory_queue.list_jobs() == []

    @pytest.mark.asyncio
    async def test_submit_unknown_type(self, memory_queue):
        """Test that an unknown job type is rejected."""
        with pytest.raises(UnknownJobTypeError):
            await memory_queue.submit("video-gen", {})

    @pytest.mark.asyncio
    async def test_submit_unregistered_type(self, memory_queue):
        """Test that a type without a handler is rejected and nothing is stored."""
        with pytest.raises(UnknownJobTypeError) as exc_info:
            await memory_queue.submit(NotificationType.WELCOME, {"to": "a@b.c", "username": "x"})

        assert exc_info.value.job_type == "welcome"
        assert (await memory_queue.get_stats()).total == 0

    @pytest.mark.asyncio
    async def test_submit_invalid_payload(self, memory_queue):
        """Test that a malformed payload is rejected and nothing is stored."""
        with pytest.raises(InvalidPayloadError):
            await memory_queue.submit(TaskType.TEXT_GEN, {"messages": []})

        assert (await memory_queue.get_stats()).total == 0

    @pytest.mark.asyncio
    async def test_submit_duplicate_external_id(self, memory_queue):
        """Test that a reused external_id raises DuplicateJobError."""
        await memory_queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, external_id="order-1")

        with pytest.raises(DuplicateJobError):
            await memory_queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, external_id="order-1")

    @pytest.mark.asyncio
    async def test_submit_retries_transient_store_errors(self, handler, queue_config, clock):
        """Test that submit retries a briefly unavailable store."""
        queue = build_queue(FlakyStore(add_failures=1), handler, queue_config, clock)

        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        assert await queue.get_job(job.id) is not None

    @pytest.mark.asyncio
    async def test_submit_fails_when_store_stays_down(self, handler, queue_config, clock):
        """Test that submit raises once store retries are exhausted."""
        queue = build_queue(FlakyStore(add_failures=10), handler, queue_config, clock)

        with pytest.raises(StoreUnavailableError):
            await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)


class TestProcessing:
    """End-to-end job outcomes driven one worker cycle at a time."""

    @pytest.mark.asyncio
    async def test_successful_job_completes(self, store, make_handler, queue_config, clock):
        """Test a successful handler run ending in completed."""
        handler = make_handler({"content": "Hi there"})
        queue = build_queue(store, handler, queue_config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        assert await queue.process_next("worker-1")

        snapshot = await queue.get_status(job.external_id)
        assert snapshot.state == JobState.COMPLETED
        assert snapshot.result == {"content": "Hi there"}
        assert snapshot.attempts == 1
        assert snapshot.finished_at == clock.now
        assert len(handler.calls) == 1
        assert handler.calls[0].messages[0].content == "Hello"

    @pytest.mark.asyncio
    async def test_always_failing_job_fails_after_max_attempts(self, store, make_handler, queue_config, clock):
        """Test a handler that always fails ending in failed after max attempts."""
        handler = make_handler(*[RuntimeError("upstream timeout")] * 3)
        queue = build_queue(store, handler, queue_config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        for _ in range(3):
            assert await queue.process_next("worker-1")
            clock.advance(60)

        snapshot = await queue.get_status(job.external_id)
        assert snapshot.state == JobState.FAILED
        assert snapshot.failure_reason == "upstream timeout"
        assert snapshot.attempts == 3
        assert len(handler.calls) == 3
        assert not await queue.process_next("worker-1")

    @pytest.mark.asyncio
    async def test_failure_then_success_waits_for_backoff(self, store, make_handler, queue_config, clock):
        """Test that a retried job is not claimable until its backoff elapses."""
        handler = make_handler(RuntimeError("flaky"), {"content": "ok"})
        queue = build_queue(store, handler, queue_config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)
        first_attempt_at = clock.now

        assert await queue.process_next("worker-1")
        waiting = await queue.get_job(job.id)
        assert waiting.state == JobState.WAITING
        assert waiting.last_error == "flaky"
        assert waiting.failure_reason is None

        clock.advance(1.9)
        assert not await queue.process_next("worker-1")

        clock.advance(0.1)
        assert await queue.process_next("worker-1")

        snapshot = await queue.get_status(job.external_id)
        assert snapshot.state == JobState.COMPLETED
        assert snapshot.attempts == 2
        assert len(handler.calls) == 2
        assert clock.now - first_attempt_at >= timedelta(seconds=queue_config.backoff_delay)

    @pytest.mark.asyncio
    async def test_backoff_grows_between_attempts(self, make_handler, queue_config, clock):
        """Test that retry delays double with each attempt."""
        handler = make_handler(*[RuntimeError("down")] * 4)
        queue = build_queue(InMemoryJobStore(), handler, queue_config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=4)

        delays = []
        for _ in range(3):
            assert await queue.process_next("worker-1")
            waiting = await queue.get_job(job.id)
            delays.append((waiting.available_at - clock.now).total_seconds())
            clock.now = waiting.available_at

        assert delays == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_non_retriable_error_fails_fast(self, make_handler, queue_config, clock):
        """Test that an error rejected by the retry predicate fails immediately."""
        handler = make_handler(TypeError("unsupported payload"))
        queue = build_queue(
            InMemoryJobStore(),
            handler,
            queue_config,
            clock,
            policy=RetryPolicy(should_retry=retry_unless(TypeError)),
        )
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        await queue.process_next("worker-1")

        snapshot = await queue.get_status(job.external_id)
        assert snapshot.state == JobState.FAILED
        assert snapshot.attempts == 1
        assert snapshot.failure_reason == "unsupported payload"

    @pytest.mark.asyncio
    async def test_unserialisable_result_counts_as_failure(self, make_handler, queue_config, clock):
        """Test that a result that cannot be stored as JSON fails the attempt."""
        handler = make_handler(object())
        queue = build_queue(InMemoryJobStore(), handler, queue_config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=1)

        await queue.process_next("worker-1")

        snapshot = await queue.get_status(job.external_id)
        assert snapshot.state == JobState.FAILED
        assert snapshot.failure_reason

    @pytest.mark.asyncio
    async def test_model_result_is_stored_as_json(self, make_handler, queue_config, clock):
        """Test that pydantic model results are stored as plain JSON."""
        class Reply(BaseModel):
            content: str
            tokens: int

        handler = make_handler(Reply(content="hi", tokens=3))
        queue = build_queue(InMemoryJobStore(), handler, queue_config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        await queue.process_next("worker-1")

        assert (await queue.get_status(job.external_id)).result == {"content": "hi", "tokens": 3}

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, make_handler, queue_config, clock):
        """Test claim order by priority, then submission order."""
        handler = make_handler()
        queue = build_queue(InMemoryJobStore(), handler, queue_config, clock)
        await queue.submit(TaskType.IMAGE_GEN, {"prompt": "slow"})
        await queue.submit(TaskType.TEXT_GEN, text_payload("first"))
        await queue.submit(TaskType.TEXT_GEN, text_payload("second"))

        assert await queue.drain() == 3

        kinds = [getattr(p, "prompt", None) or p.messages[0].content for p in handler.calls]
        assert kinds == ["first", "second", "slow"]

    @pytest.mark.asyncio
    async def test_terminal_status_is_stable(self, memory_queue, clock):
        """Test that repeated status reads of a finished job are identical."""
        job = await memory_queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)
        await memory_queue.drain()

        first = await memory_queue.get_status(job.external_id)
        clock.advance(3600)
        await memory_queue.check_stalled()
        assert not await memory_queue.process_next("worker-2")
        second = await memory_queue.get_status(job.external_id)

        assert first == second
        assert second.state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_get_status_unknown(self, memory_queue):
        """Test that an unknown external_id has no status."""
        assert await memory_queue.get_status("missing") is None

    @pytest.mark.asyncio
    async def test_late_outcome_is_discarded_after_recovery(self, make_handler, queue_config, clock):
        """A worker whose job was recovered by the stall detector cannot commit."""
        store = InMemoryJobStore()
        bus = EventBus()
        events: list[JobEvent] = []

        async def record(event: JobEvent) -> None:
            events.append(event)

        bus.subscribe(record)
        calls = []

        async def slow_then_recovered(payload):
            calls.append(payload)
            if len(calls) == 1:
                clock.advance(queue_config.stall_timeout + 1)
                assert await queue.check_stalled() == 1
                return {"from": "first"}
            return {"from": "second"}

        queue = build_queue(store, slow_then_recovered, queue_config, clock, event_bus=bus)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        await queue.process_next("worker-1")
        after_first = await queue.get_job(job.id)
        assert after_first.state == JobState.WAITING
        assert after_first.result is None

        await queue.process_next("worker-2")

        snapshot = await queue.get_status(job.external_id)
        assert snapshot.state == JobState.COMPLETED
        assert snapshot.result == {"from": "second"}
        assert snapshot.attempts == 2
        assert [e.event_type for e in events] == ["job_stalled", "job_completed"]


class TestStallDetection:
    """Tests for heartbeats and stall recovery."""

    @pytest.mark.asyncio
    async def test_crashed_worker_job_is_reclaimed(self, store, make_handler, queue_config, clock):
        """Test that a job abandoned by a crashed worker is requeued and completed."""
        handler = make_handler({"content": "recovered"})
        queue = build_queue(store, handler, queue_config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        # Worker claims and dies without reporting
        await store.claim("crashed-worker", clock())

        clock.advance(queue_config.stall_timeout - 1)
        assert await queue.check_stalled() == 0
        assert (await queue.get_job(job.id)).state == JobState.ACTIVE

        clock.advance(2)
        assert await queue.check_stalled() == 1
        assert (await queue.get_job(job.id)).state == JobState.WAITING

        assert await queue.process_next("worker-2")
        snapshot = await queue.get_status(job.external_id)
        assert snapshot.state == JobState.COMPLETED
        assert snapshot.attempts == 2

    @pytest.mark.asyncio
    async def test_stalled_job_without_attempts_left_fails(self, make_handler, queue_config, clock):
        """Test that a stalled job on its last attempt fails."""
        store = InMemoryJobStore()
        bus = EventBus()
        events: list[str] = []

        async def record(event: JobEvent) -> None:
            events.append(event.event_type)

        bus.subscribe(record)
        queue = build_queue(store, make_handler(), queue_config, clock, event_bus=bus)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=1)
        await store.claim("crashed-worker", clock())

        clock.advance(queue_config.stall_timeout + 1)
        await queue.check_stalled()

        snapshot = await queue.get_status(job.external_id)
        assert snapshot.state == JobState.FAILED
        assert "stalled" in snapshot.failure_reason
        assert events == ["job_stalled", "job_failed"]

    @pytest.mark.asyncio
    async def test_leftover_stalled_job_is_resolved(self, make_handler, queue_config, clock):
        """Test that a job left in stalled state is moved on by the stall check."""
        store = InMemoryJobStore()
        queue = build_queue(store, make_handler(), queue_config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)
        claimed = await store.claim("crashed-worker", clock())
        stalled = claimed.model_copy(deep=True)
        stalled.mark_stalled()
        assert await store.compare_and_set(stalled, JobState.ACTIVE, 1)

        assert await queue.check_stalled() == 1
        assert (await queue.get_job(job.id)).state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_long_job_alive(self, queue_config, clock):
        """Test that heartbeats stop a long-running job from being marked stalled."""
        config = queue_config.model_copy(update={"heartbeat_interval": 0.01})
        store = InMemoryJobStore()
        outcome = {}

        async def long_running(payload):
            clock.advance(20)
            await asyncio.sleep(0.1)
            clock.advance(20)
            outcome["recovered"] = await queue.check_stalled()
            return {"content": "done"}

        queue = build_queue(store, long_running, config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        await queue.process_next("worker-1")

        assert outcome["recovered"] == 0
        assert (await queue.get_status(job.external_id)).state == JobState.COMPLETED


class TestStatsAndRetention:
    """Tests for statistics and purging."""

    @pytest.mark.asyncio
    async def test_stats_sum_to_job_count(self, store, make_handler, queue_config, clock):
        """Test that per-state counts add up to the number of jobs."""
        handler = make_handler({"r": 1}, {"r": 2}, RuntimeError("boom"))
        queue = build_queue(store, handler, queue_config, clock)
        for i in range(10):
            await queue.submit(TaskType.TEXT_GEN, text_payload(f"job-{i}"), max_attempts=1)

        for _ in range(3):
            await queue.process_next("worker-1")
        await store.claim("busy-1", clock())
        await store.claim("busy-2", clock())

        results = await asyncio.gather(*(queue.get_stats() for _ in range(5)))

        for stats in results:
            assert stats.total == 10
            assert stats.waiting + stats.active + stats.completed + stats.failed + stats.stalled == 10
        stats = results[0]
        assert (stats.completed, stats.failed, stats.active, stats.waiting) == (2, 1, 2, 5)
        assert stats.as_dict()["total"] == 10

    @pytest.mark.asyncio
    async def test_clean_applies_retention(self, make_handler, queue_config, clock):
        """Test that retention purges old and excess finished jobs only."""
        config = queue_config.model_copy(
            update={
                "retention": RetentionConfig(
                    completed_max_age_seconds=3600,
                    completed_max_count=None,
                    failed_max_age_seconds=7200,
                    failed_max_count=None,
                )
            }
        )
        handler = make_handler({"r": 1}, RuntimeError("boom"), {"r": 2})
        queue = build_queue(InMemoryJobStore(), handler, config, clock)

        old_done = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=1)
        old_failed = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=1)
        await queue.drain()
        clock.advance(5000)
        recent = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=1)
        await queue.drain()
        pending = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        removed = await queue.clean()

        assert removed == {"completed": 1, "failed": 0}
        assert await queue.get_job(old_done.id) is None
        assert await queue.get_job(old_failed.id) is not None
        assert await queue.get_job(recent.id) is not None
        assert await queue.get_job(pending.id) is not None

    @pytest.mark.asyncio
    async def test_clean_with_grace_period(self, make_handler, queue_config, clock):
        """Test purging every finished job older than a grace period."""
        handler = make_handler({"r": 1}, RuntimeError("boom"))
        queue = build_queue(InMemoryJobStore(), handler, queue_config, clock)
        await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=1)
        await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=1)
        await queue.drain()
        waiting = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)
        clock.advance(61)

        removed = await queue.clean(grace_seconds=60)

        assert removed == {"completed": 1, "failed": 1}
        stats = await queue.get_stats()
        assert stats.total == 1
        assert (await queue.get_job(waiting.id)).state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_list_jobs(self, memory_queue):
        """Test listing jobs with a state filter and limit."""
        for i in range(3):
            await memory_queue.submit(TaskType.TEXT_GEN, text_payload(f"job-{i}"))
        await memory_queue.process_next("worker-1")

        assert len(await memory_queue.list_jobs()) == 3
        assert len(await memory_queue.list_jobs(JobState.COMPLETED)) == 1
        assert len(await memory_queue.list_jobs(limit=2)) == 2


class TestEvents:
    """Tests for lifecycle events published on the bus."""

    @pytest.mark.asyncio
    async def test_retry_then_failure_events(self, make_handler, queue_config, clock):
        """Test the events published for a retry followed by a final failure."""
        bus = EventBus()
        events: list[JobEvent] = []

        async def record(event: JobEvent) -> None:
            events.append(event)

        bus.subscribe(record)
        handler = make_handler(RuntimeError("one"), RuntimeError("two"))
        queue = build_queue(InMemoryJobStore(), handler, queue_config, clock, event_bus=bus)
        await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD, max_attempts=2)

        await queue.process_next("worker-1")
        clock.advance(10)
        await queue.process_next("worker-1")

        assert [e.event_type for e in events] == ["job_retrying", "job_failed"]
        assert events[0].details["delay_seconds"] == 2.0
        assert events[0].details["error"] == "one"
        assert events[1].details["failure_reason"] == "two"
        assert events[1].job.state == JobState.FAILED

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_affect_job(self, make_handler, queue_config, clock):
        """Test that a failing event subscriber does not change the job outcome."""
        bus = EventBus()

        async def broken(event: JobEvent) -> None:
            raise RuntimeError("subscriber exploded")

        bus.subscribe(broken)
        queue = build_queue(InMemoryJobStore(), make_handler(), queue_config, clock, event_bus=bus)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        await queue.process_next("worker-1")

        assert (await queue.get_status(job.external_id)).state == JobState.COMPLETED


class TestWorkers:
    """Tests for the background worker pool."""

    @pytest.mark.asyncio
    async def test_workers_process_each_job_exactly_once(self, store, queue_config, clock):
        """Test that concurrent workers run every job exactly once."""
        config = queue_config.model_copy(update={"concurrency": 4})
        seen: Counter[str] = Counter()

        async def handler(payload):
            seen[payload.messages[0].content] += 1
            await asyncio.sleep(0.001)
            return {"content": payload.messages[0].content}

        queue = build_queue(store, handler, config, clock)
        jobs = [await queue.submit(TaskType.TEXT_GEN, text_payload(f"job-{i}")) for i in range(20)]

        await queue.start()
        try:
            for job in jobs:
                await wait_for_state(queue, job.external_id, JobState.COMPLETED)
        finally:
            await queue.stop()

        assert len(seen) == 20
        assert set(seen.values()) == {1}
        assert (await queue.get_stats()).completed == 20

    @pytest.mark.asyncio
    async def test_start_freezes_registry(self, memory_queue):
        """Test that handlers cannot be registered after start."""
        await memory_queue.start()
        try:
            with pytest.raises(RegistryFrozenError):
                memory_queue.registry.register(TaskType.TEXT_GEN, lambda payload: None)
        finally:
            await memory_queue.stop()

        assert not memory_queue.running
        assert memory_queue.workers == []

    @pytest.mark.asyncio
    async def test_worker_survives_store_outage(self, handler, queue_config, clock):
        """Test that workers keep running through a store outage."""
        store = FlakyStore(claim_failures=5)
        queue = build_queue(store, handler, queue_config, clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        await queue.start()
        try:
            snapshot = await wait_for_state(queue, job.external_id, JobState.COMPLETED)
        finally:
            await queue.stop()

        assert snapshot.attempts == 1
        assert store.claim_failures == 0

    @pytest.mark.asyncio
    async def test_process_next_raises_when_store_stays_down(self, handler, clock):
        """Test that process_next raises once store retries are exhausted."""
        config = QueueConfig(store_retry=RetryConfig(max_attempts=3, min_wait=0.0, max_wait=0.0))
        queue = build_queue(FlakyStore(claim_failures=3), handler, config, clock)

        with pytest.raises(StoreUnavailableError):
            await queue.process_next("worker-1")

    @pytest.mark.asyncio
    async def test_stop_interrupts_running_job(self, queue_config, clock):
        """Test that stop leaves an interrupted job active for stall recovery."""
        started = asyncio.Event()

        async def blocking(payload):
            started.set()
            await asyncio.Event().wait()

        store = InMemoryJobStore()
        queue = build_queue(store, blocking, queue_config.model_copy(update={"concurrency": 1}), clock)
        job = await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        await queue.start()
        await asyncio.wait_for(started.wait(), timeout=5)
        await queue.stop(timeout=0.05)

        assert (await queue.get_job(job.id)).state == JobState.ACTIVE

        clock.advance(queue_config.stall_timeout + 1)
        assert await queue.check_stalled() == 1
        assert (await queue.get_job(job.id)).state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_interrupted_job_clears_log_context(self, queue_config, clock):
        """Cancelling a running handler unbinds the job's log context."""
        started = asyncio.Event()

        async def blocking(payload):
            started.set()
            await asyncio.Event().wait()

        queue = build_queue(InMemoryJobStore(), blocking, queue_config, clock)
        await queue.submit(TaskType.TEXT_GEN, TEXT_PAYLOAD)

        async def run_and_capture():
            structlog.contextvars.bind_contextvars(request_id="req-1")
            try:
                await queue.process_next("worker-1")
            except asyncio.CancelledError:
                return structlog.contextvars.get_contextvars()

        task = asyncio.create_task(run_and_capture())
        await asyncio.wait_for(started.wait(), timeout=5)
        task.cancel()
        context = await task

        assert context == {"request_id": "req-1"}

    @pytest.mark.asyncio
    async def test_close_releases_store(self, memory_queue):
        """Test that close shuts down the store."""
        await memory_queue.start()
        await memory_queue.close()

        with pytest.raises(StoreUnavailableError):
            await memory_queue.store.get("anything")
