"""SQLite-backed job store.

Claims are a single ``UPDATE ... WHERE id = (SELECT ...) RETURNING *``
statement and transitions are ``UPDATE ... WHERE state = ? AND attempts = ?``,
so exclusivity also holds between processes sharing the database file.
Timestamps are stored as UTC epoch seconds to keep range comparisons exact.
"""

import json
from datetime import datetime, timezone
from typing import Any

import aiosqlite
import structlog
from pydantic_core import to_jsonable_python

from taskhub.core.db.connection import DatabaseConnection
from taskhub.core.db.migrator import Migrator
from taskhub.core.exceptions import DuplicateJobError, StoreUnavailableError
from taskhub.tasks.models import Job, JobState
from taskhub.tasks.store import JobStore, _check_purgeable

logger = structlog.get_logger(__name__)

_CLAIM_SQL = """
UPDATE jobs
SET state = 'active',
    attempts = attempts + 1,
    processed_at = COALESCE(processed_at, :now),
    heartbeat_at = :now,
    worker_id = :worker_id
WHERE id = (
    SELECT id FROM jobs
    WHERE queue = :queue
      AND state = 'waiting'
      AND available_at <= :now
      AND attempts < max_attempts
    ORDER BY priority ASC, seq ASC
    LIMIT 1
)
AND state = 'waiting'
RETURNING *
"""

_CAS_SQL = """
UPDATE jobs
SET state = :state,
    attempts = :attempts,
    result = :result,
    failure_reason = :failure_reason,
    last_error = :last_error,
    processed_at = :processed_at,
    finished_at = :finished_at,
    available_at = :available_at,
    heartbeat_at = :heartbeat_at,
    worker_id = :worker_id
WHERE id = :id
  AND queue = :queue
  AND state = :expected_state
  AND attempts = :expected_attempts
"""

_INSERT_SQL = """
INSERT INTO jobs (
    id, external_id, queue, type, payload, priority, state, attempts, max_attempts,
    result, failure_reason, last_error, created_at, processed_at, finished_at,
    available_at, heartbeat_at, worker_id, user_id, notify_to
) VALUES (
    :id, :external_id, :queue, :type, :payload, :priority, :state, :attempts, :max_attempts,
    :result, :failure_reason, :last_error, :created_at, :processed_at, :finished_at,
    :available_at, :heartbeat_at, :worker_id, :user_id, :notify_to
)
"""


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _dt(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(to_jsonable_python(value), ensure_ascii=False)


def job_to_row(job: Job) -> dict[str, Any]:
    """Flatten a job into column values."""
    return {
        "id": job.id,
        "external_id": job.external_id,
        "queue": job.queue,
        "type": job.type.value,
        "payload": _dump_json(job.payload.model_dump(mode="json")),
        "priority": job.priority,
        "state": job.state.value,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "result": _dump_json(job.result),
        "failure_reason": job.failure_reason,
        "last_error": job.last_error,
        "created_at": _ts(job.created_at),
        "processed_at": _ts(job.processed_at),
        "finished_at": _ts(job.finished_at),
        "available_at": _ts(job.available_at),
        "heartbeat_at": _ts(job.heartbeat_at),
        "worker_id": job.worker_id,
        "user_id": job.user_id,
        "notify_to": job.notify_to,
    }


def row_to_job(row: aiosqlite.Row) -> Job:
    """Rebuild a job from a ``jobs`` row."""
    return Job.model_validate(
        {
            "id": row["id"],
            "external_id": row["external_id"],
            "queue": row["queue"],
            "type": row["type"],
            "payload": json.loads(row["payload"]),
            "priority": row["priority"],
            "state": row["state"],
            "attempts": row["attempts"],
            "max_attempts": row["max_attempts"],
            "result": json.loads(row["result"]) if row["result"] is not None else None,
            "failure_reason": row["failure_reason"],
            "last_error": row["last_error"],
            "created_at": _dt(row["created_at"]),
            "processed_at": _dt(row["processed_at"]),
            "finished_at": _dt(row["finished_at"]),
            "available_at": _dt(row["available_at"]),
            "heartbeat_at": _dt(row["heartbeat_at"]),
            "worker_id": row["worker_id"],
            "user_id": row["user_id"],
            "notify_to": row["notify_to"],
        }
    )


class SQLiteJobStore(JobStore):
    """Job store persisted in the ``jobs`` table of a SQLite database.

    Several stores (one per queue namespace) may share a DatabaseConnection;
    rows are partitioned by the ``queue`` column.

    Example:
        >>> database = DatabaseConnection(Path("taskhub.db"))
        >>> store = SQLiteJobStore(database, queue="tasks")
        >>> await store.initialize()
    """

    def __init__(self, database: DatabaseConnection, queue: str = "tasks") -> None:
        super().__init__(queue)
        self.database = database

    async def initialize(self) -> None:
        """Connect and apply schema migrations."""
        db = await self.database.connect()
        async with self.database.lock:
            await Migrator().run_migrations(db)

    async def _write(self, sql: str, params: dict[str, Any]) -> int:
        """Execute a mutating statement and commit; returns the affected row count."""
        async with self.database.lock:
            db = self.database.connection
            try:
                cursor = await db.execute(sql, params)
                rowcount = cursor.rowcount
                await db.commit()
                return rowcount
            except aiosqlite.IntegrityError:
                await db.rollback()
                raise
            except aiosqlite.Error as e:
                await db.rollback()
                raise StoreUnavailableError(f"Job store write failed: {e}") from e

    async def _fetch(self, sql: str, params: dict[str, Any]) -> list[aiosqlite.Row]:
        db = self.database.connection
        try:
            cursor = await db.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise StoreUnavailableError(f"Job store read failed: {e}") from e

    async def add(self, job: Job) -> None:
        row = job_to_row(job)
        row["queue"] = self.queue
        try:
            await self._write(_INSERT_SQL, row)
        except aiosqlite.IntegrityError as e:
            raise DuplicateJobError(
                f"Job with external_id '{job.external_id}' already exists",
                external_id=job.external_id,
            ) from e

    async def get(self, job_id: str) -> Job | None:
        rows = await self._fetch(
            "SELECT * FROM jobs WHERE id = :id AND queue = :queue",
            {"id": job_id, "queue": self.queue},
        )
        return row_to_job(rows[0]) if rows else None

    async def get_by_external_id(self, external_id: str) -> Job | None:
        rows = await self._fetch(
            "SELECT * FROM jobs WHERE external_id = :external_id AND queue = :queue",
            {"external_id": external_id, "queue": self.queue},
        )
        return row_to_job(rows[0]) if rows else None

    async def claim(self, worker_id: str, now: datetime) -> Job | None:
        async with self.database.lock:
            db = self.database.connection
            try:
                cursor = await db.execute(
                    _CLAIM_SQL,
                    {"now": _ts(now), "worker_id": worker_id, "queue": self.queue},
                )
                row = await cursor.fetchone()
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                raise StoreUnavailableError(f"Job claim failed: {e}") from e
        return row_to_job(row) if row is not None else None

    async def compare_and_set(self, job: Job, expected_state: JobState, expected_attempts: int) -> bool:
        row = job_to_row(job)
        params = {
            key: row[key]
            for key in (
                "id",
                "state",
                "attempts",
                "result",
                "failure_reason",
                "last_error",
                "processed_at",
                "finished_at",
                "available_at",
                "heartbeat_at",
                "worker_id",
            )
        }
        params.update(
            queue=self.queue,
            expected_state=expected_state.value,
            expected_attempts=expected_attempts,
        )
        return await self._write(_CAS_SQL, params) == 1

    async def heartbeat(self, job_id: str, attempts: int, now: datetime) -> bool:
        updated = await self._write(
            """
            UPDATE jobs SET heartbeat_at = :now
            WHERE id = :id AND queue = :queue AND state = 'active' AND attempts = :attempts
            """,
            {"now": _ts(now), "id": job_id, "queue": self.queue, "attempts": attempts},
        )
        return updated == 1

    async def scan(self, state: JobState | None = None, limit: int | None = None) -> list[Job]:
        sql = "SELECT * FROM jobs WHERE queue = :queue"
        params: dict[str, Any] = {"queue": self.queue}
        if state is not None:
            sql += " AND state = :state"
            params["state"] = state.value
        sql += " ORDER BY priority ASC, seq ASC"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = limit
        return [row_to_job(row) for row in await self._fetch(sql, params)]

    async def count_by_state(self) -> dict[JobState, int]:
        rows = await self._fetch(
            "SELECT state, COUNT(*) AS total FROM jobs WHERE queue = :queue GROUP BY state",
            {"queue": self.queue},
        )
        counts = {state: 0 for state in JobState}
        for row in rows:
            counts[JobState(row["state"])] = row["total"]
        return counts

    async def purge(
        self,
        state: JobState,
        finished_before: datetime | None = None,
        keep_latest: int | None = None,
    ) -> int:
        _check_purgeable(state)
        params: dict[str, Any] = {"queue": self.queue, "state": state.value}
        removed = 0

        if finished_before is not None:
            removed += await self._write(
                """
                DELETE FROM jobs
                WHERE queue = :queue AND state = :state AND finished_at < :cutoff
                """,
                {**params, "cutoff": _ts(finished_before)},
            )

        if keep_latest is not None:
            removed += await self._write(
                """
                DELETE FROM jobs
                WHERE queue = :queue AND state = :state AND id NOT IN (
                    SELECT id FROM jobs
                    WHERE queue = :queue AND state = :state
                    ORDER BY finished_at DESC, seq DESC
                    LIMIT :keep
                )
                """,
                {**params, "keep": keep_latest},
            )

        if removed:
            logger.debug("jobs_purged", queue=self.queue, state=state.value, count=removed)
        return removed
