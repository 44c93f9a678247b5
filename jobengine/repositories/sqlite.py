"""SQLite job store backed by aiosqlite.

The connection runs in autocommit mode with WAL journaling and a busy
timeout, so several processes can share one database file. Timestamps are
stored as fixed-width UTC text so lexical order equals time order.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite
import structlog

from jobengine.jobs.errors import PayloadError, StoreError
from jobengine.jobs.models import Job, JobMetric, ScheduledJob
from jobengine.repositories.base import JobStore
from jobengine.repositories.utils import (
    job_from_row,
    metric_from_row,
    new_id,
    scheduled_job_from_row,
)

logger = structlog.get_logger(__name__)

MEMORY = ":memory:"
_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL DEFAULT 'default',
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'completed', 'failed', 'cancelled')),
    priority INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    retry_count INTEGER NOT NULL DEFAULT 0,
    run_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    queued_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    error TEXT,
    idempotency_key TEXT,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_idempotency_key
    ON jobs(idempotency_key) WHERE idempotency_key IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_jobs_queue_status_run_at_priority
    ON jobs(queue_name, status, run_at, priority);
CREATE INDEX IF NOT EXISTS idx_jobs_status_started_at ON jobs(status, started_at);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);

CREATE TABLE IF NOT EXISTS scheduled_jobs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    queue_name TEXT NOT NULL DEFAULT 'default',
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    cron_expr TEXT NOT NULL,
    enabled BOOLEAN NOT NULL DEFAULT 1,
    next_run_at TEXT NOT NULL,
    last_run_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_enabled_next_run
    ON scheduled_jobs(enabled, next_run_at);

CREATE TABLE IF NOT EXISTS job_metrics (
    id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL,
    duration_ms INTEGER,
    recorded_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_job_metrics_queue_type
    ON job_metrics(queue_name, job_type, recorded_at);
CREATE INDEX IF NOT EXISTS idx_job_metrics_recorded_at ON job_metrics(recorded_at);
"""


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as sortable UTC text; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteJobStore(JobStore):
    """Job store over a single aiosqlite connection."""

    def __init__(self, path: str = MEMORY, busy_timeout: float = 5.0):
        self._path = path
        self._busy_timeout = busy_timeout
        self._db: Optional[aiosqlite.Connection] = None
        self._open_lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return self._path

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is not None:
            return self._db
        async with self._open_lock:
            if self._db is None:
                db = await aiosqlite.connect(
                    self._path, isolation_level=None, timeout=self._busy_timeout
                )
                db.row_factory = aiosqlite.Row
                if self._path != MEMORY:
                    await db.execute("PRAGMA journal_mode=WAL")
                await db.execute(f"PRAGMA busy_timeout={int(self._busy_timeout * 1000)}")
                self._db = db
        return self._db

    async def _execute(self, query: str, params: tuple = ()) -> int:
        db = await self._conn()
        try:
            async with db.execute(query, params) as cursor:
                return cursor.rowcount
        except aiosqlite.Error as e:
            raise StoreError(str(e)) from e

    async def _fetchall(self, query: str, params: tuple = ()) -> list[aiosqlite.Row]:
        db = await self._conn()
        try:
            return list(await db.execute_fetchall(query, params))
        except aiosqlite.Error as e:
            raise StoreError(str(e)) from e

    async def _fetchone(self, query: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        rows = await self._fetchall(query, params)
        return rows[0] if rows else None

    async def init_schema(self) -> None:
        db = await self._conn()
        await db.executescript(SCHEMA)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ---------- Jobs ----------

    async def insert_job(
        self,
        *,
        queue_name: str,
        job_type: str,
        payload: str,
        priority: int,
        max_retries: int,
        run_at: datetime,
        now: datetime,
        idempotency_key: Optional[str] = None,
    ) -> str:
        job_id = new_id()
        ts = format_ts(now)
        inserted = await self._execute(
            """
            INSERT INTO jobs (id, queue_name, job_type, payload, priority,
                              max_retries, run_at, created_at, updated_at,
                              queued_at, idempotency_key)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (idempotency_key) WHERE idempotency_key IS NOT NULL
            DO NOTHING
            """,
            (
                job_id,
                queue_name,
                job_type,
                payload,
                priority,
                max_retries,
                format_ts(run_at),
                ts,
                ts,
                ts,
                idempotency_key,
            ),
        )
        if inserted == 1:
            return job_id

        # Idempotency key collision: hand back the existing job
        row = await self._fetchone(
            "SELECT id FROM jobs WHERE idempotency_key = ?", (idempotency_key,)
        )
        if row is None:
            raise StoreError(
                f"insert skipped but no job found for idempotency key {idempotency_key!r}"
            )
        logger.debug(
            "job_idempotent_hit", job_id=row["id"], idempotency_key=idempotency_key
        )
        return row["id"]

    async def get_job(self, job_id: str) -> Optional[Job]:
        row = await self._fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return job_from_row(row, parse_ts) if row else None

    async def list_jobs(
        self,
        status: Optional[str] = None,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        conditions = []
        params: list[Any] = []
        for column, value in (
            ("status", status),
            ("queue_name", queue_name),
            ("job_type", job_type),
        ):
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        rows = await self._fetchall(
            f"""
            SELECT * FROM jobs
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        return [job_from_row(row, parse_ts) for row in rows]

    async def select_candidates(
        self, queue_name: str, limit: int, now: datetime
    ) -> list[Job]:
        rows = await self._fetchall(
            """
            SELECT * FROM jobs
            WHERE queue_name = ? AND status = 'pending' AND run_at <= ?
            ORDER BY priority DESC, run_at ASC
            LIMIT ?
            """,
            (queue_name, format_ts(now), limit),
        )
        return [job_from_row(row, parse_ts) for row in rows]

    async def try_claim(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        ts = format_ts(now)
        claimed = await self._execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, updated_at = ?, version = version + 1
            WHERE id = ? AND version = ? AND status = 'pending'
            """,
            (ts, ts, job_id, expected_version),
        )
        return claimed == 1

    async def mark_running(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        ts = format_ts(now)
        updated = await self._execute(
            """
            UPDATE jobs
            SET started_at = ?, updated_at = ?, version = version + 1
            WHERE id = ? AND version = ? AND status = 'running'
            """,
            (ts, ts, job_id, expected_version),
        )
        return updated == 1

    async def mark_completed(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        ts = format_ts(now)
        updated = await self._execute(
            """
            UPDATE jobs
            SET status = 'completed', completed_at = ?, updated_at = ?, version = version + 1
            WHERE id = ? AND version = ? AND status = 'running'
            """,
            (ts, ts, job_id, expected_version),
        )
        return updated == 1

    async def mark_failed(
        self, job_id: str, expected_version: int, error: str, now: datetime
    ) -> bool:
        ts = format_ts(now)
        updated = await self._execute(
            """
            UPDATE jobs
            SET status = 'failed', error = ?, completed_at = ?, updated_at = ?,
                version = version + 1
            WHERE id = ? AND version = ? AND status = 'running'
            """,
            (error, ts, ts, job_id, expected_version),
        )
        return updated == 1

    async def schedule_retry(
        self,
        job_id: str,
        expected_version: int,
        run_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        updated = await self._execute(
            """
            UPDATE jobs
            SET status = 'pending', retry_count = retry_count + 1, run_at = ?,
                error = ?, started_at = NULL, updated_at = ?, version = version + 1
            WHERE id = ? AND version = ? AND status = 'running'
            """,
            (format_ts(run_at), error, format_ts(now), job_id, expected_version),
        )
        return updated == 1

    async def release_job(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        released = await self._execute(
            """
            UPDATE jobs
            SET status = 'pending', started_at = NULL, updated_at = ?, version = version + 1
            WHERE id = ? AND version = ? AND status = 'running'
            """,
            (format_ts(now), job_id, expected_version),
        )
        return released == 1

    async def cancel_job(self, job_id: str, now: datetime) -> bool:
        ts = format_ts(now)
        cancelled = await self._execute(
            """
            UPDATE jobs
            SET status = 'cancelled', completed_at = ?, updated_at = ?, version = version + 1
            WHERE id = ? AND status = 'pending'
            """,
            (ts, ts, job_id),
        )
        return cancelled == 1

    async def requeue_stale(self, started_before: datetime, now: datetime) -> int:
        return await self._execute(
            """
            UPDATE jobs
            SET status = 'pending', started_at = NULL, updated_at = ?, version = version + 1
            WHERE status = 'running' AND started_at < ?
            """,
            (format_ts(now), format_ts(started_before)),
        )

    # ---------- Scheduled jobs ----------

    async def upsert_scheduled_job(
        self,
        *,
        name: str,
        queue_name: str,
        job_type: str,
        payload: str,
        cron_expr: str,
        enabled: bool,
        next_run_at: datetime,
        now: datetime,
    ) -> str:
        ts = format_ts(now)
        await self._execute(
            """
            INSERT INTO scheduled_jobs (id, name, queue_name, job_type, payload,
                                        cron_expr, enabled, next_run_at,
                                        created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (name) DO UPDATE SET
                queue_name = excluded.queue_name,
                job_type = excluded.job_type,
                payload = excluded.payload,
                cron_expr = excluded.cron_expr,
                enabled = excluded.enabled,
                next_run_at = excluded.next_run_at,
                updated_at = excluded.updated_at
            """,
            (
                new_id(),
                name,
                queue_name,
                job_type,
                payload,
                cron_expr,
                1 if enabled else 0,
                format_ts(next_run_at),
                ts,
                ts,
            ),
        )
        row = await self._fetchone(
            "SELECT id FROM scheduled_jobs WHERE name = ?", (name,)
        )
        if row is None:
            raise StoreError(f"scheduled job {name!r} missing after upsert")
        return row["id"]

    async def get_scheduled_job(self, name: str) -> Optional[ScheduledJob]:
        row = await self._fetchone(
            "SELECT * FROM scheduled_jobs WHERE name = ?", (name,)
        )
        return scheduled_job_from_row(row, parse_ts) if row else None

    async def list_scheduled_jobs(self) -> list[ScheduledJob]:
        rows = await self._fetchall("SELECT * FROM scheduled_jobs ORDER BY name")
        return [scheduled_job_from_row(row, parse_ts) for row in rows]

    async def set_schedule_enabled(
        self, name: str, enabled: bool, now: datetime
    ) -> bool:
        updated = await self._execute(
            "UPDATE scheduled_jobs SET enabled = ?, updated_at = ? WHERE name = ?",
            (1 if enabled else 0, format_ts(now), name),
        )
        return updated == 1

    async def select_due_scheduled_jobs(
        self, now: datetime, limit: int
    ) -> list[ScheduledJob]:
        rows = await self._fetchall(
            """
            SELECT * FROM scheduled_jobs
            WHERE enabled = 1 AND next_run_at <= ?
            ORDER BY next_run_at ASC
            LIMIT ?
            """,
            (format_ts(now), limit),
        )
        due = []
        for row in rows:
            try:
                due.append(scheduled_job_from_row(row, parse_ts))
            except PayloadError as e:
                logger.warning(
                    "scheduled_job_payload_invalid", name=row["name"], error=str(e)
                )
        return due

    async def advance_schedule_next_run(
        self, schedule_id: str, next_run_at: datetime, last_run_at: datetime
    ) -> None:
        await self._execute(
            """
            UPDATE scheduled_jobs
            SET next_run_at = ?, last_run_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                format_ts(next_run_at),
                format_ts(last_run_at),
                format_ts(last_run_at),
                schedule_id,
            ),
        )

    # ---------- Metrics ----------

    async def record_metric(self, metric: JobMetric) -> None:
        await self._execute(
            """
            INSERT INTO job_metrics (id, queue_name, job_type, status, duration_ms, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                metric.id or new_id(),
                metric.queue_name,
                metric.job_type,
                metric.status.value,
                metric.duration_ms,
                format_ts(metric.recorded_at),
            ),
        )

    async def select_metrics(
        self,
        since: datetime,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
    ) -> list[JobMetric]:
        conditions = ["recorded_at >= ?"]
        params: list[Any] = [format_ts(since)]
        if queue_name:
            conditions.append("queue_name = ?")
            params.append(queue_name)
        if job_type:
            conditions.append("job_type = ?")
            params.append(job_type)

        rows = await self._fetchall(
            f"""
            SELECT * FROM job_metrics
            WHERE {" AND ".join(conditions)}
            ORDER BY recorded_at
            """,
            tuple(params),
        )
        return [metric_from_row(row, parse_ts) for row in rows]

    async def prune_metrics(self, before: datetime) -> int:
        return await self._execute(
            "DELETE FROM job_metrics WHERE recorded_at < ?", (format_ts(before),)
        )
