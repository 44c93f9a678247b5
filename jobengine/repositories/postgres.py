"""PostgreSQL job store backed by an asyncpg pool."""

from datetime import datetime
from typing import Any, Optional

import structlog

from jobengine.jobs.errors import PayloadError, StoreError
from jobengine.jobs.models import Job, JobMetric, ScheduledJob
from jobengine.repositories.base import JobStore
from jobengine.repositories.utils import (
    affected_rows,
    job_from_row,
    metric_from_row,
    new_id,
    scheduled_job_from_row,
)

logger = structlog.get_logger(__name__)

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
    run_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    queued_at TIMESTAMPTZ,
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    error TEXT,
    idempotency_key TEXT,
    version BIGINT NOT NULL DEFAULT 1
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
    enabled BOOLEAN NOT NULL DEFAULT true,
    next_run_at TIMESTAMPTZ NOT NULL,
    last_run_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_enabled_next_run
    ON scheduled_jobs(enabled, next_run_at);

CREATE TABLE IF NOT EXISTS job_metrics (
    id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL,
    duration_ms BIGINT,
    recorded_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_job_metrics_queue_type
    ON job_metrics(queue_name, job_type, recorded_at);
CREATE INDEX IF NOT EXISTS idx_job_metrics_recorded_at ON job_metrics(recorded_at);
"""


class PostgresJobStore(JobStore):
    """Job store over an asyncpg connection pool."""

    def __init__(self, pool):
        self._pool = pool

    async def init_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA)

    async def close(self) -> None:
        await self._pool.close()

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
        query = """
            INSERT INTO jobs (id, queue_name, job_type, payload, priority,
                              max_retries, run_at, created_at, updated_at,
                              queued_at, idempotency_key)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $8, $8, $9)
            ON CONFLICT (idempotency_key) WHERE idempotency_key IS NOT NULL
            DO NOTHING
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            job_id = await conn.fetchval(
                query,
                new_id(),
                queue_name,
                job_type,
                payload,
                priority,
                max_retries,
                run_at,
                now,
                idempotency_key,
            )
            if job_id is not None:
                return job_id

            # Idempotency key collision: hand back the existing job
            existing = await conn.fetchval(
                "SELECT id FROM jobs WHERE idempotency_key = $1", idempotency_key
            )

        if existing is None:
            raise StoreError(
                f"insert skipped but no job found for idempotency key {idempotency_key!r}"
            )
        logger.debug(
            "job_idempotent_hit", job_id=existing, idempotency_key=idempotency_key
        )
        return existing

    async def get_job(self, job_id: str) -> Optional[Job]:
        query = "SELECT * FROM jobs WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return job_from_row(row) if row else None

    async def list_jobs(
        self,
        status: Optional[str] = None,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        # Build WHERE clause dynamically
        conditions = []
        params: list[Any] = []

        for column, value in (
            ("status", status),
            ("queue_name", queue_name),
            ("job_type", job_type),
        ):
            if value:
                params.append(value)
                conditions.append(f"{column} = ${len(params)}")

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        query = f"""
            SELECT * FROM jobs
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
        """
        params.extend([limit, offset])

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [job_from_row(row) for row in rows]

    async def select_candidates(
        self, queue_name: str, limit: int, now: datetime
    ) -> list[Job]:
        query = """
            SELECT * FROM jobs
            WHERE queue_name = $1 AND status = 'pending' AND run_at <= $2
            ORDER BY priority DESC, run_at ASC
            LIMIT $3
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, queue_name, now, limit)
        return [job_from_row(row) for row in rows]

    async def try_claim(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        query = """
            UPDATE jobs SET
                status = 'running',
                started_at = $3,
                updated_at = $3,
                version = version + 1
            WHERE id = $1 AND version = $2 AND status = 'pending'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_id, expected_version, now)
        return affected_rows(result) == 1

    async def mark_running(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        query = """
            UPDATE jobs SET
                started_at = $3,
                updated_at = $3,
                version = version + 1
            WHERE id = $1 AND version = $2 AND status = 'running'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_id, expected_version, now)
        return affected_rows(result) == 1

    async def mark_completed(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        query = """
            UPDATE jobs SET
                status = 'completed',
                completed_at = $3,
                updated_at = $3,
                version = version + 1
            WHERE id = $1 AND version = $2 AND status = 'running'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_id, expected_version, now)
        return affected_rows(result) == 1

    async def mark_failed(
        self, job_id: str, expected_version: int, error: str, now: datetime
    ) -> bool:
        query = """
            UPDATE jobs SET
                status = 'failed',
                error = $3,
                completed_at = $4,
                updated_at = $4,
                version = version + 1
            WHERE id = $1 AND version = $2 AND status = 'running'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_id, expected_version, error, now)
        return affected_rows(result) == 1

    async def schedule_retry(
        self,
        job_id: str,
        expected_version: int,
        run_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        query = """
            UPDATE jobs SET
                status = 'pending',
                retry_count = retry_count + 1,
                run_at = $3,
                error = $4,
                started_at = NULL,
                updated_at = $5,
                version = version + 1
            WHERE id = $1 AND version = $2 AND status = 'running'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                query, job_id, expected_version, run_at, error, now
            )
        return affected_rows(result) == 1

    async def release_job(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        query = """
            UPDATE jobs SET
                status = 'pending',
                started_at = NULL,
                updated_at = $3,
                version = version + 1
            WHERE id = $1 AND version = $2 AND status = 'running'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_id, expected_version, now)
        return affected_rows(result) == 1

    async def cancel_job(self, job_id: str, now: datetime) -> bool:
        query = """
            UPDATE jobs SET
                status = 'cancelled',
                completed_at = $2,
                updated_at = $2,
                version = version + 1
            WHERE id = $1 AND status = 'pending'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_id, now)
        return affected_rows(result) == 1

    async def requeue_stale(self, started_before: datetime, now: datetime) -> int:
        query = """
            UPDATE jobs SET
                status = 'pending',
                started_at = NULL,
                updated_at = $2,
                version = version + 1
            WHERE status = 'running' AND started_at < $1
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, started_before, now)
        return affected_rows(result)

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
        query = """
            INSERT INTO scheduled_jobs (id, name, queue_name, job_type, payload,
                                        cron_expr, enabled, next_run_at,
                                        created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $9)
            ON CONFLICT (name) DO UPDATE SET
                queue_name = EXCLUDED.queue_name,
                job_type = EXCLUDED.job_type,
                payload = EXCLUDED.payload,
                cron_expr = EXCLUDED.cron_expr,
                enabled = EXCLUDED.enabled,
                next_run_at = EXCLUDED.next_run_at,
                updated_at = EXCLUDED.updated_at
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            return await conn.fetchval(
                query,
                new_id(),
                name,
                queue_name,
                job_type,
                payload,
                cron_expr,
                enabled,
                next_run_at,
                now,
            )

    async def get_scheduled_job(self, name: str) -> Optional[ScheduledJob]:
        query = "SELECT * FROM scheduled_jobs WHERE name = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, name)
        return scheduled_job_from_row(row) if row else None

    async def list_scheduled_jobs(self) -> list[ScheduledJob]:
        query = "SELECT * FROM scheduled_jobs ORDER BY name"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        return [scheduled_job_from_row(row) for row in rows]

    async def set_schedule_enabled(
        self, name: str, enabled: bool, now: datetime
    ) -> bool:
        query = """
            UPDATE scheduled_jobs SET enabled = $2, updated_at = $3
            WHERE name = $1
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, name, enabled, now)
        return affected_rows(result) == 1

    async def select_due_scheduled_jobs(
        self, now: datetime, limit: int
    ) -> list[ScheduledJob]:
        query = """
            SELECT * FROM scheduled_jobs
            WHERE enabled = true AND next_run_at <= $1
            ORDER BY next_run_at ASC
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, now, limit)

        due = []
        for row in rows:
            try:
                due.append(scheduled_job_from_row(row))
            except PayloadError as e:
                logger.warning(
                    "scheduled_job_payload_invalid", name=row["name"], error=str(e)
                )
        return due

    async def advance_schedule_next_run(
        self, schedule_id: str, next_run_at: datetime, last_run_at: datetime
    ) -> None:
        query = """
            UPDATE scheduled_jobs SET
                next_run_at = $2,
                last_run_at = $3,
                updated_at = $3
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, schedule_id, next_run_at, last_run_at)

    # ---------- Metrics ----------

    async def record_metric(self, metric: JobMetric) -> None:
        query = """
            INSERT INTO job_metrics (id, queue_name, job_type, status,
                                     duration_ms, recorded_at)
            VALUES ($1, $2, $3, $4, $5, $6)
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                metric.id or new_id(),
                metric.queue_name,
                metric.job_type,
                metric.status.value,
                metric.duration_ms,
                metric.recorded_at,
            )

    async def select_metrics(
        self,
        since: datetime,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
    ) -> list[JobMetric]:
        conditions = ["recorded_at >= $1"]
        params: list[Any] = [since]

        if queue_name:
            params.append(queue_name)
            conditions.append(f"queue_name = ${len(params)}")
        if job_type:
            params.append(job_type)
            conditions.append(f"job_type = ${len(params)}")

        query = f"""
            SELECT * FROM job_metrics
            WHERE {" AND ".join(conditions)}
            ORDER BY recorded_at
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [metric_from_row(row) for row in rows]

    async def prune_metrics(self, before: datetime) -> int:
        query = "DELETE FROM job_metrics WHERE recorded_at < $1"
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, before)
        return affected_rows(result)
