"""Job store contract shared by the PostgreSQL and SQLite backends."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from jobengine.jobs.models import Job, JobMetric, ScheduledJob


class JobStore(ABC):
    """Durable record of jobs, scheduled jobs and execution metrics.

    Every operation is one self-contained statement against the shared store.
    Each state-changing write to a job row increments its ``version``. Writes
    made on behalf of a worker (claim, mark_*, schedule_retry, release) only
    apply while the row still carries ``expected_version`` and return False
    otherwise; the job then belongs to someone else.
    """

    @abstractmethod
    async def init_schema(self) -> None:
        """Create tables and indexes if they don't exist."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections held by the store."""

    # ---------- Jobs ----------

    @abstractmethod
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
        """Insert a pending job and return its id.

        If ``idempotency_key`` collides with an existing job, return that
        job's id instead of inserting.
        """

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""

    @abstractmethod
    async def list_jobs(
        self,
        status: Optional[str] = None,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs newest first, optionally filtered."""

    @abstractmethod
    async def select_candidates(
        self, queue_name: str, limit: int, now: datetime
    ) -> list[Job]:
        """Pending jobs due at ``now``, ordered by priority DESC, run_at ASC."""

    @abstractmethod
    async def try_claim(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        """Move a pending job to running iff its version still matches.

        Returns True for exactly one of any number of concurrent callers
        holding the same ``expected_version``.
        """

    @abstractmethod
    async def mark_running(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        """Stamp started_at on a claimed job as its handler starts."""

    @abstractmethod
    async def mark_completed(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        """Mark a running job as completed."""

    @abstractmethod
    async def mark_failed(
        self, job_id: str, expected_version: int, error: str, now: datetime
    ) -> bool:
        """Mark a running job as failed terminally, keeping the error."""

    @abstractmethod
    async def schedule_retry(
        self,
        job_id: str,
        expected_version: int,
        run_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        """Return a running job to pending with retry_count+1 and a later run_at."""

    @abstractmethod
    async def release_job(
        self, job_id: str, expected_version: int, now: datetime
    ) -> bool:
        """Put a claimed job that never finished back to pending."""

    @abstractmethod
    async def cancel_job(self, job_id: str, now: datetime) -> bool:
        """Cancel a pending job. Returns False if it was not pending."""

    @abstractmethod
    async def requeue_stale(self, started_before: datetime, now: datetime) -> int:
        """Reset running jobs started before the cutoff to pending."""

    # ---------- Scheduled jobs ----------

    @abstractmethod
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
        """Create or replace a scheduled job by name, returning its id."""

    @abstractmethod
    async def get_scheduled_job(self, name: str) -> Optional[ScheduledJob]:
        """Get a scheduled job by name."""

    @abstractmethod
    async def list_scheduled_jobs(self) -> list[ScheduledJob]:
        """List all scheduled jobs by name."""

    @abstractmethod
    async def set_schedule_enabled(
        self, name: str, enabled: bool, now: datetime
    ) -> bool:
        """Enable or disable a scheduled job. Returns False if not found."""

    @abstractmethod
    async def select_due_scheduled_jobs(
        self, now: datetime, limit: int
    ) -> list[ScheduledJob]:
        """Enabled scheduled jobs with next_run_at <= now, earliest first."""

    @abstractmethod
    async def advance_schedule_next_run(
        self, schedule_id: str, next_run_at: datetime, last_run_at: datetime
    ) -> None:
        """Record a firing and move next_run_at forward."""

    # ---------- Metrics ----------

    @abstractmethod
    async def record_metric(self, metric: JobMetric) -> None:
        """Append one execution metric."""

    @abstractmethod
    async def select_metrics(
        self,
        since: datetime,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
    ) -> list[JobMetric]:
        """Metrics recorded at or after ``since``."""

    @abstractmethod
    async def prune_metrics(self, before: datetime) -> int:
        """Delete metrics recorded before the cutoff. Returns the row count."""

    async def __aenter__(self) -> "JobStore":
        await self.init_schema()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
