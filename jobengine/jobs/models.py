"""Job system data models."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jobengine.jobs.types import DEFAULT_QUEUE, JobStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """A unit of deferred work."""

    id: str
    queue_name: str
    job_type: str
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING

    # Dispatch ordering
    priority: int = 0
    run_at: datetime = field(default_factory=utc_now)

    # Retry handling
    max_retries: int = 3
    retry_count: int = 0

    # Optimistic concurrency counter, bumped on every state-changing write
    version: int = 1
    idempotency_key: Optional[str] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Last failure message
    error: Optional[str] = None

    # Not persisted: set when the stored payload could not be decoded
    payload_error: Optional[str] = field(default=None, repr=False, compare=False)


@dataclass
class ScheduledJob:
    """A named recurring job definition."""

    id: str
    name: str
    queue_name: str
    job_type: str
    payload: dict[str, Any]
    cron_expr: str
    enabled: bool = True
    next_run_at: datetime = field(default_factory=utc_now)
    last_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class JobMetric:
    """One execution record, appended after a handler returns."""

    queue_name: str
    job_type: str
    status: JobStatus
    duration_ms: Optional[int]
    recorded_at: datetime = field(default_factory=utc_now)
    id: Optional[str] = None


@dataclass
class EnqueueRequest:
    """Request to enqueue a one-shot job.

    ``max_retries=0`` means "use the engine default". ``run_at`` takes
    precedence over ``run_in``; with neither the job is due immediately.
    """

    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    queue_name: str = DEFAULT_QUEUE
    priority: int = 0
    max_retries: int = 0
    run_at: Optional[datetime] = None
    run_in: Optional[timedelta] = None
    idempotency_key: Optional[str] = None

    def resolve_run_at(self, now: datetime) -> datetime:
        if self.run_at is not None:
            return self.run_at
        if self.run_in is not None and self.run_in > timedelta(0):
            return now + self.run_in
        return now


@dataclass
class ScheduleRequest:
    """Request to create or replace a recurring job, keyed by name."""

    name: str
    job_type: str
    cron_expr: str
    payload: dict[str, Any] = field(default_factory=dict)
    queue_name: str = DEFAULT_QUEUE
    enabled: bool = True


@dataclass
class REDMetrics:
    """Rate, error-rate and duration figures for a trailing window."""

    # Rate - jobs per second
    jobs_per_second: float = 0.0

    # Error - percentage of executions that failed
    error_rate: float = 0.0

    # Duration - latency percentiles in milliseconds
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0

    total_jobs: int = 0
    failed_jobs: int = 0
    average_latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
