"""RED metrics: per-execution records and their aggregation.

Durable metrics live in the ``job_metrics`` table and back ``get_metrics``.
The Prometheus collectors below are process-local and only mirror what this
process executed.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog
from prometheus_client import Counter, Histogram

from jobengine.jobs.models import JobMetric, REDMetrics, utc_now
from jobengine.jobs.types import JobStatus
from jobengine.repositories.base import JobStore

logger = structlog.get_logger(__name__)

JOBS_PROCESSED = Counter(
    "jobengine_jobs_processed_total",
    "Handler executions by outcome",
    ["queue", "job_type", "status"],
)

JOB_DURATION = Histogram(
    "jobengine_job_duration_seconds",
    "Handler wall-clock duration in seconds",
    ["queue", "job_type"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0],
)

JOBS_CLAIMED = Counter(
    "jobengine_jobs_claimed_total",
    "Jobs claimed by this process",
    ["queue"],
)

CLAIM_CONFLICTS = Counter(
    "jobengine_claim_conflicts_total",
    "Claims lost to another worker or a concurrent state change",
    ["queue"],
)

JOBS_RELEASED = Counter(
    "jobengine_jobs_released_total",
    "Claimed jobs handed back to pending without running",
    ["queue"],
)


def _percentile(sorted_values: list[int], pct: int) -> float:
    idx = len(sorted_values) * pct // 100
    if idx >= len(sorted_values):
        idx = len(sorted_values) - 1
    return float(sorted_values[idx])


def compute_percentiles(durations: Iterable[int]) -> tuple[float, float, float]:
    """Return (p50, p95, p99) in the units of ``durations``.

    Each percentile is the value at index floor(len * pct / 100) of the
    ascending list, clamped to the last index. Empty input gives zeros.
    """
    values = sorted(durations)
    if not values:
        return 0.0, 0.0, 0.0
    return _percentile(values, 50), _percentile(values, 95), _percentile(values, 99)


def summarize_metrics(metrics: list[JobMetric], window: timedelta) -> REDMetrics:
    """Aggregate metric rows from one trailing window into RED figures."""
    total = len(metrics)
    if total == 0:
        return REDMetrics()

    failed = sum(1 for m in metrics if m.status == JobStatus.FAILED)
    durations = [m.duration_ms for m in metrics if m.duration_ms is not None]
    p50, p95, p99 = compute_percentiles(durations)
    window_seconds = window.total_seconds()

    return REDMetrics(
        jobs_per_second=total / window_seconds if window_seconds > 0 else 0.0,
        error_rate=failed / total * 100,
        p50_latency_ms=p50,
        p95_latency_ms=p95,
        p99_latency_ms=p99,
        total_jobs=total,
        failed_jobs=failed,
        # Rows without a duration count as zero
        average_latency_ms=sum(durations) / total,
    )


def observe_execution(
    queue_name: str, job_type: str, status: JobStatus, duration_s: float
) -> None:
    """Update the Prometheus collectors for one handler execution."""
    JOBS_PROCESSED.labels(queue=queue_name, job_type=job_type, status=status.value).inc()
    JOB_DURATION.labels(queue=queue_name, job_type=job_type).observe(duration_s)


class MetricsAggregator:
    """Records execution metrics and computes RED figures from the store."""

    def __init__(
        self,
        store: JobStore,
        window: timedelta = timedelta(hours=1),
        retention: timedelta = timedelta(hours=24),
    ):
        self._store = store
        self._window = window
        self._retention = retention

    @property
    def window(self) -> timedelta:
        return self._window

    async def record(
        self,
        queue_name: str,
        job_type: str,
        status: JobStatus,
        duration_ms: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Append one metric row.

        A failed write is logged, not raised.
        """
        metric = JobMetric(
            queue_name=queue_name,
            job_type=job_type,
            status=status,
            duration_ms=duration_ms,
            recorded_at=now or utc_now(),
        )
        try:
            await self._store.record_metric(metric)
        except Exception as e:
            logger.warning(
                "metric_record_failed",
                queue=queue_name,
                job_type=job_type,
                error=str(e),
            )

    async def get_metrics(
        self,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> REDMetrics:
        """RED metrics over the trailing window; empty filters mean "all"."""
        since = (now or utc_now()) - self._window
        rows = await self._store.select_metrics(
            since, queue_name=queue_name or None, job_type=job_type or None
        )
        return summarize_metrics(rows, self._window)

    async def prune(self, now: Optional[datetime] = None) -> int:
        """Delete metric rows older than the retention window."""
        cutoff = (now or utc_now()) - self._retention
        deleted = await self._store.prune_metrics(cutoff)
        if deleted:
            logger.info("metrics_pruned", count=deleted, cutoff=cutoff.isoformat())
        return deleted
