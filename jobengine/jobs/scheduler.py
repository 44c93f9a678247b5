"""Cron scheduler - turns due scheduled job definitions into queued jobs."""

from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from jobengine.jobs.cron import next_cron_occurrence
from jobengine.jobs.errors import CronExpressionError
from jobengine.jobs.models import EnqueueRequest, ScheduledJob, utc_now
from jobengine.repositories.base import JobStore

logger = structlog.get_logger(__name__)

EnqueueFn = Callable[[EnqueueRequest], Awaitable[str]]

DEFAULT_BATCH_SIZE = 100


class Scheduler:
    """Fires due cron definitions through the engine's enqueue path."""

    def __init__(
        self,
        store: JobStore,
        enqueue: EnqueueFn,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self._store = store
        self._enqueue = enqueue
        self._batch_size = batch_size

    async def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Enqueue every due definition once and advance its next run.

        Returns the ids of the jobs enqueued by this tick.
        """
        now = now or utc_now()
        due = await self._store.select_due_scheduled_jobs(now, self._batch_size)
        if not due:
            return []

        enqueued = []
        for definition in due:
            job_id = await self._fire(definition, now)
            if job_id is not None:
                enqueued.append(job_id)

        logger.info("scheduler_tick", due=len(due), enqueued=len(enqueued))
        return enqueued

    async def _fire(self, definition: ScheduledJob, now: datetime) -> Optional[str]:
        log = logger.bind(
            schedule=definition.name,
            job_type=definition.job_type,
            queue=definition.queue_name,
        )

        # Next run first: a broken expression fires nothing
        try:
            next_run_at = next_cron_occurrence(definition.cron_expr, now)
        except CronExpressionError as e:
            log.error("scheduled_job_cron_invalid", error=str(e))
            return None

        try:
            job_id = await self._enqueue(
                EnqueueRequest(
                    job_type=definition.job_type,
                    payload=definition.payload,
                    queue_name=definition.queue_name,
                    priority=0,
                )
            )
        except Exception as e:
            log.error("scheduled_job_enqueue_failed", error=str(e))
            return None

        try:
            await self._store.advance_schedule_next_run(
                definition.id, next_run_at, now
            )
        except Exception as e:
            # The job is queued; the definition fires again on the next tick
            log.error("scheduled_job_advance_failed", job_id=job_id, error=str(e))
            return job_id

        log.info(
            "scheduled_job_enqueued",
            job_id=job_id,
            next_run_at=next_run_at.isoformat(),
        )
        return job_id
