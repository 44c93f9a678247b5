"""Job worker pool - claims and executes jobs from one queue."""
import asyncio
import os
import socket
import time
import traceback
from typing import Any, Optional

import structlog

from jobengine.config import EngineConfig
from jobengine.jobs.backoff import calculate_backoff
from jobengine.jobs.errors import PermanentJobError
from jobengine.jobs.metrics import (
    CLAIM_CONFLICTS,
    JOBS_CLAIMED,
    JOBS_RELEASED,
    MetricsAggregator,
    observe_execution,
)
from jobengine.jobs.models import Job, utc_now
from jobengine.jobs.registry import JobRegistry
from jobengine.jobs.types import JobStatus
from jobengine.repositories.base import JobStore

logger = structlog.get_logger(__name__)


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


def describe_error(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class WorkerPool:
    """Poller plus a fixed set of workers serving one queue.

    The poller claims due jobs with the version-gated update and feeds a
    bounded queue of ``2 * concurrency`` slots; workers drain it and run the
    registered handler. Nothing about job state is held only in memory: a job
    that cannot be queued, or is still queued at shutdown, goes back to
    pending in the store.
    """

    def __init__(
        self,
        queue_name: str,
        concurrency: int,
        store: JobStore,
        registry: JobRegistry,
        config: EngineConfig,
        metrics: MetricsAggregator,
        context: Optional[dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._queue_name = queue_name
        self._concurrency = concurrency
        self._store = store
        self._registry = registry
        self._config = config
        self._metrics = metrics
        self._context = context or {}
        self._worker_id = worker_id or generate_worker_id()

        self._jobs: asyncio.Queue[Optional[Job]] = asyncio.Queue(
            maxsize=2 * concurrency
        )
        self._stopping = asyncio.Event()
        self._poller: Optional[asyncio.Task] = None
        self._workers: list[asyncio.Task] = []

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def running(self) -> bool:
        return self._poller is not None

    async def start(self) -> None:
        """Start the poller and worker tasks."""
        if self._poller is not None:
            return
        self._stopping.clear()
        for n in range(self._concurrency):
            worker_id = f"{self._worker_id}:{self._queue_name}:{n}"
            self._workers.append(
                asyncio.create_task(
                    self._worker_loop(worker_id), name=f"jobengine-worker-{worker_id}"
                )
            )
        self._poller = asyncio.create_task(
            self._poll_loop(), name=f"jobengine-poller-{self._queue_name}"
        )
        logger.info(
            "worker_pool_started",
            queue=self._queue_name,
            concurrency=self._concurrency,
            worker_id=self._worker_id,
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling, finish in-flight jobs and release queued ones.

        Handlers still running after ``timeout`` seconds are cancelled and
        their jobs released back to pending.
        """
        if self._poller is None:
            return
        self._stopping.set()
        await asyncio.gather(self._poller, return_exceptions=True)

        # Claimed but never started: hand back to the store
        leftovers = []
        while True:
            try:
                job = self._jobs.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._jobs.task_done()
            if job is not None:
                leftovers.append(job)
        for _ in self._workers:
            self._jobs.put_nowait(None)
        for job in leftovers:
            await self._release(job, reason="shutdown")

        done, pending = await asyncio.wait(self._workers, timeout=timeout)
        if pending:
            logger.warning(
                "worker_pool_shutdown_timeout",
                queue=self._queue_name,
                still_running=len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._poller = None
        self._workers = []
        self._jobs = asyncio.Queue(maxsize=2 * self._concurrency)
        logger.info("worker_pool_stopped", queue=self._queue_name)

    async def _poll_loop(self) -> None:
        interval = self._config.poll_interval.total_seconds()
        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(
                    "poll_failed",
                    queue=self._queue_name,
                    error=str(e),
                    traceback=traceback.format_exc(),
                )
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self) -> int:
        """Claim due jobs and queue them for the workers.

        Returns the number of jobs handed to workers this cycle.
        """
        candidates = await self._store.select_candidates(
            self._queue_name, 2 * self._concurrency, utc_now()
        )
        queued = 0
        for job in candidates:
            if self._stopping.is_set():
                break

            try:
                claimed = await self._store.try_claim(job.id, job.version, utc_now())
            except Exception as e:
                logger.warning("job_claim_error", job_id=job.id, error=str(e))
                continue

            if not claimed:
                # Another worker won, or the row changed since it was read
                CLAIM_CONFLICTS.labels(queue=self._queue_name).inc()
                logger.debug("job_claim_lost", job_id=job.id, version=job.version)
                continue

            job.version += 1
            job.status = JobStatus.RUNNING
            job.started_at = utc_now()
            JOBS_CLAIMED.labels(queue=self._queue_name).inc()

            if job.payload_error:
                logger.error(
                    "job_payload_invalid", job_id=job.id, error=job.payload_error
                )
                await self._mark_failed(job, job.payload_error)
                continue

            try:
                self._jobs.put_nowait(job)
            except asyncio.QueueFull:
                await self._release(job, reason="workers_saturated")
                break
            queued += 1

        return queued

    async def _worker_loop(self, worker_id: str) -> None:
        while True:
            job = await self._jobs.get()
            try:
                if job is None:
                    return
                await self.execute(job, worker_id)
            except Exception as e:
                # Bookkeeping bugs must not kill the worker
                logger.error(
                    "worker_loop_error",
                    worker_id=worker_id,
                    error=str(e),
                    traceback=traceback.format_exc(),
                )
            finally:
                self._jobs.task_done()

    async def execute(
        self, job: Job, worker_id: Optional[str] = None
    ) -> Optional[JobStatus]:
        """Run one claimed job to a terminal state or a scheduled retry.

        Handler exceptions never escape; they become store writes. Returns
        None when the job turned out to belong to someone else (its version
        moved on since the claim), in which case nothing more is written.
        """
        worker_id = worker_id or self._worker_id
        log = logger.bind(
            job_id=job.id,
            job_type=job.job_type,
            queue=job.queue_name,
            worker_id=worker_id,
        )

        try:
            handler = self._registry.get_handler(job.job_type)
        except KeyError:
            error = f"no handler registered for job type: {job.job_type}"
            log.error("job_no_handler", error=error)
            if not await self._mark_failed(job, error):
                return None
            return JobStatus.FAILED

        try:
            owned = await self._store.mark_running(job.id, job.version, utc_now())
        except Exception as e:
            log.error("job_mark_running_failed", error=str(e))
            return None
        if not owned:
            self._claim_lost(job, "mark_running")
            return None
        job.version += 1

        log.info("job_executing", attempt=job.retry_count + 1)
        context = {
            **self._context,
            "worker_id": worker_id,
            "queue_name": self._queue_name,
        }

        started = time.monotonic()
        error: Optional[str] = None
        retryable = True
        try:
            await handler(job, context)
        except asyncio.CancelledError:
            log.warning("job_interrupted")
            await self._release(job, reason="cancelled")
            raise
        except PermanentJobError as e:
            error = describe_error(e)
            retryable = False
        except Exception as e:
            error = describe_error(e)
            log.warning(
                "job_handler_failed", error=error, traceback=traceback.format_exc()
            )
        duration = time.monotonic() - started

        status = JobStatus.COMPLETED if error is None else JobStatus.FAILED
        await self._metrics.record(
            job.queue_name, job.job_type, status, int(duration * 1000)
        )
        observe_execution(job.queue_name, job.job_type, status, duration)

        if error is None:
            if not await self._mark_completed(job):
                return None
            log.info("job_succeeded", duration_ms=int(duration * 1000))
            return JobStatus.COMPLETED

        if retryable and job.retry_count < job.max_retries:
            if not await self._schedule_retry(job, error):
                return None
            return JobStatus.PENDING

        log.error(
            "job_failed",
            error=error,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            retryable=retryable,
        )
        if not await self._mark_failed(job, error):
            return None
        return JobStatus.FAILED

    def _claim_lost(self, job: Job, write: str) -> None:
        CLAIM_CONFLICTS.labels(queue=self._queue_name).inc()
        logger.warning(
            "job_claim_lost", job_id=job.id, version=job.version, write=write
        )

    async def _schedule_retry(self, job: Job, error: str) -> bool:
        backoff = calculate_backoff(
            job.retry_count,
            self._config.retry_backoff_base,
            self._config.retry_backoff_max,
        )
        now = utc_now()
        try:
            updated = await self._store.schedule_retry(
                job.id, job.version, now + backoff, error, now
            )
        except Exception as e:
            logger.error("job_retry_schedule_failed", job_id=job.id, error=str(e))
            return False
        if not updated:
            self._claim_lost(job, "schedule_retry")
            return False
        job.version += 1
        logger.info(
            "job_retry_scheduled",
            job_id=job.id,
            retry_count=job.retry_count + 1,
            backoff_s=backoff.total_seconds(),
        )
        return True

    async def _mark_completed(self, job: Job) -> bool:
        try:
            updated = await self._store.mark_completed(
                job.id, job.version, utc_now()
            )
        except Exception as e:
            logger.error("job_mark_completed_failed", job_id=job.id, error=str(e))
            return False
        if not updated:
            self._claim_lost(job, "mark_completed")
            return False
        job.version += 1
        return True

    async def _mark_failed(self, job: Job, error: str) -> bool:
        try:
            updated = await self._store.mark_failed(
                job.id, job.version, error, utc_now()
            )
        except Exception as e:
            logger.error("job_mark_failed_failed", job_id=job.id, error=str(e))
            return False
        if not updated:
            self._claim_lost(job, "mark_failed")
            return False
        job.version += 1
        return True

    async def _release(self, job: Job, reason: str) -> None:
        try:
            released = await self._store.release_job(job.id, job.version, utc_now())
        except Exception as e:
            logger.error("job_release_failed", job_id=job.id, error=str(e))
            return
        if released:
            job.version += 1
            JOBS_RELEASED.labels(queue=self._queue_name).inc()
        logger.info("job_released", job_id=job.id, reason=reason, released=released)
