"""Job engine - the single entry point for enqueueing, scheduling and running jobs."""

import asyncio
from typing import Any, Callable, Optional

import structlog

from jobengine.config import EngineConfig
from jobengine.jobs.cron import next_cron_occurrence, validate_cron_expression
from jobengine.jobs.errors import EngineStateError, InvalidRequestError
from jobengine.jobs.maintenance import StaleJobReaper, run_periodic
from jobengine.jobs.metrics import MetricsAggregator
from jobengine.jobs.models import (
    EnqueueRequest,
    Job,
    REDMetrics,
    ScheduledJob,
    ScheduleRequest,
    utc_now,
)
from jobengine.jobs.registry import JobHandler, JobRegistry
from jobengine.jobs.scheduler import Scheduler
from jobengine.jobs.types import DEFAULT_QUEUE, JobStatus
from jobengine.jobs.worker import WorkerPool, generate_worker_id
from jobengine.repositories.base import JobStore
from jobengine.repositories.utils import encode_payload

logger = structlog.get_logger(__name__)


class JobEngine:
    """Owns the registry, worker pools, scheduler and maintenance loops.

    Usage:
        engine = JobEngine(store, EngineConfig())

        @engine.handler("send_email")
        async def send_email(job, ctx):
            ...

        async with engine:
            await engine.enqueue(EnqueueRequest("send_email", {"to": "a@b.c"}))
    """

    def __init__(
        self,
        store: JobStore,
        config: Optional[EngineConfig] = None,
        registry: Optional[JobRegistry] = None,
        context: Optional[dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ):
        self._store = store
        self._config = config or EngineConfig()
        self._registry = registry or JobRegistry()
        self._context = {"engine": self, **(context or {})}
        self._worker_id = worker_id or generate_worker_id()
        self._metrics = MetricsAggregator(
            store,
            window=self._config.metrics_window,
            retention=self._config.metrics_retention,
        )
        self._scheduler = Scheduler(
            store, self.enqueue, batch_size=self._config.scheduler_batch_size
        )

        self._pools: dict[str, WorkerPool] = {}
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._running = False

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def metrics(self) -> MetricsAggregator:
        return self._metrics

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pools(self) -> dict[str, WorkerPool]:
        return dict(self._pools)

    # ---------- Handlers ----------

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Register the handler for ``job_type``; safe while running."""
        self._registry.register(job_type, handler)
        logger.debug("job_handler_registered", job_type=job_type)

    def handler(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """Decorator form of :meth:`register`."""
        return self._registry.handler(job_type)

    # ---------- Producing work ----------

    async def enqueue(self, req: Optional[EnqueueRequest]) -> str:
        """Persist a pending job and return its id.

        With an idempotency key that already exists, the existing job's id is
        returned and nothing new is written.
        """
        if req is None:
            raise InvalidRequestError("enqueue request is required")
        if not req.job_type:
            raise InvalidRequestError("job_type is required")
        if req.max_retries < 0:
            raise InvalidRequestError(
                f"max_retries must be >= 0, got {req.max_retries}"
            )

        now = utc_now()
        queue_name = req.queue_name or DEFAULT_QUEUE
        max_retries = req.max_retries or self._config.default_max_retries
        payload = encode_payload(req.payload)

        job_id = await self._store.insert_job(
            queue_name=queue_name,
            job_type=req.job_type,
            payload=payload,
            priority=req.priority,
            max_retries=max_retries,
            run_at=req.resolve_run_at(now),
            now=now,
            idempotency_key=req.idempotency_key or None,
        )
        logger.info(
            "job_enqueued",
            job_id=job_id,
            job_type=req.job_type,
            queue=queue_name,
            priority=req.priority,
        )
        return job_id

    async def schedule(self, req: Optional[ScheduleRequest]) -> str:
        """Create or replace the recurring job named ``req.name``."""
        if req is None:
            raise InvalidRequestError("schedule request is required")
        if not req.name:
            raise InvalidRequestError("name is required")
        if not req.job_type:
            raise InvalidRequestError("job_type is required")
        validate_cron_expression(req.cron_expr)

        now = utc_now()
        next_run_at = next_cron_occurrence(req.cron_expr, now)
        schedule_id = await self._store.upsert_scheduled_job(
            name=req.name,
            queue_name=req.queue_name or DEFAULT_QUEUE,
            job_type=req.job_type,
            payload=encode_payload(req.payload),
            cron_expr=req.cron_expr,
            enabled=req.enabled,
            next_run_at=next_run_at,
            now=now,
        )
        logger.info(
            "job_scheduled",
            schedule=req.name,
            job_type=req.job_type,
            cron=req.cron_expr,
            next_run_at=next_run_at.isoformat(),
        )
        return schedule_id

    # ---------- Lifecycle ----------

    async def start(self) -> None:
        """Start worker pools, the scheduler and maintenance loops.

        If a pool fails to start, pools already started are stopped again and
        the engine stays stopped.
        """
        if self._running:
            raise EngineStateError("job engine is already running")
        self._stopping = asyncio.Event()

        try:
            for queue_name in self._config.worker_concurrency:
                pool = WorkerPool(
                    queue_name,
                    self._config.concurrency_for(queue_name),
                    self._store,
                    self._registry,
                    self._config,
                    self._metrics,
                    context=self._context,
                    worker_id=self._worker_id,
                )
                await pool.start()
                self._pools[queue_name] = pool
        except Exception as e:
            logger.error("job_engine_start_failed", error=str(e))
            timeout = self._config.shutdown_timeout.total_seconds()
            await asyncio.gather(
                *(pool.stop(timeout) for pool in self._pools.values()),
                return_exceptions=True,
            )
            self._pools = {}
            raise

        if self._config.scheduler_enabled:
            self._spawn(
                "scheduler", self._config.scheduler_interval, self._scheduler.tick
            )
        self._spawn(
            "metrics_cleanup",
            self._config.metrics_cleanup_interval,
            self._metrics.prune,
        )
        if self._config.stale_job_timeout is not None:
            reaper = StaleJobReaper(self._store, self._config.stale_job_timeout)
            self._spawn(
                "stale_job_reaper",
                self._config.stale_job_check_interval,
                reaper.run_once,
            )

        logger.info(
            "job_engine_started",
            worker_id=self._worker_id,
            queues={name: pool.concurrency for name, pool in self._pools.items()},
            scheduler=self._config.scheduler_enabled,
            handlers=self._registry.job_types(),
        )
        self._running = True

    def _spawn(self, name: str, interval, fn) -> None:
        self._tasks.append(
            asyncio.create_task(
                run_periodic(name, interval, fn, self._stopping),
                name=f"jobengine-{name}",
            )
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop everything started by :meth:`start` and wait for it to exit.

        ``timeout`` bounds the wait for in-flight handlers (defaults to the
        configured shutdown timeout). Calling stop on a stopped engine is a
        no-op.
        """
        if not self._running:
            return
        if timeout is None:
            timeout = self._config.shutdown_timeout.total_seconds()

        logger.info("job_engine_stopping", timeout_s=timeout)
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await asyncio.gather(
            *(pool.stop(timeout) for pool in self._pools.values()),
            return_exceptions=True,
        )

        self._tasks = []
        self._pools = {}
        self._running = False
        logger.info("job_engine_stopped")

    async def __aenter__(self) -> "JobEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ---------- Inspection ----------

    async def get_metrics(
        self, queue_name: Optional[str] = None, job_type: Optional[str] = None
    ) -> REDMetrics:
        """RED metrics over the configured trailing window."""
        return await self._metrics.get_metrics(queue_name, job_type)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self._store.get_job(job_id)

    async def list_jobs(
        self,
        status: Optional[str | JobStatus] = None,
        queue_name: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        if isinstance(status, JobStatus):
            status = status.value
        return await self._store.list_jobs(
            status=status,
            queue_name=queue_name,
            job_type=job_type,
            limit=limit,
            offset=offset,
        )

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending job. Running and finished jobs are left alone."""
        cancelled = await self._store.cancel_job(job_id, utc_now())
        logger.info("job_cancel_requested", job_id=job_id, cancelled=cancelled)
        return cancelled

    async def list_scheduled_jobs(self) -> list[ScheduledJob]:
        return await self._store.list_scheduled_jobs()

    async def set_schedule_enabled(self, name: str, enabled: bool) -> bool:
        updated = await self._store.set_schedule_enabled(name, enabled, utc_now())
        logger.info("schedule_toggled", schedule=name, enabled=enabled, found=updated)
        return updated
