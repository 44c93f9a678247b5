"""Periodic background loops: metrics retention and stale job recovery."""

import asyncio
import traceback
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog

from jobengine.jobs.models import utc_now
from jobengine.repositories.base import JobStore

logger = structlog.get_logger(__name__)


async def run_periodic(
    name: str,
    interval: timedelta,
    fn: Callable[[], Awaitable[Any]],
    stop: asyncio.Event,
) -> None:
    """Call ``fn`` every ``interval`` until ``stop`` is set.

    The first call happens one interval after start. Exceptions from ``fn``
    are logged and the loop keeps going.
    """
    seconds = interval.total_seconds()
    logger.debug("periodic_task_started", task=name, interval_s=seconds)
    while True:
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
            break
        except asyncio.TimeoutError:
            pass
        try:
            await fn()
        except Exception as e:
            logger.error(
                "periodic_task_failed",
                task=name,
                error=str(e),
                traceback=traceback.format_exc(),
            )
    logger.debug("periodic_task_stopped", task=name)


class StaleJobReaper:
    """Return running jobs abandoned by a dead worker to pending."""

    def __init__(self, store: JobStore, timeout: timedelta):
        self._store = store
        self._timeout = timeout

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    async def run_once(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        cutoff = now - self._timeout
        count = await self._store.requeue_stale(cutoff, now)
        if count > 0:
            logger.warning(
                "stale_jobs_requeued",
                count=count,
                cutoff=cutoff.isoformat(),
                timeout_s=self._timeout.total_seconds(),
            )
        return count
