"""Job handler registry."""

import threading
from typing import Any, Callable, Coroutine

from jobengine.jobs.models import Job

# Handler signature: async def handler(job: Job, ctx: dict) -> None
# Raising marks the attempt as failed; returning normally completes the job.
JobHandler = Callable[[Job, dict[str, Any]], Coroutine[Any, Any, Any]]


class JobRegistry:
    """Registry mapping job types to their handlers.

    Read-mostly; a lock guards it so handlers can be registered while the
    worker pools are already running.
    """

    def __init__(self):
        self._handlers: dict[str, JobHandler] = {}
        self._lock = threading.RLock()

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Register a handler for a job type, replacing any previous one."""
        if not job_type:
            raise ValueError("job_type must be a non-empty string")
        with self._lock:
            self._handlers[job_type] = handler

    def get_handler(self, job_type: str) -> JobHandler:
        """Get the handler for a job type. Raises KeyError if not found."""
        with self._lock:
            if job_type not in self._handlers:
                raise KeyError(f"no handler registered for job type: {job_type}")
            return self._handlers[job_type]

    def job_types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        with self._lock:
            return job_type in self._handlers

    def handler(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """Decorator to register a handler."""

        def decorator(fn: JobHandler) -> JobHandler:
            self.register(job_type, fn)
            return fn

        return decorator
