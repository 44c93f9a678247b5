"""Job queue, workers and scheduler."""

from jobengine.jobs.errors import (
    CronExpressionError,
    EngineStateError,
    InvalidRequestError,
    JobEngineError,
    PayloadError,
    PermanentJobError,
    StoreError,
)
from jobengine.jobs.models import (
    EnqueueRequest,
    Job,
    JobMetric,
    REDMetrics,
    ScheduledJob,
    ScheduleRequest,
)
from jobengine.jobs.registry import JobHandler, JobRegistry
from jobengine.jobs.types import DEFAULT_QUEUE, JobStatus

__all__ = [
    "CronExpressionError",
    "DEFAULT_QUEUE",
    "EngineStateError",
    "EnqueueRequest",
    "InvalidRequestError",
    "Job",
    "JobEngineError",
    "JobHandler",
    "JobMetric",
    "JobRegistry",
    "JobStatus",
    "PayloadError",
    "PermanentJobError",
    "REDMetrics",
    "ScheduleRequest",
    "ScheduledJob",
    "StoreError",
]
