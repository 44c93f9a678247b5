"""Utility functions for repository operations."""

import json
from typing import Any, Callable, Optional
from uuid import uuid4

from jobengine.jobs.errors import PayloadError
from jobengine.jobs.models import Job, JobMetric, ScheduledJob
from jobengine.jobs.types import JobStatus


def new_id() -> str:
    """Generate an opaque row id (32 lowercase hex characters)."""
    return uuid4().hex


def encode_payload(payload: Optional[dict[str, Any]]) -> str:
    """Serialize a payload to JSON text.

    Raises:
        PayloadError: If the payload is not a mapping or is not JSON-serializable
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise PayloadError(
            f"payload must be a mapping, got {type(payload).__name__}"
        )
    try:
        return json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise PayloadError(f"failed to encode payload: {e}") from e


def decode_payload(value: Optional[str | dict]) -> dict[str, Any]:
    """
    Normalize a stored payload to a Python dict.

    The payload column holds JSON text; NULL decodes to an empty dict.

    Raises:
        PayloadError: If the text is not valid JSON or not a JSON object
    """
    if value is None:
        return {}

    if isinstance(value, dict):
        return value

    try:
        decoded = json.loads(value)
    except (TypeError, ValueError) as e:
        raise PayloadError(f"failed to decode payload: {e}") from e

    if decoded is None:
        return {}
    if not isinstance(decoded, dict):
        raise PayloadError(
            f"failed to decode payload: expected JSON object, got {type(decoded).__name__}"
        )
    return decoded


def affected_rows(status: Optional[str]) -> int:
    """Parse the row count from an asyncpg command status like 'UPDATE 1'."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except ValueError:
        return 0


def _identity(value: Any) -> Any:
    return value


def job_from_row(row, to_datetime: Callable[[Any], Any] = _identity) -> Job:
    """Convert a jobs row to a Job model.

    A payload that fails to decode yields an empty payload with
    ``payload_error`` set, so the claimed job can be failed terminally.
    """
    payload_error = None
    try:
        payload = decode_payload(row["payload"])
    except PayloadError as e:
        payload, payload_error = {}, str(e)

    return Job(
        id=row["id"],
        queue_name=row["queue_name"],
        job_type=row["job_type"],
        payload=payload,
        status=JobStatus(row["status"]),
        priority=row["priority"],
        run_at=to_datetime(row["run_at"]),
        max_retries=row["max_retries"],
        retry_count=row["retry_count"],
        version=row["version"],
        idempotency_key=row["idempotency_key"],
        created_at=to_datetime(row["created_at"]),
        updated_at=to_datetime(row["updated_at"]),
        queued_at=to_datetime(row["queued_at"]),
        started_at=to_datetime(row["started_at"]),
        completed_at=to_datetime(row["completed_at"]),
        error=row["error"],
        payload_error=payload_error,
    )


def scheduled_job_from_row(
    row, to_datetime: Callable[[Any], Any] = _identity
) -> ScheduledJob:
    """Convert a scheduled_jobs row to a ScheduledJob model."""
    return ScheduledJob(
        id=row["id"],
        name=row["name"],
        queue_name=row["queue_name"],
        job_type=row["job_type"],
        payload=decode_payload(row["payload"]),
        cron_expr=row["cron_expr"],
        enabled=bool(row["enabled"]),
        next_run_at=to_datetime(row["next_run_at"]),
        last_run_at=to_datetime(row["last_run_at"]),
        created_at=to_datetime(row["created_at"]),
        updated_at=to_datetime(row["updated_at"]),
    )


def metric_from_row(row, to_datetime: Callable[[Any], Any] = _identity) -> JobMetric:
    """Convert a job_metrics row to a JobMetric model."""
    return JobMetric(
        id=row["id"],
        queue_name=row["queue_name"],
        job_type=row["job_type"],
        status=JobStatus(row["status"]),
        duration_ms=row["duration_ms"],
        recorded_at=to_datetime(row["recorded_at"]),
    )
