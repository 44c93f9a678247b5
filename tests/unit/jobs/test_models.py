"""Tests for job models."""

from datetime import datetime, timedelta, timezone

from jobengine.jobs.models import EnqueueRequest, Job, REDMetrics, ScheduleRequest
from jobengine.jobs.types import JobStatus


class TestJob:
    def test_create_job_defaults(self):
        job = Job(
            id="abc",
            queue_name="default",
            job_type="send_email",
            payload={"to": "a@b.c"},
        )
        assert job.status == JobStatus.PENDING
        assert job.priority == 0
        assert job.retry_count == 0
        assert job.max_retries == 3
        assert job.version == 1
        assert job.started_at is None
        assert job.payload_error is None

    def test_payload_error_not_compared(self):
        a = Job(id="x", queue_name="q", job_type="t", payload={})
        b = Job(
            id="x",
            queue_name="q",
            job_type="t",
            payload={},
            created_at=a.created_at,
            updated_at=a.updated_at,
            run_at=a.run_at,
            payload_error="failed to decode payload: boom",
        )
        assert a == b


class TestEnqueueRequest:
    NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_defaults(self):
        req = EnqueueRequest("send_email")
        assert req.queue_name == "default"
        assert req.payload == {}
        assert req.max_retries == 0
        assert req.idempotency_key is None

    def test_due_immediately_without_schedule(self):
        assert EnqueueRequest("t").resolve_run_at(self.NOW) == self.NOW

    def test_run_in_delays(self):
        req = EnqueueRequest("t", run_in=timedelta(minutes=5))
        assert req.resolve_run_at(self.NOW) == self.NOW + timedelta(minutes=5)

    def test_run_at_wins_over_run_in(self):
        at = self.NOW + timedelta(hours=2)
        req = EnqueueRequest("t", run_at=at, run_in=timedelta(minutes=5))
        assert req.resolve_run_at(self.NOW) == at

    def test_non_positive_run_in_ignored(self):
        req = EnqueueRequest("t", run_in=timedelta(0))
        assert req.resolve_run_at(self.NOW) == self.NOW


def test_schedule_request_defaults():
    req = ScheduleRequest(name="nightly", job_type="report", cron_expr="0 2 * * *")
    assert req.enabled is True
    assert req.queue_name == "default"


def test_red_metrics_to_dict():
    metrics = REDMetrics(total_jobs=4, failed_jobs=1, error_rate=25.0)
    data = metrics.to_dict()
    assert data["total_jobs"] == 4
    assert data["error_rate"] == 25.0
    assert set(data) == {
        "jobs_per_second",
        "error_rate",
        "p50_latency_ms",
        "p95_latency_ms",
        "p99_latency_ms",
        "total_jobs",
        "failed_jobs",
        "average_latency_ms",
    }
