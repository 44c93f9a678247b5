"""Tests for job system types."""

from jobengine.jobs.types import DEFAULT_QUEUE, JobStatus


class TestJobStatus:
    def test_job_statuses_exist(self):
        assert JobStatus.PENDING == "pending"
        assert JobStatus.RUNNING == "running"
        assert JobStatus.COMPLETED == "completed"
        assert JobStatus.FAILED == "failed"
        assert JobStatus.CANCELLED == "cancelled"

    def test_terminal_statuses(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert JobStatus.CANCELLED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.RUNNING.is_terminal

    def test_status_from_stored_value(self):
        assert JobStatus("running") is JobStatus.RUNNING


def test_default_queue_name():
    assert DEFAULT_QUEUE == "default"
