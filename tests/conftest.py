"""Root conftest for test suite.

Auto-skips tests that need a live PostgreSQL unless one is configured.
Run them with: JOBENGINE_TEST_DATABASE_URL=postgresql://... pytest -m requires_db
"""

import asyncio
import os
from datetime import timedelta

import pytest
import pytest_asyncio

from jobengine.config import EngineConfig
from jobengine.jobs.engine import JobEngine
from jobengine.jobs.models import Job
from jobengine.jobs.types import JobStatus
from jobengine.repositories.sqlite import SQLiteJobStore


def pytest_collection_modifyitems(config, items):
    """Skip PostgreSQL tests when no test database is configured."""
    if os.environ.get("JOBENGINE_TEST_DATABASE_URL"):
        return

    skip_db = pytest.mark.skip(
        reason="requires_db tests need JOBENGINE_TEST_DATABASE_URL"
    )
    for item in items:
        if "requires_db" in item.keywords:
            item.add_marker(skip_db)


@pytest.fixture
def engine_config():
    """Engine config tuned for fast tests: no backoff, short polls."""
    return EngineConfig(
        worker_concurrency={"default": 2},
        poll_interval=timedelta(milliseconds=20),
        shutdown_timeout=timedelta(seconds=2),
        retry_backoff_base=timedelta(0),
        retry_backoff_max=timedelta(0),
        scheduler_interval=timedelta(hours=1),
        metrics_cleanup_interval=timedelta(hours=1),
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    """SQLite store on a temp file, schema created."""
    store = SQLiteJobStore(str(tmp_path / "jobs.db"))
    await store.init_schema()
    yield store
    await store.close()


@pytest.fixture
def engine(store, engine_config):
    """Engine over the temp store; not started."""
    return JobEngine(store, engine_config, worker_id="test-host:1")


async def wait_for_status(
    store, job_id: str, status: JobStatus, timeout: float = 5.0
) -> Job:
    """Poll the store until a job reaches ``status``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        job = await store.get_job(job_id)
        if job is not None and job.status == status:
            return job
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(
                f"job {job_id} did not reach {status.value}: "
                f"{job.status.value if job else 'missing'}"
            )
        await asyncio.sleep(0.02)


@pytest.fixture
def wait_for():
    return wait_for_status
