"""Tests for the job engine facade."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from jobengine.config import EngineConfig
from jobengine.jobs.engine import JobEngine
from jobengine.jobs.errors import (
    CronExpressionError,
    EngineStateError,
    InvalidRequestError,
    PayloadError,
)
from jobengine.jobs.models import EnqueueRequest, ScheduleRequest
from jobengine.jobs.types import JobStatus


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_persists_pending_job(self, engine, store):
        job_id = await engine.enqueue(
            EnqueueRequest("send_email", {"to": "a@b.c"}, priority=7)
        )

        job = await store.get_job(job_id)
        assert len(job_id) == 32
        assert job.status == JobStatus.PENDING
        assert job.queue_name == "default"
        assert job.payload == {"to": "a@b.c"}
        assert job.priority == 7
        assert job.version == 1
        assert job.retry_count == 0
        assert job.queued_at is not None

    @pytest.mark.asyncio
    async def test_none_request_rejected(self, engine):
        with pytest.raises(InvalidRequestError):
            await engine.enqueue(None)

    @pytest.mark.asyncio
    async def test_empty_job_type_rejected(self, engine):
        with pytest.raises(InvalidRequestError):
            await engine.enqueue(EnqueueRequest(""))

    @pytest.mark.asyncio
    async def test_unserializable_payload_rejected(self, engine, store):
        with pytest.raises(PayloadError):
            await engine.enqueue(EnqueueRequest("t", {"when": object()}))
        assert await store.list_jobs() == []

    @pytest.mark.asyncio
    async def test_zero_max_retries_uses_default(self, engine, store):
        job_id = await engine.enqueue(EnqueueRequest("t", max_retries=0))
        job = await store.get_job(job_id)
        assert job.max_retries == engine.config.default_max_retries

    @pytest.mark.asyncio
    async def test_explicit_max_retries_kept(self, engine, store):
        job_id = await engine.enqueue(EnqueueRequest("t", max_retries=9))
        assert (await store.get_job(job_id)).max_retries == 9

    @pytest.mark.asyncio
    async def test_empty_queue_name_defaults(self, engine, store):
        job_id = await engine.enqueue(EnqueueRequest("t", queue_name=""))
        assert (await store.get_job(job_id)).queue_name == "default"

    @pytest.mark.asyncio
    async def test_run_at_and_run_in(self, engine, store):
        at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        job_id = await engine.enqueue(
            EnqueueRequest("t", run_at=at, run_in=timedelta(seconds=5))
        )
        assert (await store.get_job(job_id)).run_at == at

        before = datetime.now(timezone.utc)
        job_id = await engine.enqueue(EnqueueRequest("t", run_in=timedelta(hours=1)))
        run_at = (await store.get_job(job_id)).run_at
        assert before + timedelta(hours=1) <= run_at

    @pytest.mark.asyncio
    async def test_idempotency_key_deduplicates(self, engine, store):
        first = await engine.enqueue(EnqueueRequest("t", idempotency_key="order-42"))
        second = await engine.enqueue(
            EnqueueRequest("t", {"different": True}, idempotency_key="order-42")
        )

        assert first == second
        jobs = await store.list_jobs()
        assert len(jobs) == 1
        assert jobs[0].payload == {}

    @pytest.mark.asyncio
    async def test_concurrent_idempotent_enqueues_create_one_job(self, engine, store):
        ids = await asyncio.gather(
            *(
                engine.enqueue(EnqueueRequest("t", idempotency_key="same"))
                for _ in range(10)
            )
        )
        assert len(set(ids)) == 1
        assert len(await store.list_jobs()) == 1

    @pytest.mark.asyncio
    async def test_without_key_never_deduplicates(self, engine, store):
        await engine.enqueue(EnqueueRequest("t"))
        await engine.enqueue(EnqueueRequest("t"))
        assert len(await store.list_jobs()) == 2


class TestSchedule:
    @pytest.mark.asyncio
    async def test_schedule_sets_next_run(self, engine, store):
        before = datetime.now(timezone.utc)
        await engine.schedule(
            ScheduleRequest("nightly", "report", "30 2 * * *", {"kind": "daily"})
        )

        definition = await store.get_scheduled_job("nightly")
        assert definition.enabled is True
        assert definition.payload == {"kind": "daily"}
        assert definition.next_run_at > before
        assert (definition.next_run_at.hour, definition.next_run_at.minute) == (2, 30)
        assert definition.last_run_at is None

    @pytest.mark.asyncio
    async def test_schedule_upsert_by_name(self, engine, store):
        first_id = await engine.schedule(ScheduleRequest("s", "a", "* * * * *"))
        created = (await store.get_scheduled_job("s")).created_at

        second_id = await engine.schedule(
            ScheduleRequest("s", "b", "0 * * * *", queue_name="reports")
        )

        assert first_id == second_id
        definitions = await engine.list_scheduled_jobs()
        assert len(definitions) == 1
        assert definitions[0].job_type == "b"
        assert definitions[0].cron_expr == "0 * * * *"
        assert definitions[0].queue_name == "reports"
        assert definitions[0].created_at == created

    @pytest.mark.asyncio
    async def test_invalid_cron_rejected(self, engine, store):
        with pytest.raises(CronExpressionError):
            await engine.schedule(ScheduleRequest("bad", "t", "99 * * * *"))
        assert await store.get_scheduled_job("bad") is None

    @pytest.mark.asyncio
    async def test_none_request_rejected(self, engine):
        with pytest.raises(InvalidRequestError):
            await engine.schedule(None)

    @pytest.mark.asyncio
    async def test_set_schedule_enabled(self, engine, store):
        await engine.schedule(ScheduleRequest("s", "t", "* * * * *"))

        assert await engine.set_schedule_enabled("s", False) is True
        assert (await store.get_scheduled_job("s")).enabled is False
        assert await engine.set_schedule_enabled("missing", False) is False


class TestInspection:
    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, engine, store):
        job_id = await engine.enqueue(EnqueueRequest("t"))

        assert await engine.cancel_job(job_id) is True
        job = await engine.get_job(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None
        # Already terminal
        assert await engine.cancel_job(job_id) is False

    @pytest.mark.asyncio
    async def test_cancel_running_job_refused(self, engine, store):
        job_id = await engine.enqueue(EnqueueRequest("t"))
        await store.try_claim(job_id, 1, datetime.now(timezone.utc))
        assert await engine.cancel_job(job_id) is False

    @pytest.mark.asyncio
    async def test_list_jobs_filters(self, engine):
        await engine.enqueue(EnqueueRequest("a"))
        await engine.enqueue(EnqueueRequest("b", queue_name="reports"))
        cancelled = await engine.enqueue(EnqueueRequest("a"))
        await engine.cancel_job(cancelled)

        assert len(await engine.list_jobs()) == 3
        assert len(await engine.list_jobs(job_type="a")) == 2
        assert len(await engine.list_jobs(queue_name="reports")) == 1
        pending = await engine.list_jobs(status=JobStatus.PENDING)
        assert {j.job_type for j in pending} == {"a", "b"}
        assert len(await engine.list_jobs(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_get_missing_job(self, engine):
        assert await engine.get_job("does-not-exist") is None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_twice_raises(self, engine):
        await engine.start()
        try:
            with pytest.raises(EngineStateError):
                await engine.start()
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, engine):
        await engine.stop()
        await engine.start()
        await engine.stop()
        await engine.stop()
        assert engine.running is False

    @pytest.mark.asyncio
    async def test_failed_start_leaves_engine_stopped(self, store, engine_config):
        config = EngineConfig(
            worker_concurrency={"default": 1, "broken": 0},
            default_concurrency=0,
            poll_interval=engine_config.poll_interval,
        )
        engine = JobEngine(store, config)
        job_id = await engine.enqueue(EnqueueRequest("t"))

        with pytest.raises(ValueError):
            await engine.start()

        assert engine.running is False
        assert engine.pools == {}
        await asyncio.sleep(0.1)
        # The default pool was stopped before it could claim anything
        assert (await store.get_job(job_id)).status == JobStatus.PENDING
        await engine.stop()

    @pytest.mark.asyncio
    async def test_one_pool_per_configured_queue(self, store, engine_config):
        config = EngineConfig(
            worker_concurrency={"default": 2, "reports": 1},
            poll_interval=engine_config.poll_interval,
        )
        engine = JobEngine(store, config)
        async with engine:
            pools = engine.pools
            assert set(pools) == {"default", "reports"}
            assert pools["reports"].concurrency == 1
        assert engine.pools == {}

    @pytest.mark.asyncio
    async def test_end_to_end(self, engine, store, wait_for):
        results = []

        @engine.handler("add")
        async def add(job, ctx):
            assert ctx["engine"] is engine
            results.append(job.payload["a"] + job.payload["b"])

        async with engine:
            job_id = await engine.enqueue(EnqueueRequest("add", {"a": 2, "b": 3}))
            await wait_for(store, job_id, JobStatus.COMPLETED)

        assert results == [5]
        metrics = await engine.get_metrics()
        assert metrics.total_jobs == 1
        assert metrics.failed_jobs == 0
        assert (await engine.get_metrics(job_type="other")).total_jobs == 0

    @pytest.mark.asyncio
    async def test_register_while_running(self, engine, store, wait_for):
        async with engine:
            @engine.handler("late")
            async def late(job, ctx):
                pass

            job_id = await engine.enqueue(EnqueueRequest("late"))
            await wait_for(store, job_id, JobStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_scheduler_loop_enqueues_due_jobs(self, store, wait_for):
        config = EngineConfig(
            worker_concurrency={"default": 1},
            poll_interval=timedelta(milliseconds=20),
            scheduler_interval=timedelta(milliseconds=20),
        )
        engine = JobEngine(store, config)
        ran = asyncio.Event()

        @engine.handler("heartbeat")
        async def heartbeat(job, ctx):
            ran.set()

        await store.upsert_scheduled_job(
            name="hb",
            queue_name="default",
            job_type="heartbeat",
            payload="{}",
            cron_expr="* * * * *",
            enabled=True,
            next_run_at=datetime.now(timezone.utc) - timedelta(minutes=1),
            now=datetime.now(timezone.utc),
        )

        async with engine:
            await asyncio.wait_for(ran.wait(), timeout=5)

        definition = await store.get_scheduled_job("hb")
        assert definition.last_run_at is not None
