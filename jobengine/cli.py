#!/usr/bin/env python
"""
CLI for running the job engine and inspecting its store.

Usage:
    python -m jobengine.cli init-db
    python -m jobengine.cli run [--handlers module]
    python -m jobengine.cli enqueue <job_type> [options]
    python -m jobengine.cli schedule <name> <job_type> <cron> [options]
    python -m jobengine.cli status <job_id>
    python -m jobengine.cli list [--status pending] [--scheduled]
    python -m jobengine.cli metrics [--queue default] [--type send_email]

Examples:
    # Create tables in the configured database
    JOBENGINE_DATABASE_URL=postgresql://localhost/jobs python -m jobengine.cli init-db

    # Run workers with handlers from myapp.jobs (must define register(engine))
    python -m jobengine.cli run --handlers myapp.jobs

    # Enqueue a job due in ten minutes
    python -m jobengine.cli enqueue send_email --payload '{"to": "a@b.c"}' --run-in 600

    # Nightly report at 02:30 UTC
    python -m jobengine.cli schedule nightly-report build_report "30 2 * * *"
"""

import argparse
import asyncio
import importlib
import json
import signal
import sys
from datetime import timedelta
from typing import Any, Optional

import structlog

from jobengine.config import EngineConfig, Settings, get_settings
from jobengine.core.logging import configure_logging
from jobengine.core.sentry import init_sentry
from jobengine.jobs.engine import JobEngine
from jobengine.jobs.errors import JobEngineError
from jobengine.jobs.models import EnqueueRequest, Job, ScheduleRequest
from jobengine.repositories.base import JobStore
from jobengine.repositories.factory import create_store_from_settings

logger = structlog.get_logger(__name__)


def _settings(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if getattr(args, "database_url", None):
        settings = settings.model_copy(update={"database_url": args.database_url})
    return settings


def _parse_payload(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")
    return payload


def _job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "queue_name": job.queue_name,
        "job_type": job.job_type,
        "status": job.status.value,
        "priority": job.priority,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "version": job.version,
        "run_at": job.run_at.isoformat(),
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "error": job.error,
        "payload": job.payload,
    }


async def _open_engine(args: argparse.Namespace) -> tuple[JobEngine, JobStore]:
    settings = _settings(args)
    store = await create_store_from_settings(settings)
    return JobEngine(store, EngineConfig.from_settings(settings)), store


async def cmd_init_db(args: argparse.Namespace) -> int:
    """Create tables and indexes."""
    settings = _settings(args)
    store = await create_store_from_settings(settings)
    await store.close()
    print(f"Schema ready: {settings.database_url}")
    return 0


async def cmd_run(args: argparse.Namespace) -> int:
    """Run worker pools and the scheduler until SIGINT/SIGTERM."""
    engine, store = await _open_engine(args)

    if args.handlers:
        for module_name in args.handlers:
            module = importlib.import_module(module_name)
            register = getattr(module, "register", None)
            if register is None:
                logger.error("handlers_module_invalid", module=module_name)
                await store.close()
                return 1
            register(engine)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await engine.start()
        await stop.wait()
        logger.info("shutdown_signal_received")
    finally:
        await engine.stop()
        await store.close()
    return 0


async def cmd_enqueue(args: argparse.Namespace) -> int:
    """Enqueue one job."""
    engine, store = await _open_engine(args)
    try:
        job_id = await engine.enqueue(
            EnqueueRequest(
                job_type=args.job_type,
                payload=_parse_payload(args.payload),
                queue_name=args.queue,
                priority=args.priority,
                max_retries=args.max_retries,
                run_in=timedelta(seconds=args.run_in) if args.run_in else None,
                idempotency_key=args.idempotency_key,
            )
        )
    finally:
        await store.close()
    print(job_id)
    return 0


async def cmd_schedule(args: argparse.Namespace) -> int:
    """Create or replace a recurring job."""
    engine, store = await _open_engine(args)
    try:
        await engine.schedule(
            ScheduleRequest(
                name=args.name,
                job_type=args.job_type,
                cron_expr=args.cron,
                payload=_parse_payload(args.payload),
                queue_name=args.queue,
                enabled=not args.disabled,
            )
        )
        definition = await store.get_scheduled_job(args.name)
    finally:
        await store.close()
    if definition is not None:
        print(f"{definition.name}: next run {definition.next_run_at.isoformat()}")
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show one job."""
    engine, store = await _open_engine(args)
    try:
        job = await engine.get_job(args.job_id)
    finally:
        await store.close()
    if job is None:
        logger.error("job_not_found", job_id=args.job_id)
        return 1
    print(json.dumps(_job_to_dict(job), indent=2))
    return 0


async def cmd_list(args: argparse.Namespace) -> int:
    """List jobs or scheduled job definitions."""
    engine, store = await _open_engine(args)
    try:
        if args.scheduled:
            definitions = await engine.list_scheduled_jobs()
            print(f"{'NAME':<30} {'CRON':<18} {'ENABLED':<8} NEXT RUN")
            for d in definitions:
                print(
                    f"{d.name:<30} {d.cron_expr:<18} {str(d.enabled):<8} "
                    f"{d.next_run_at.isoformat()}"
                )
            return 0

        jobs = await engine.list_jobs(
            status=args.status,
            queue_name=args.queue,
            job_type=args.type,
            limit=args.limit,
        )
    finally:
        await store.close()

    print(f"{'ID':<34} {'QUEUE':<12} {'TYPE':<24} {'STATUS':<10} {'TRIES':<6} RUN AT")
    for job in jobs:
        print(
            f"{job.id:<34} {job.queue_name:<12} {job.job_type:<24} "
            f"{job.status.value:<10} {job.retry_count}/{job.max_retries:<4} "
            f"{job.run_at.isoformat()}"
        )
    return 0


async def cmd_metrics(args: argparse.Namespace) -> int:
    """Print RED metrics for the trailing window."""
    engine, store = await _open_engine(args)
    try:
        red = await engine.get_metrics(args.queue, args.type)
    finally:
        await store.close()
    print(json.dumps(red.to_dict(), indent=2))
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "run": cmd_run,
    "enqueue": cmd_enqueue,
    "schedule": cmd_schedule,
    "status": cmd_status,
    "list": cmd_list,
    "metrics": cmd_metrics,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Persistent job queue and scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--database-url",
        help="Override JOBENGINE_DATABASE_URL",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create tables and indexes")

    run_parser = subparsers.add_parser("run", help="Run workers and the scheduler")
    run_parser.add_argument(
        "--handlers",
        action="append",
        help="Module exposing register(engine); may be repeated",
    )

    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a job")
    enqueue_parser.add_argument("job_type", help="Registered job type")
    enqueue_parser.add_argument("--payload", "-p", help="JSON object payload")
    enqueue_parser.add_argument("--queue", "-q", default="default", help="Queue name")
    enqueue_parser.add_argument(
        "--priority", type=int, default=0, help="Higher runs first (default: 0)"
    )
    enqueue_parser.add_argument(
        "--max-retries",
        type=int,
        default=0,
        help="Retry limit (default: engine setting)",
    )
    enqueue_parser.add_argument(
        "--run-in", type=float, help="Delay in seconds before the job is due"
    )
    enqueue_parser.add_argument(
        "--idempotency-key", "-k", help="Deduplicate enqueues with this key"
    )

    schedule_parser = subparsers.add_parser(
        "schedule", help="Create or replace a recurring job"
    )
    schedule_parser.add_argument("name", help="Unique schedule name")
    schedule_parser.add_argument("job_type", help="Registered job type")
    schedule_parser.add_argument("cron", help='5-field cron expression, e.g. "*/5 * * * *"')
    schedule_parser.add_argument("--payload", "-p", help="JSON object payload")
    schedule_parser.add_argument("--queue", "-q", default="default", help="Queue name")
    schedule_parser.add_argument(
        "--disabled", action="store_true", help="Store the schedule disabled"
    )

    status_parser = subparsers.add_parser("status", help="Show a job")
    status_parser.add_argument("job_id", help="Job ID")

    list_parser = subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument(
        "--status",
        "-s",
        choices=["pending", "running", "completed", "failed", "cancelled"],
        help="Filter by status",
    )
    list_parser.add_argument("--queue", "-q", help="Filter by queue")
    list_parser.add_argument("--type", "-t", help="Filter by job type")
    list_parser.add_argument(
        "--limit", "-l", type=int, default=50, help="Maximum rows (default: 50)"
    )
    list_parser.add_argument(
        "--scheduled", action="store_true", help="List scheduled job definitions"
    )

    metrics_parser = subparsers.add_parser("metrics", help="Show RED metrics")
    metrics_parser.add_argument("--queue", "-q", help="Filter by queue")
    metrics_parser.add_argument("--type", "-t", help="Filter by job type")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = _settings(args)
    configure_logging(settings.log_level, json=args.command == "run" and settings.log_json)
    if args.command == "run":
        init_sentry(settings)

    try:
        return asyncio.run(COMMANDS[args.command](args))
    except (JobEngineError, ValueError) as e:
        logger.error("command_failed", command=args.command, error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
