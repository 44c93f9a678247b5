"""Construct a job store from a database URL."""

from typing import Optional

import asyncpg
import structlog

from jobengine.config import Settings
from jobengine.repositories.base import JobStore
from jobengine.repositories.postgres import PostgresJobStore
from jobengine.repositories.sqlite import MEMORY, SQLiteJobStore

logger = structlog.get_logger(__name__)

_SQLITE_PREFIXES = ("sqlite:///", "sqlite://")


def sqlite_path(database_url: str) -> Optional[str]:
    """Return the file path for a sqlite URL, or None for other schemes."""
    for prefix in _SQLITE_PREFIXES:
        if database_url.startswith(prefix):
            path = database_url[len(prefix):]
            return path if path and path != MEMORY else MEMORY
    return None


async def create_store(
    database_url: str,
    *,
    pool_min_size: int = 2,
    pool_max_size: int = 10,
    busy_timeout: float = 5.0,
    init_schema: bool = True,
) -> JobStore:
    """Open a store for ``database_url`` and optionally create its schema.

    ``sqlite:///path/to/file.db`` and ``sqlite://:memory:`` select the SQLite
    backend; anything else is treated as a PostgreSQL DSN.
    """
    path = sqlite_path(database_url)
    store: JobStore
    if path is not None:
        store = SQLiteJobStore(path, busy_timeout=busy_timeout)
        logger.info("job_store_opened", backend="sqlite", path=path)
    else:
        pool = await asyncpg.create_pool(
            database_url, min_size=pool_min_size, max_size=pool_max_size
        )
        store = PostgresJobStore(pool)
        logger.info(
            "job_store_opened",
            backend="postgres",
            pool_min_size=pool_min_size,
            pool_max_size=pool_max_size,
        )

    if init_schema:
        await store.init_schema()
    return store


async def create_store_from_settings(
    settings: Settings, init_schema: bool = True
) -> JobStore:
    return await create_store(
        settings.database_url,
        pool_min_size=settings.db_pool_min_size,
        pool_max_size=settings.db_pool_max_size,
        busy_timeout=settings.sqlite_busy_timeout_s,
        init_schema=init_schema,
    )
