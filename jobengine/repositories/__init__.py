"""Job store backends."""

from jobengine.repositories.base import JobStore
from jobengine.repositories.factory import create_store, create_store_from_settings
from jobengine.repositories.postgres import PostgresJobStore
from jobengine.repositories.sqlite import SQLiteJobStore

__all__ = [
    "JobStore",
    "PostgresJobStore",
    "SQLiteJobStore",
    "create_store",
    "create_store_from_settings",
]
