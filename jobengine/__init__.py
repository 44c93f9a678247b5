"""jobengine - persistent job queue and cron scheduler

Jobs are stored in PostgreSQL or SQLite, claimed with an optimistic version
check and executed by per-queue asyncio worker pools.
"""

__version__ = "0.1.0"
