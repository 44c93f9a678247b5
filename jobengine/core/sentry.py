"""Sentry initialization and configuration."""

import os

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from jobengine import __version__
from jobengine.config import Settings

logger = structlog.get_logger(__name__)


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry if DSN is configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        return False

    # Only send ERROR-level logs as Sentry events; job failures log at ERROR
    sentry_logging = LoggingIntegration(
        level=None,  # Keep normal log levels
        event_level="ERROR",
    )

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"jobengine@{__version__}"),
        integrations=[sentry_logging, AsyncioIntegration()],
        send_default_pii=False,
        attach_stacktrace=True,
    )

    sentry_sdk.set_tag("service", "jobengine")
    sentry_sdk.set_tag("queues", ",".join(sorted(settings.worker_concurrency)))

    logger.info("sentry_initialized", environment=settings.sentry_environment)
    return True
