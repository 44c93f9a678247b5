"""Configuration management using Pydantic Settings."""

from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="JOBENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store
    database_url: str = Field(
        default="sqlite:///jobengine.db",
        description="postgresql://... DSN or sqlite:///path (sqlite://:memory: for tests)",
    )
    db_pool_min_size: int = Field(default=2, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, description="Maximum connection pool size")
    sqlite_busy_timeout_s: float = Field(
        default=5.0, description="How long SQLite waits on a locked database"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(
        default=True, description="Render logs as JSON (console renderer otherwise)"
    )

    # Workers
    worker_concurrency: dict[str, int] = Field(
        default_factory=lambda: {"default": 5},
        description='Workers per queue, e.g. {"default": 5, "reports": 2}',
    )
    default_concurrency: int = Field(
        default=5, ge=1, description="Concurrency for queues listed without a value"
    )
    poll_interval_s: float = Field(default=5.0, gt=0, description="Poller interval")
    shutdown_timeout_s: float = Field(
        default=30.0, ge=0, description="Grace period for in-flight handlers on stop"
    )

    # Retries
    default_max_retries: int = Field(default=3, ge=0)
    retry_backoff_base_s: float = Field(default=1.0, ge=0)
    retry_backoff_max_s: float = Field(default=300.0, ge=0)

    # Scheduler
    scheduler_enabled: bool = Field(default=True)
    scheduler_interval_s: float = Field(default=60.0, gt=0)
    scheduler_batch_size: int = Field(
        default=100, ge=1, description="Max scheduled jobs fired per tick"
    )

    # Metrics
    metrics_window_s: float = Field(
        default=3600.0, gt=0, description="Trailing window for RED metrics"
    )
    metrics_retention_s: float = Field(
        default=86400.0, gt=0, description="Metric rows older than this are pruned"
    )
    metrics_cleanup_interval_s: float = Field(default=3600.0, gt=0)

    # Stale running jobs (left behind by a crashed worker)
    stale_job_timeout_s: Optional[float] = Field(
        default=None,
        gt=0,
        description="Requeue running jobs started longer ago than this; unset disables",
    )
    stale_job_check_interval_s: float = Field(default=60.0, gt=0)

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None, description="Sentry DSN for error tracking"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)",
    )


@dataclass(frozen=True)
class EngineConfig:
    """Runtime options consumed by the job engine."""

    worker_concurrency: dict[str, int] = field(default_factory=lambda: {"default": 5})
    default_concurrency: int = 5
    poll_interval: timedelta = timedelta(seconds=5)
    shutdown_timeout: timedelta = timedelta(seconds=30)

    default_max_retries: int = 3
    retry_backoff_base: timedelta = timedelta(seconds=1)
    retry_backoff_max: timedelta = timedelta(minutes=5)

    scheduler_enabled: bool = True
    scheduler_interval: timedelta = timedelta(minutes=1)
    scheduler_batch_size: int = 100

    metrics_window: timedelta = timedelta(hours=1)
    metrics_retention: timedelta = timedelta(hours=24)
    metrics_cleanup_interval: timedelta = timedelta(hours=1)

    stale_job_timeout: Optional[timedelta] = None
    stale_job_check_interval: timedelta = timedelta(minutes=1)

    def concurrency_for(self, queue_name: str) -> int:
        value = self.worker_concurrency.get(queue_name)
        return value if value and value > 0 else self.default_concurrency

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        stale = settings.stale_job_timeout_s
        return cls(
            worker_concurrency=dict(settings.worker_concurrency),
            default_concurrency=settings.default_concurrency,
            poll_interval=timedelta(seconds=settings.poll_interval_s),
            shutdown_timeout=timedelta(seconds=settings.shutdown_timeout_s),
            default_max_retries=settings.default_max_retries,
            retry_backoff_base=timedelta(seconds=settings.retry_backoff_base_s),
            retry_backoff_max=timedelta(seconds=settings.retry_backoff_max_s),
            scheduler_enabled=settings.scheduler_enabled,
            scheduler_interval=timedelta(seconds=settings.scheduler_interval_s),
            scheduler_batch_size=settings.scheduler_batch_size,
            metrics_window=timedelta(seconds=settings.metrics_window_s),
            metrics_retention=timedelta(seconds=settings.metrics_retention_s),
            metrics_cleanup_interval=timedelta(
                seconds=settings.metrics_cleanup_interval_s
            ),
            stale_job_timeout=timedelta(seconds=stale) if stale else None,
            stale_job_check_interval=timedelta(
                seconds=settings.stale_job_check_interval_s
            ),
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
