"""Unit tests for jobengine.config module."""

import os
from datetime import timedelta
from unittest.mock import patch

from jobengine.config import EngineConfig, Settings, get_settings


def test_settings_defaults():
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    assert settings.database_url == "sqlite:///jobengine.db"
    assert settings.worker_concurrency == {"default": 5}
    assert settings.poll_interval_s == 5.0
    assert settings.default_max_retries == 3
    assert settings.retry_backoff_base_s == 1.0
    assert settings.retry_backoff_max_s == 300.0
    assert settings.scheduler_interval_s == 60.0
    assert settings.scheduler_batch_size == 100
    assert settings.metrics_window_s == 3600.0
    assert settings.metrics_retention_s == 86400.0
    assert settings.stale_job_timeout_s is None


def test_settings_from_env():
    env = {
        "JOBENGINE_DATABASE_URL": "postgresql://localhost/jobs",
        "JOBENGINE_WORKER_CONCURRENCY": '{"default": 5, "task_generation": 3}',
        "JOBENGINE_STALE_JOB_TIMEOUT_S": "600",
        "JOBENGINE_SCHEDULER_ENABLED": "false",
    }
    with patch.dict(os.environ, env, clear=True):
        get_settings.cache_clear()
        settings = get_settings()
    get_settings.cache_clear()

    assert settings.database_url == "postgresql://localhost/jobs"
    assert settings.worker_concurrency == {"default": 5, "task_generation": 3}
    assert settings.stale_job_timeout_s == 600.0
    assert settings.scheduler_enabled is False


def test_engine_config_from_settings():
    settings = Settings(
        _env_file=None,
        worker_concurrency={"default": 4, "reports": 0},
        poll_interval_s=0.5,
        retry_backoff_max_s=60,
        stale_job_timeout_s=120,
    )
    config = EngineConfig.from_settings(settings)

    assert config.poll_interval == timedelta(milliseconds=500)
    assert config.retry_backoff_max == timedelta(minutes=1)
    assert config.stale_job_timeout == timedelta(minutes=2)
    assert config.concurrency_for("default") == 4
    # Zero or missing falls back to the default concurrency
    assert config.concurrency_for("reports") == 5
    assert config.concurrency_for("unknown") == 5


def test_engine_config_defaults():
    config = EngineConfig()
    assert config.worker_concurrency == {"default": 5}
    assert config.poll_interval == timedelta(seconds=5)
    assert config.retry_backoff_base == timedelta(seconds=1)
    assert config.retry_backoff_max == timedelta(minutes=5)
    assert config.scheduler_interval == timedelta(minutes=1)
    assert config.metrics_window == timedelta(hours=1)
    assert config.metrics_retention == timedelta(hours=24)
    assert config.stale_job_timeout is None
