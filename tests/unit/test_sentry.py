"""Tests for Sentry initialization."""

from unittest.mock import patch

from jobengine.config import Settings
from jobengine.core.sentry import init_sentry


def test_no_dsn_skips_init():
    settings = Settings(_env_file=None, sentry_dsn=None)
    with patch("jobengine.core.sentry.sentry_sdk.init") as init:
        assert init_sentry(settings) is False
    init.assert_not_called()


def test_dsn_initializes_with_environment():
    settings = Settings(
        _env_file=None,
        sentry_dsn="https://public@example.ingest.sentry.io/1",
        sentry_environment="staging",
    )
    with patch("jobengine.core.sentry.sentry_sdk.init") as init, patch(
        "jobengine.core.sentry.sentry_sdk.set_tag"
    ) as set_tag:
        assert init_sentry(settings) is True

    kwargs = init.call_args.kwargs
    assert kwargs["environment"] == "staging"
    assert kwargs["send_default_pii"] is False
    set_tag.assert_any_call("service", "jobengine")
