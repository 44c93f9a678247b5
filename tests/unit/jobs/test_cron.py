"""Tests for cron expression evaluation."""

from datetime import datetime, timezone

import pytest

from jobengine.jobs.cron import next_cron_occurrence, validate_cron_expression
from jobengine.jobs.errors import CronExpressionError


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestNextCronOccurrence:
    def test_every_minute_is_next_minute(self):
        after = utc(2026, 3, 10, 12, 0, 30)
        assert next_cron_occurrence("* * * * *", after) == utc(2026, 3, 10, 12, 1)

    def test_strictly_after_exact_match(self):
        after = utc(2026, 3, 10, 12, 0)
        assert next_cron_occurrence("* * * * *", after) == utc(2026, 3, 10, 12, 1)

    def test_step_minutes(self):
        after = utc(2026, 3, 10, 12, 7)
        assert next_cron_occurrence("*/15 * * * *", after) == utc(2026, 3, 10, 12, 15)

    def test_daily_at_time(self):
        after = utc(2026, 3, 10, 3, 0)
        assert next_cron_occurrence("30 2 * * *", after) == utc(2026, 3, 11, 2, 30)

    def test_day_of_week_uses_cron_numbering(self):
        # 2026-03-10 is a Tuesday; 1 = Monday
        after = utc(2026, 3, 10, 12, 0)
        assert next_cron_occurrence("0 9 * * 1", after) == utc(2026, 3, 16, 9, 0)

    def test_sunday_as_zero_and_seven(self):
        after = utc(2026, 3, 10, 12, 0)
        sunday = utc(2026, 3, 15, 0, 0)
        assert next_cron_occurrence("0 0 * * 0", after) == sunday
        assert next_cron_occurrence("0 0 * * 7", after) == sunday

    def test_weekday_names(self):
        after = utc(2026, 3, 10, 12, 0)
        assert next_cron_occurrence("0 9 * * fri", after) == utc(2026, 3, 13, 9, 0)

    def test_weekday_range(self):
        # Saturday evening -> Monday morning for a Mon-Fri schedule
        after = utc(2026, 3, 14, 18, 0)
        assert next_cron_occurrence("0 8 * * 1-5", after) == utc(2026, 3, 16, 8, 0)

    def test_day_of_month_or_day_of_week(self):
        # Both restricted: the 20th OR any Monday, whichever comes first
        after = utc(2026, 3, 10, 12, 0)
        assert next_cron_occurrence("0 0 20 * 1", after) == utc(2026, 3, 16, 0, 0)
        after = utc(2026, 3, 17, 12, 0)
        assert next_cron_occurrence("0 0 20 * 1", after) == utc(2026, 3, 20, 0, 0)

    def test_month_field(self):
        after = utc(2026, 3, 10, 12, 0)
        assert next_cron_occurrence("0 0 1 1 *", after) == utc(2027, 1, 1, 0, 0)

    def test_naive_datetime_taken_as_utc(self):
        after = datetime(2026, 3, 10, 12, 0, 30)
        result = next_cron_occurrence("* * * * *", after)
        assert result == utc(2026, 3, 10, 12, 1)
        assert result.tzinfo is not None

    def test_extra_whitespace_tolerated(self):
        after = utc(2026, 3, 10, 12, 0, 30)
        assert next_cron_occurrence("  *  * * *   * ", after) == utc(2026, 3, 10, 12, 1)


class TestInvalidExpressions:
    @pytest.mark.parametrize(
        "expr",
        [
            "",
            "* * * *",
            "* * * * * *",
            "61 * * * *",
            "* 25 * * *",
            "* * * * 8",
            "* * * * funday",
            "not a cron",
        ],
    )
    def test_rejected(self, expr):
        with pytest.raises(CronExpressionError):
            validate_cron_expression(expr)

    def test_error_carries_expression(self):
        with pytest.raises(CronExpressionError) as exc_info:
            next_cron_occurrence("* * *", utc(2026, 1, 1))
        assert exc_info.value.expression == "* * *"
        assert "invalid cron expression" in str(exc_info.value)

    def test_is_value_error(self):
        with pytest.raises(ValueError):
            validate_cron_expression("bogus")
