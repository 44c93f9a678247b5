"""Cron expression evaluation for recurring jobs.

Expressions use the standard 5-field Unix syntax (minute, hour, day-of-month,
month, day-of-week), evaluated in UTC. Day-of-week follows cron numbering
(0 or 7 = Sunday) and, as in Vixie cron, when both day-of-month and
day-of-week are restricted a time matches if either field matches.
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from jobengine.jobs.errors import CronExpressionError

_WEEKDAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _weekday_value(token: str) -> int:
    token = token.strip().lower()
    if token in _WEEKDAY_NAMES:
        return _WEEKDAY_NAMES.index(token)
    if not token.isdigit():
        raise ValueError(f"invalid day-of-week value: {token!r}")
    value = int(token)
    if value > 7:
        raise ValueError(f"day-of-week value {value} out of range [0-7]")
    return value


def _expand_day_of_week(field: str) -> list[int]:
    """Expand a cron day-of-week field into Sunday-based day numbers."""
    days: set[int] = set()
    for part in field.split(","):
        if not part:
            raise ValueError(f"empty list element in day-of-week field {field!r}")
        base, _, step_str = part.partition("/")
        step = 1
        if step_str:
            if not step_str.isdigit() or int(step_str) == 0:
                raise ValueError(f"invalid step in day-of-week field: {part!r}")
            step = int(step_str)

        if base in ("*", "?"):
            start, end = 0, 6
        elif "-" in base:
            lo, _, hi = base.partition("-")
            start, end = _weekday_value(lo), _weekday_value(hi)
            if start > end:
                raise ValueError(f"range start must be <= end: {base!r}")
        else:
            start = _weekday_value(base)
            end = 6 if step_str else start

        days.update(value % 7 for value in range(start, end + 1, step))
    return sorted(days)


def _is_restricted(field: str) -> bool:
    return not field.startswith(("*", "?"))


@lru_cache(maxsize=256)
def _build_trigger(expression: str) -> BaseTrigger:
    fields = expression.split()
    if len(fields) != 5:
        raise CronExpressionError(
            expression,
            f"must have 5 fields (minute hour day month weekday), got {len(fields)}",
        )
    minute, hour, day, month, day_of_week = fields

    try:
        weekdays = ",".join(_WEEKDAY_NAMES[d] for d in _expand_day_of_week(day_of_week))
        common = dict(minute=minute, hour=hour, month=month, timezone=timezone.utc)

        if _is_restricted(day) and _is_restricted(day_of_week):
            return OrTrigger(
                [
                    CronTrigger(day=day, day_of_week="*", **common),
                    CronTrigger(day="*", day_of_week=weekdays, **common),
                ]
            )

        return CronTrigger(day=day.replace("?", "*"), day_of_week=weekdays, **common)
    except ValueError as e:
        raise CronExpressionError(expression, str(e)) from e


def validate_cron_expression(expression: str) -> None:
    """Raise CronExpressionError if the expression cannot be parsed."""
    _build_trigger(" ".join(expression.split()))


def next_cron_occurrence(expression: str, after: datetime) -> datetime:
    """Return the first time matching ``expression`` strictly after ``after``.

    Raises:
        CronExpressionError: If the expression is invalid or never fires.
    """
    trigger = _build_trigger(" ".join(expression.split()))
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    # The trigger rounds up to whole seconds and may return ``after`` itself.
    next_time = trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
    if next_time is None:
        raise CronExpressionError(expression, "expression never fires")
    return next_time.astimezone(timezone.utc)
