"""Retry backoff policy."""

from datetime import timedelta

# 2.0 ** 1024 overflows a float; anything past this is far beyond any cap.
_MAX_EXPONENT = 1000


def calculate_backoff(retry_count: int, base: timedelta, cap: timedelta) -> timedelta:
    """Calculate retry backoff: min(base * 2^retry_count, cap).

    Monotonically non-decreasing in ``retry_count`` and never above ``cap``.
    """
    if base <= timedelta(0):
        return timedelta(0)
    exponent = min(max(retry_count, 0), _MAX_EXPONENT)
    seconds = base.total_seconds() * (2.0**exponent)
    if seconds >= cap.total_seconds():
        return cap
    return timedelta(seconds=seconds)
