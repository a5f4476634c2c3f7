"""
core/backoff.py — Age-adaptive polling schedule for tracked orders.

Fresh orders are polled aggressively because the user is usually funding
the deposit address right now; older orders back off to save API quota.

    Age < 5 min   → every 15s
    Age < 30 min  → every 60s
    Age < 2 hr    → every 5 min
    Age >= 2 hr   → every 15 min
"""
from __future__ import annotations

from datetime import timedelta

# (exclusive upper age bound, poll interval)
_TIERS: tuple[tuple[timedelta, timedelta], ...] = (
    (timedelta(minutes=5), timedelta(seconds=15)),
    (timedelta(minutes=30), timedelta(seconds=60)),
    (timedelta(hours=2), timedelta(minutes=5)),
)
_STALE_INTERVAL = timedelta(minutes=15)


def interval_for(age: timedelta) -> timedelta:
    """Return the polling interval for an order of the given *age*.

    Negative ages (creation time ahead of the local clock) are treated as
    brand-new orders.
    """
    for upper_bound, interval in _TIERS:
        if age < upper_bound:
            return interval
    return _STALE_INTERVAL
