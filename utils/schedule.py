"""
Wall-clock window checks shared by campaign send windows and flow
activation schedules. All checks run in the caller's local time zone.
"""
from __future__ import annotations

from datetime import datetime, time
from typing import Iterable, Optional
from zoneinfo import ZoneInfo


def time_in_window(t: time, start: Optional[time], end: Optional[time], closed_end: bool = True) -> bool:
    start = start or time.min
    end = end or time.max
    if start <= end:
        return start <= t <= end if closed_end else start <= t < end
    # Overnight window, e.g. 22:00 → 06:00
    return t >= start or (t <= end if closed_end else t < end)


def within_business_hours(
    now: datetime,
    start: Optional[time],
    end: Optional[time],
    days: Iterable[int],
    tz_name: str = "UTC",
) -> bool:
    """
    True when `now` falls on a business day between start (inclusive) and
    end (exclusive) in `tz_name`. Days count 0=Sunday .. 6=Saturday.
    """
    local = now.astimezone(ZoneInfo(tz_name or "UTC"))
    if (local.isoweekday() % 7) not in set(days):
        return False
    return time_in_window(local.time(), start, end, closed_end=False)
