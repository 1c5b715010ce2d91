"""Next-run arithmetic for daily, weekly and monthly schedules (all UTC)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple


SCHEDULE_TYPES = ("daily", "weekly", "monthly")
DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
MAX_MONTH_DAY = 28  # every month has one


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _add_month(value: datetime) -> datetime:
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1)
    return value.replace(month=value.month + 1)


def calculate_next_run(
    schedule: str,
    hour: int,
    day: Optional[int] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """Next run strictly after `now` (naive UTC).

    weekly: `day` is the weekday, Monday=0 (default Monday).
    monthly: `day` is the day of month, capped at 28 (default 1).
    Unknown schedule types behave like daily.
    """
    now = now or utcnow()
    candidate = now.replace(hour=int(hour), minute=0, second=0, microsecond=0)

    if schedule == "weekly":
        target = int(day if day is not None else 0)
        while candidate.weekday() != target or candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    if schedule == "monthly":
        candidate = candidate.replace(day=min(int(day if day is not None else 1), MAX_MONTH_DAY))
        if candidate <= now:
            candidate = _add_month(candidate)
        return candidate

    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_schedule(schedule: Any, hour: Any, day: Any = None) -> Tuple[bool, Optional[str]]:
    if schedule not in SCHEDULE_TYPES:
        return False, "Schedule must be 'daily', 'weekly', or 'monthly'"
    if not _is_int(hour) or not 0 <= hour <= 23:
        return False, "Hour must be 0-23 (UTC)"
    if schedule == "weekly" and day is not None and (not _is_int(day) or not 0 <= day <= 6):
        return False, "Day of week must be 0-6 (Mon=0, Sun=6)"
    if schedule == "monthly" and day is not None and (not _is_int(day) or not 1 <= day <= MAX_MONTH_DAY):
        return False, "Day of month must be 1-28"
    return True, None


def describe_schedule(schedule: str, hour: int, day: Optional[int] = None) -> str:
    at = f"{int(hour):02d}:00 UTC"
    if schedule == "daily":
        return f"Daily at {at}"
    if schedule == "weekly":
        return f"Every {DAY_NAMES[int(day or 0) % 7]} at {at}"
    if schedule == "monthly":
        return f"Monthly on day {int(day or 1)} at {at}"
    return str(schedule)
