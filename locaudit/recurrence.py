"""Next-firing computation for daily, weekly and monthly schedules.

All arithmetic happens on the local wall clock of the requested timezone:
"every Monday at 09:00" fires at 09:00 local time on both sides of a DST
change. Weekdays are numbered 0=Sunday .. 6=Saturday.

Monthly schedules clamp ``day_of_month`` to the length of the target month,
so a schedule for the 31st fires on April 30 and February 28/29.
"""
from __future__ import annotations

import calendar
import re
from datetime import UTC, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo

from tzlocal import get_localzone

FREQUENCIES = ("daily", "weekly", "monthly")

DEFAULT_DAY_OF_WEEK = 1  # Monday
DEFAULT_DAY_OF_MONTH = 1

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse ``HH:MM`` (24h) into ``(hour, minute)``. Raises ValueError."""
    m = _TIME_RE.match((value or "").strip())
    if not m:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Time of day out of range: {value!r}")
    return hour, minute


def validate_recurrence(
    frequency: str, day_of_week: int | None, day_of_month: int | None, time_of_day: str,
) -> None:
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unknown frequency {frequency!r}, expected one of {', '.join(FREQUENCIES)}")
    parse_time_of_day(time_of_day)
    if day_of_week is not None and not 0 <= day_of_week <= 6:
        raise ValueError(f"day_of_week must be 0-6, got {day_of_week}")
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise ValueError(f"day_of_month must be 1-31, got {day_of_month}")


def resolve_timezone(name: str | None) -> tzinfo:
    """Return the named IANA zone, or the host's DST-aware zone for an empty name."""
    if name:
        return ZoneInfo(name)
    return get_localzone()


def _sunday_weekday(dt: datetime) -> int:
    return (dt.weekday() + 1) % 7


def _clamped_day(year: int, month: int, day: int) -> int:
    return min(day, calendar.monthrange(year, month)[1])


def compute_next_run(
    frequency: str,
    day_of_week: int | None,
    day_of_month: int | None,
    time_of_day: str,
    from_: datetime | None = None,
    tz: tzinfo | None = None,
) -> datetime:
    """Return the first firing instant strictly after *from_*.

    Args:
        frequency: ``daily``, ``weekly`` or ``monthly``.
        day_of_week: Target weekday for weekly schedules (0=Sunday, default Monday).
        day_of_month: Target day for monthly schedules (1-31, default 1).
        time_of_day: ``HH:MM`` in 24h local time.
        from_: Reference instant; defaults to now. A naive value is read as a
            wall-clock time in *tz* (or the host zone when *tz* is None).
        tz: Timezone whose wall clock the schedule follows. For an aware
            *from_* without *tz*, the reference's own zone is used.

    The result has the same awareness as *from_* and no sub-second part.
    """
    validate_recurrence(frequency, day_of_week, day_of_month, time_of_day)
    hour, minute = parse_time_of_day(time_of_day)

    if from_ is None:
        from_ = datetime.now(tz) if tz is not None else datetime.now()
    elif tz is not None:
        from_ = from_.astimezone(tz) if from_.tzinfo else from_.replace(tzinfo=tz)

    candidate = from_.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if frequency == "daily":
        if candidate <= from_:
            candidate += timedelta(days=1)
    elif frequency == "weekly":
        target = DEFAULT_DAY_OF_WEEK if day_of_week is None else day_of_week
        days_until = (target - _sunday_weekday(from_) + 7) % 7
        if days_until == 0 and candidate <= from_:
            days_until = 7
        candidate += timedelta(days=days_until)
    else:
        target = DEFAULT_DAY_OF_MONTH if day_of_month is None else day_of_month
        candidate = candidate.replace(day=_clamped_day(candidate.year, candidate.month, target))
        if candidate <= from_:
            year, month = (candidate.year + 1, 1) if candidate.month == 12 else (candidate.year, candidate.month + 1)
            candidate = candidate.replace(year=year, month=month, day=_clamped_day(year, month, target))

    return candidate


def next_run_utc(
    frequency: str,
    day_of_week: int | None,
    day_of_month: int | None,
    time_of_day: str,
    after: datetime,
    tz: tzinfo,
) -> datetime:
    """Like :func:`compute_next_run` but in and out as naive UTC (storage form)."""
    local = after.replace(tzinfo=UTC).astimezone(tz)
    nxt = compute_next_run(frequency, day_of_week, day_of_month, time_of_day, local, tz)
    return nxt.astimezone(UTC).replace(tzinfo=None)
