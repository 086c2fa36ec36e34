"""Reporting-period and calendar helpers.

The reporting week runs from Friday 17:00 to the following Friday 17:00 in
the scheduler timezone. A week's snapshot id is derived from the local date
of its end boundary, so the same week always maps to the same id no matter
when during the week it is computed.
"""

import calendar
import re
import secrets
import string
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from ticketpulse.config import settings

SNAPSHOT_ID_PATTERN = re.compile(r"^snapshot_(\d{4})(\d{2})(\d{2})$")

_BASE36 = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo), convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping the day to the target month's length."""
    index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_start(value: datetime) -> datetime:
    """Midnight on the first day of the month containing ``value``."""
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def week_boundaries(
    now: Optional[datetime] = None,
    tz_name: Optional[str] = None,
) -> tuple[datetime, datetime]:
    """Return (week_start, week_end) in UTC for the week containing ``now``.

    week_start is the most recent week-end boundary at or before ``now``;
    week_end is seven days later.
    """
    tz = ZoneInfo(tz_name or settings.scheduler_timezone)
    local_now = as_utc(now or utcnow()).astimezone(tz)

    boundary = local_now.replace(
        hour=settings.week_end_hour, minute=0, second=0, microsecond=0
    )
    days_back = (local_now.weekday() - settings.week_end_weekday) % 7
    boundary -= timedelta(days=days_back)
    if boundary > local_now:
        boundary -= timedelta(days=7)

    # Aware arithmetic is wall-clock, so the boundary stays at 17:00 local
    week_end = boundary + timedelta(days=7)
    return boundary.astimezone(timezone.utc), week_end.astimezone(timezone.utc)


def snapshot_id_for(week_end: datetime, tz_name: Optional[str] = None) -> str:
    tz = ZoneInfo(tz_name or settings.scheduler_timezone)
    local = as_utc(week_end).astimezone(tz)
    return f"snapshot_{local.year:04d}{local.month:02d}{local.day:02d}"


def parse_snapshot_id(snapshot_id: str) -> Optional[date]:
    """Inverse of snapshot_id_for. Returns None for malformed ids."""
    match = SNAPSHOT_ID_PATTERN.match(snapshot_id)
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def generate_job_id(now: Optional[datetime] = None) -> str:
    """Unique job id: ``job_<epoch ms>_<7 random base36 chars>``."""
    millis = int(as_utc(now or utcnow()).timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"job_{millis}_{suffix}"
