"""
Timezone utilities for converting between UTC and local times.

All database timestamps are stored as naive UTC. These utilities help
convert to/from a display timezone for "your turn around HH:MM" messages.
"""

from datetime import datetime

import pytz

UTC_TZ = pytz.UTC


def utc_now() -> datetime:
    """Get current time in UTC (timezone-aware)."""
    return datetime.now(UTC_TZ)


def utc_now_naive() -> datetime:
    """Current UTC time without tzinfo (for database storage)."""
    return utc_now().replace(tzinfo=None)


def from_utc(utc_dt: datetime, timezone: str = "UTC") -> datetime:
    """
    Convert a UTC datetime to local timezone.

    Args:
        utc_dt: Datetime in UTC (can be naive or aware)
        timezone: Target timezone name

    Returns:
        Timezone-aware datetime in local timezone
    """
    tz = pytz.timezone(timezone)

    if utc_dt.tzinfo is None:
        # Naive datetime - assume it's UTC
        utc_dt = UTC_TZ.localize(utc_dt)

    return utc_dt.astimezone(tz)


def format_local_time(
    utc_dt: datetime,
    timezone: str = "UTC",
    fmt: str = "%H:%M",
) -> str:
    """Format a UTC datetime as a local time string."""
    local_dt = from_utc(utc_dt, timezone)
    return local_dt.strftime(fmt)
