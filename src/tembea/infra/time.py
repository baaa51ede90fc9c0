"""Time utilities for consistent timestamp handling.

Visit dates are calendar dates in the marketplace's local timezone
(TEMBEA_TIMEZONE, default Africa/Nairobi); timestamps are always UTC.
"""

import os
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Africa/Nairobi"


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def local_tz() -> ZoneInfo:
    return ZoneInfo(os.environ.get("TEMBEA_TIMEZONE", DEFAULT_TIMEZONE))


def local_today() -> date:
    """Return today's date in the marketplace timezone."""
    return datetime.now(local_tz()).date()


def start_of_day(day: date) -> datetime:
    """Return local midnight of the given date as an aware datetime."""
    return datetime(day.year, day.month, day.day, tzinfo=local_tz())
