"""
Time helpers for the Strava sync engine.

All instants are handled as timezone-aware UTC. SQLite (tests) hands back
naive datetimes for DateTime(timezone=True) columns, so anything read from
the store goes through `as_utc` before comparison.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@lru_cache(maxsize=256)
def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """IANA name -> ZoneInfo; unknown or empty names fall back to UTC."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, falling back to UTC")
        return ZoneInfo("UTC")


def activity_local_date(instant: datetime, tz_name: Optional[str]) -> date:
    """Project an instant into the athlete's timezone and truncate to a calendar day."""
    return as_utc(instant).astimezone(resolve_timezone(tz_name)).date()


def activity_local_minutes(instant: datetime, tz_name: Optional[str]) -> int:
    """Minutes since local midnight in the athlete's timezone."""
    local = as_utc(instant).astimezone(resolve_timezone(tz_name))
    return local.hour * 60 + local.minute


def parse_time_to_minutes(value: Optional[str]) -> Optional[int]:
    """'HH:MM' -> minutes since midnight; None for empty/unparseable values."""
    if not value:
        return None
    parts = value.split(":")
    if len(parts) < 2:
        return None
    try:
        hours = int(parts[0])
        minutes = int(parts[1])
    except ValueError:
        return None
    return hours * 60 + minutes


def minutes_to_time_string(total_minutes: int) -> str:
    """Minutes since midnight -> 'HH:MM', clamped to 00:00..23:59."""
    safe = max(0, min(23 * 60 + 59, int(total_minutes)))
    return f"{safe // 60:02d}:{safe % 60:02d}"
