"""
Timestamps.

All stored timestamps are timezone-aware UTC datetimes; display conversion to
the local timezone (Africa/Kampala by default) happens at the edges.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_tz(dt: datetime, tz: str) -> datetime:
    """Ensure `dt` has tzinfo; attach `tz` if naive."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo(tz))
    return dt


def parse_datetime(value: str, tz: str) -> datetime:
    """Parse an ISO-8601 datetime string and ensure tzinfo is present.

    Accepts a trailing `Z` (UTC), which gateways commonly send.
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_tz(datetime.fromisoformat(value), tz)


def to_local(dt: datetime, tz: str) -> datetime:
    """Convert a stored UTC timestamp to `tz` for display."""
    return dt.astimezone(ZoneInfo(tz))
