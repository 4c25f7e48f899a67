"""Timezone and local-day helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo


def resolve_timezone(name: str | None) -> tzinfo:
    """Return the named IANA zone, or the host's local zone when ``name`` is empty."""

    if name:
        return ZoneInfo(name)
    return datetime.now().astimezone().tzinfo or timezone.utc


def local_day_bounds(as_of: float, tz: tzinfo) -> tuple[float, float]:
    """Return ``[start, end)`` epoch seconds of the local calendar day containing ``as_of``."""

    day = datetime.fromtimestamp(as_of, tz).date()
    start = datetime(day.year, day.month, day.day, tzinfo=tz)
    following = day + timedelta(days=1)
    end = datetime(following.year, following.month, following.day, tzinfo=tz)
    return start.timestamp(), end.timestamp()


__all__ = ["resolve_timezone", "local_day_bounds"]
