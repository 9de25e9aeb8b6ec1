"""Canonical time zone helpers.

All streak math happens on civil days in one zone (``STREAK_TIMEZONE``).
Timestamps arriving without an offset are wall-clock times in that zone.
"""
from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional, Union
from zoneinfo import ZoneInfo

from attendrix.core.config import settings

ZoneLike = Union[str, ZoneInfo, None]


@lru_cache(maxsize=16)
def _zone_for(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def get_zone(zone: ZoneLike = None) -> ZoneInfo:
    if isinstance(zone, ZoneInfo):
        return zone
    return _zone_for(zone or settings.STREAK_TIMEZONE)


def now_in_zone(zone: ZoneLike = None) -> datetime:
    return datetime.now(timezone.utc).astimezone(get_zone(zone))


def parse_timestamp(value: Union[str, datetime], zone: ZoneLike = None) -> datetime:
    """Parse a timestamp into an aware datetime.

    Naive values (no ``Z``/offset suffix) are read as wall time in the
    canonical zone rather than UTC.
    """
    if isinstance(value, datetime):
        moment = value
    else:
        raw = value.strip()
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise ValueError(f"Unparseable timestamp: {value!r}") from exc
    if moment.tzinfo is None:
        return moment.replace(tzinfo=get_zone(zone))
    return moment


def zone_label(zone: ZoneLike = None) -> str:
    """Short label for formatted days, e.g. ``IST``."""
    resolved = get_zone(zone)
    label: Optional[str] = datetime.now(resolved).tzname()
    return label or resolved.key
