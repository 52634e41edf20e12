"""
Clock helpers.

Timestamps are stored and compared in UTC.  Hour-of-day business rules
(night surge, traffic factor) are evaluated in the service timezone: an
aware datetime is converted into it, a naive datetime is taken to be
local wall-clock time already.
"""

from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from towline.core.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive values read back from stores without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def local_hour(value: datetime, tz_name: str | None = None) -> int:
    """Return the hour of day (0-23) of ``value`` in the service timezone."""
    if value.tzinfo is None:
        return value.hour
    return value.astimezone(_zone(tz_name or settings.service_timezone)).hour
