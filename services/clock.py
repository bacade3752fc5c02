"""
Time helpers. All instants are handled as timezone-aware UTC.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value) -> Optional[datetime]:
    """
    Normalize a stored or incoming instant to aware UTC.

    SQLite hands DateTime columns back naive; those are treated as UTC.
    Anything that is not a datetime (or an ISO string) becomes None.
    """
    if value is None:
        return None

    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None

    if not isinstance(value, datetime):
        return None

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SystemClock:
    """Clock injected into background components so tests can control time"""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    def __init__(self, now: datetime):
        self._now = as_utc(now)

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = as_utc(now)
