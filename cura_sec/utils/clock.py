"""
Clock sources for CuraNet
All expiry comparisons go through an injected clock
"""

from datetime import datetime, timedelta, UTC
from typing import Optional, Protocol
import threading


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock, timezone-aware UTC"""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """Manually driven clock for tests and replays"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else datetime.now(UTC)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by ``timedelta(**kwargs)``"""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC form used by the SQL adapters"""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)
