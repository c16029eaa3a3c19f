import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SystemClock:
    """Wall clock, always timezone-aware UTC."""

    def now(self) -> datetime:
        return utcnow()


class ManualClock:
    """A clock that only moves when told to. Used for simulated time."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) or utcnow()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime):
        with self._lock:
            self._now = ensure_utc(value)

    def advance(self, delta: Union[timedelta, float, int] = 0, **kwargs) -> datetime:
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        delta += timedelta(**kwargs)
        with self._lock:
            self._now = self._now + delta
            return self._now
