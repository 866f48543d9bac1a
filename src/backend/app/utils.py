import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(dt: datetime) -> str:
    """Fixed-width ISO-8601 in UTC; fixed width keeps string order == time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return iso_utc(utcnow())


def from_epoch(ts: Optional[int]) -> Optional[str]:
    if not ts:
        return None
    return iso_utc(datetime.fromtimestamp(int(ts), tz=timezone.utc))


class MonotonicClock:
    """UTC clock whose readings never repeat or go backwards within a process."""

    def __init__(self, source=utcnow):
        self._source = source
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = self._source()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current

    def now_iso(self) -> str:
        return iso_utc(self.now())
