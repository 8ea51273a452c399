"""Injectable time sources."""
import threading
from datetime import datetime, timedelta, timezone


class SystemClock:
    """Wall clock in UTC."""

    def now(self):
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to. Used by tests and replays."""

    def __init__(self, start=None):
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self):
        with self._lock:
            return self._now

    def advance(self, seconds=0, **kwargs):
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)
            return self._now

    def set(self, when):
        with self._lock:
            self._now = when
