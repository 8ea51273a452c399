"""Generic TTL cache."""
import threading

from utils.clock import SystemClock


class TTLCache:
    """Thread-safe key-value cache with per-key TTL, driven by an injected clock."""

    def __init__(self, clock=None, default_ttl=300):
        self._store = {}
        self._lock = threading.Lock()
        self.clock = clock or SystemClock()
        self.default_ttl = default_ttl

    def _now(self):
        return self.clock.now().timestamp()

    def get(self, key):
        """Get value if exists and not expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._now() >= entry["expires"]:
                del self._store[key]
                return None
            return entry["value"]

    def set(self, key, value, ttl=None):
        """Set key with TTL in seconds."""
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._store[key] = {
                "value": value,
                "expires": self._now() + ttl,
            }

    def invalidate(self, key):
        """Remove a specific key."""
        with self._lock:
            self._store.pop(key, None)

    def clear(self):
        """Remove all entries."""
        with self._lock:
            self._store.clear()
