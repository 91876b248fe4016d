"""
Small in-process TTL cache used by the reference data clients.
"""
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    data: T
    fetched_at: float
    expires_at: float


class TTLCache:
    """
    Expired entries are never returned by get. Past max_size, expired
    entries are purged first, then the oldest writes are evicted.
    """

    def __init__(self, ttl_seconds: float, max_size: int = 1000,
                 clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                # kept for get_stale until purged
                return None
            return entry.data

    def get_stale(self, key: str) -> Optional[Any]:
        """Last stored value regardless of expiry, for cache fallbacks."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.data if entry is not None else None

    def set(self, key: str, data: Any) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(data=data, fetched_at=now, expires_at=now + self.ttl_seconds)
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            if len(self._entries) > self.max_size:
                self._purge_expired(now)
                while len(self._entries) > self.max_size:
                    del self._entries[next(iter(self._entries))]
        return entry

    def _purge_expired(self, now: float):
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for key in expired:
            del self._entries[key]

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
