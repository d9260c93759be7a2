"""
TaskGuard In-Process Cache
Thread-safe TTL cache keyed by small typed tuples instead of formatted strings.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Generic, Hashable, NamedTuple, Optional, TypeVar

from taskguard.core.logging import LoggerMixin
from taskguard.core.timeutils import Clock, utc_now

V = TypeVar("V")


class TierCacheKey(NamedTuple):
    """Cache key for resolved subscription tiers"""
    user_id: int


class RuleCacheKey(NamedTuple):
    """Cache key for resolved endpoint rate limits"""
    tier_id: int
    endpoint: str


@dataclass
class CacheEntry(Generic[V]):
    """Cached value with its absolute expiry"""
    value: V
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class TTLCache(LoggerMixin, Generic[V]):
    """
    Fixed-TTL cache with no explicit invalidation on source changes.

    Entries are served until their TTL elapses; staleness up to the TTL is
    accepted by callers.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now
        self._entries: Dict[Hashable, CacheEntry[V]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[V]:
        """Return the cached value or None if absent or expired"""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    def set(self, key: Hashable, value: V, ttl: timedelta) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        self.logger.debug("Cache cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None
