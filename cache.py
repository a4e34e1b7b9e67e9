"""
Proxy Cache Layer
Bounded in-memory store for upstream JSON responses.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import replace
from enum import Enum
from typing import Optional

from models import CacheEntry

logger = logging.getLogger(__name__)


class InvalidationPolicy(str, Enum):
    """
    How a DELETE clears the cache.

    SOFT: mark entries stale, keep them as fallback data (default).
    HARD: drop every entry.
    """
    SOFT = "soft"
    HARD = "hard"


class CacheStore:
    """
    In-memory LRU cache with a max age and soft invalidation.

    Eviction:
    - Entries older than `ttl_seconds` (since created_at) are gone, stale or not.
    - Past `max_items`, the least recently used entries are dropped.
    Stale entries are never a normal hit, but `get` still returns them so the
    retry controller can use them as a last resort.

    Entries are immutable; invalidation swaps in stale copies under the lock.
    """

    def __init__(self, max_items: int = 5000, ttl_seconds: float = 86400.0, clock=time.time) -> None:
        """Initialize empty store. `clock` is injectable for tests."""
        if max_items < 1:
            raise ValueError("max_items must be >= 1")
        self.max_items = max_items
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return self.ttl_seconds > 0 and now - entry.created_at > self.ttl_seconds

    def get(self, key: str) -> tuple[Optional[CacheEntry], bool]:
        """
        Look up an entry. No side effects.

        Returns:
            (entry, found)
            - entry: the stored entry (possibly stale) or None
            - found: False when absent or past its max age
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, self._clock()):
                return None, False
            return entry, True

    def touch(self, key: str) -> None:
        """Mark `key` as recently used."""
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)

    def put(self, key: str, entry: CacheEntry) -> None:
        """Insert or replace. The stored entry is always fresh (stale=False)."""
        if entry.key != key or entry.stale:
            entry = replace(entry, key=key, stale=False)

        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._purge_expired_locked(self._clock())
            while len(self._entries) > self.max_items:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted {evicted} (capacity {self.max_items})")

    def invalidate_all(self) -> int:
        """Mark every entry stale in place. Returns the number newly marked."""
        with self._lock:
            self._purge_expired_locked(self._clock())
            count = 0
            for key, entry in list(self._entries.items()):
                if not entry.stale:
                    self._entries[key] = replace(entry, stale=True)
                    count += 1

        logger.info(f"Cache invalidated: {count} entries marked stale")
        return count

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()

        logger.info(f"Cache cleared: {count} entries removed")
        return count

    def invalidate(self, policy: InvalidationPolicy) -> int:
        """Apply the configured invalidation policy."""
        if policy is InvalidationPolicy.HARD:
            return self.clear()
        return self.invalidate_all()

    def purge_expired(self) -> int:
        """Drop entries past their max age. Returns the number dropped."""
        with self._lock:
            return self._purge_expired_locked(self._clock())

    def _purge_expired_locked(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> dict:
        """Return cache statistics for monitoring."""
        with self._lock:
            stale = sum(1 for entry in self._entries.values() if entry.stale)
            return {
                "entries": len(self._entries),
                "stale_entries": stale,
                "max_items": self.max_items,
                "ttl_seconds": self.ttl_seconds,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key)[1]
