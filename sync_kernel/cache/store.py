"""
Expiring Cache: key → value store with a TTL per entry.

Keys come from a small, enumerable set of query shapes (per operator, per
conversation, per presence set), so there is no size bound and no LRU.
Expired entries are only removed when they are read or overwritten.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sync_kernel.clock import utcnow
from sync_kernel.models.cache import CacheEntry, CacheStats

logger = logging.getLogger(__name__)


class ExpiringCache:
    """In-memory cache owned by one orchestrator instance."""

    def __init__(self, default_ttl_seconds: float = 30.0):
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self.default_ttl_seconds = default_ttl_seconds
        self._entries: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()

    @property
    def stats(self) -> CacheStats:
        """Copy of the hit/miss counters."""
        return self._stats.model_copy()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, current_time: Optional[datetime] = None) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        if current_time is None:
            current_time = utcnow()

        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            logger.debug("Cache miss for %s", key)
            return None

        if entry.is_expired(current_time):
            del self._entries[key]
            self._stats.misses += 1
            self._stats.expirations += 1
            logger.debug("Cache entry expired for %s", key)
            return None

        self._stats.hits += 1
        logger.debug("Cache hit for %s", key)
        return entry.data

    def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        current_time: Optional[datetime] = None,
    ) -> CacheEntry:
        """Store a value, replacing any previous entry for the key."""
        if current_time is None:
            current_time = utcnow()
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds

        entry = CacheEntry(
            data=value,
            created_at=current_time,
            expires_at=current_time + timedelta(seconds=ttl),
        )
        self._entries[key] = entry
        self._stats.sets += 1
        logger.debug("Cache set for %s (ttl=%ss)", key, ttl)
        return entry

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Returns True if something was removed."""
        if self._entries.pop(key, None) is None:
            return False
        self._stats.invalidations += 1
        return True

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix."""
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        self._stats.invalidations += len(doomed)
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()
