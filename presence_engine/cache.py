"""
In-process TTL cache with explicit invalidation.

Entries expire `ttl_seconds` after they were stored. The clock is injectable so
expiry can be driven from tests. There is no locking: concurrent refills of the
same key simply overwrite each other with equivalent values.
"""

import logging
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """Keyed cache whose entries go stale after a fixed time-to-live."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic, name: str = "cache"):
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'expired': 0,
            'invalidations': 0,
        }

    def now(self) -> float:
        return self._clock()

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None on a miss or an expired entry."""
        entry = self._entries.get(key)
        if entry is None:
            self.cache_stats['misses'] += 1
            return None

        value, stored_at = entry
        if self._clock() - stored_at > self.ttl_seconds:
            # Expired, drop it
            self._entries.pop(key, None)
            self.cache_stats['expired'] += 1
            self.cache_stats['misses'] += 1
            logger.debug(f"{self.name}: entry {key!r} expired")
            return None

        self.cache_stats['hits'] += 1
        return value

    def set(self, key: Hashable, value: Any) -> Any:
        self._entries[key] = (value, self._clock())
        return value

    def invalidate(self, key: Hashable) -> bool:
        """Evict one key. Returns True if something was removed."""
        removed = self._entries.pop(key, None) is not None
        if removed:
            self.cache_stats['invalidations'] += 1
            logger.debug(f"{self.name}: entry {key!r} invalidated")
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        stats = self.cache_stats.copy()
        stats['size'] = len(self._entries)
        stats['ttl_seconds'] = self.ttl_seconds

        lookups = stats['hits'] + stats['misses']
        stats['hit_ratio'] = stats['hits'] / lookups if lookups else 0.0
        return stats
