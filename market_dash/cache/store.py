"""
Bounded in-memory store with per-entry stale and hard-expiry timestamps.
"""
import threading
import time
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from .core import CacheEntry, CacheLookup

logger = logging.getLogger("cache.store")


class EntryCache:
    """
    Key -> value store with stale/expiry windows and oldest-insertion eviction.

    - ``set`` stamps ``stale_at = now + ttl`` and ``expires_at = now + max_ttl``
    - ``get`` drops entries past ``expires_at`` and reports staleness otherwise
    - Inserting a new key at capacity evicts the entry inserted longest ago;
      overwriting an existing key moves it to the newest position
    - Reads never reorder entries

    Thread-safe; every mutation goes through the instance lock.
    """

    def __init__(
        self,
        max_size: int = 100,
        default_ttl: float = 30.0,
        max_ttl: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            max_size: Maximum number of entries held at once
            default_ttl: Seconds until stale when ``set`` gets no ttl
            max_ttl: Seconds until an entry is expired and dropped
            clock: Source of epoch seconds
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if max_ttl < default_ttl:
            raise ValueError("max_ttl must be >= default_ttl")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[CacheLookup]:
        """Return the value and its staleness, or None if absent or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                logger.debug(f"Expired entry dropped: {key}")
                return None
            return CacheLookup(
                value=entry.value,
                is_stale=entry.is_stale(now),
                age_seconds=entry.age_seconds(now),
            )

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> CacheEntry:
        """Insert or overwrite ``key``; ttl is capped at the store's max_ttl."""
        now = self._clock()
        stale_ttl = self.default_ttl if ttl is None else ttl
        stale_ttl = min(max(stale_ttl, 0.0), self.max_ttl)
        entry = CacheEntry(
            key=key,
            value=value,
            inserted_at=now,
            stale_at=now + stale_ttl,
            expires_at=now + self.max_ttl,
        )
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted oldest entry: {evicted}")
            self._entries[key] = entry
        return entry

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> List[str]:
        """Keys in insertion order, oldest first."""
        with self._lock:
            return list(self._entries.keys())

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "keys": list(self._entries.keys()),
            }
