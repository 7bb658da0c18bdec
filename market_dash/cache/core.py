"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from enum import Enum


class DataCategory(Enum):
    """Categories of upstream data with different caching behaviors."""
    MARKET_LIST = "market_list"           # 2 min stale, 10 min max
    MARKET_METADATA = "market_metadata"   # 3 min stale, 15 min max
    EVENTS = "events"                     # 2 min stale, 10 min max
    ORDER_BOOK = "order_book"             # 5 s stale, 15 s max
    PORTFOLIO = "portfolio"               # 30 s stale, 5 min max


class CacheSource(Enum):
    """Source of a value handed back by the cache."""
    FRESH = "fresh"        # Within its stale TTL
    STALE = "stale"        # Past stale TTL, revalidating in background
    UPSTREAM = "upstream"  # Fetched from the upstream on this call


@dataclass
class CacheEntry:
    """
    A cached value with its freshness window.

    Timestamps are epoch seconds; ``inserted_at <= stale_at <= expires_at``.
    """
    key: str
    value: Any
    inserted_at: float
    stale_at: float
    expires_at: float

    def __post_init__(self):
        if not (self.inserted_at <= self.stale_at <= self.expires_at):
            raise ValueError(
                f"Invalid freshness window for {self.key}: "
                f"{self.inserted_at} <= {self.stale_at} <= {self.expires_at}"
            )

    def is_stale(self, now: float) -> bool:
        return now > self.stale_at

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.inserted_at)


@dataclass
class CacheLookup:
    """Result of a successful ``EntryCache.get``."""
    value: Any
    is_stale: bool
    age_seconds: float = 0.0


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, included in API responses.
    """
    last_updated: str  # ISO timestamp
    cache_source: str  # "fresh", "stale", or "upstream"
    category: Optional[str] = None
    ttl_seconds: Optional[float] = None
    age_seconds: Optional[float] = None

    @property
    def cached(self) -> bool:
        return self.cache_source != CacheSource.UPSTREAM.value

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "lastUpdated": self.last_updated,
            "cacheSource": self.cache_source,
            "cached": self.cached,
        }
        if self.category:
            result["_debug"] = {
                "category": self.category,
                "ttl": self.ttl_seconds,
                "age": round(self.age_seconds, 1) if self.age_seconds else None,
            }
        return result


def utc_timestamp(epoch_seconds: float) -> str:
    """ISO-8601 UTC timestamp for an epoch value."""
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")
