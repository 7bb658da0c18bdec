"""
Caching module with bounded TTL stores, request coalescing, and stale-while-revalidate.
"""
from .core import CacheEntry, CacheLookup, CacheMeta, CacheSource, DataCategory
from .store import EntryCache
from .ttl_policies import (
    TTL_CONFIG,
    get_ttl_for_category,
    market_list_key,
    market_detail_key,
    market_search_key,
    event_list_key,
    order_book_key,
    price_key,
    portfolio_key,
    activity_key,
)
from .coalescer import RequestCoalescer
from .manager import RevalidatingCache, TimingRecorder

__all__ = [
    # Core types
    "CacheEntry",
    "CacheLookup",
    "CacheMeta",
    "CacheSource",
    "DataCategory",
    # Store
    "EntryCache",
    # TTL policies and keys
    "TTL_CONFIG",
    "get_ttl_for_category",
    "market_list_key",
    "market_detail_key",
    "market_search_key",
    "event_list_key",
    "order_book_key",
    "price_key",
    "portfolio_key",
    "activity_key",
    # Coalescing
    "RequestCoalescer",
    # Accessor
    "RevalidatingCache",
    "TimingRecorder",
]
