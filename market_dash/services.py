"""
Market data service: one instance per process.

Owns the per-category revalidating caches, the shared request coalescer,
the proxy-aware fetch client and the typed upstream clients. Every read
goes through the cache for its data category and returns ``(data, meta)``.
"""
import time
import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from market_dash.cache import (
    CacheMeta,
    DataCategory,
    EntryCache,
    RequestCoalescer,
    RevalidatingCache,
    TimingRecorder,
    activity_key,
    event_list_key,
    get_ttl_for_category,
    market_detail_key,
    market_list_key,
    market_search_key,
    order_book_key,
    portfolio_key,
    price_key,
)
from market_dash.proxy import ProxyFetchClient, ProxyPoolManager
from market_dash.schemas import Activity, Market, MarketEvent, OrderBookSnapshot, Portfolio, PriceQuote
from market_dash.upstream import ClobClient, DataClient, GammaClient

logger = logging.getLogger("service")


class MarketDataService:
    """Cached access to markets, events, order books and portfolios."""

    def __init__(
        self,
        fetcher: ProxyFetchClient,
        max_revalidation_workers: int = 4,
        coalesce_timeout: Optional[float] = None,
        slow_threshold: float = 0.5,
        clock: Callable[[], float] = time.time,
    ):
        self.fetcher = fetcher
        self.gamma = GammaClient(fetcher)
        self.clob = ClobClient(fetcher)
        self.data = DataClient(fetcher)

        self.coalescer = RequestCoalescer(timeout=coalesce_timeout)
        self.timing = TimingRecorder(slow_threshold=slow_threshold, clock=clock)
        self.caches: Dict[DataCategory, RevalidatingCache] = {}
        for category in DataCategory:
            stale_ttl, max_ttl, max_size = get_ttl_for_category(category)
            store = EntryCache(max_size=max_size, default_ttl=stale_ttl, max_ttl=max_ttl, clock=clock)
            self.caches[category] = RevalidatingCache(
                store,
                coalescer=self.coalescer,
                category=category,
                max_revalidation_workers=max_revalidation_workers,
                timing=self.timing,
                clock=clock,
            )

    @classmethod
    def from_settings(
        cls,
        settings,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> "MarketDataService":
        pool = ProxyPoolManager.from_settings(settings, clock=clock)
        if (settings.proxy_provider or "").lower() == "webshare" and settings.proxy_api_key:
            try:
                pool.load_webshare_proxies(settings.proxy_api_key, session=session)
            except (requests.RequestException, ValueError, KeyError) as e:
                logger.error(f"Failed to load Webshare proxies, going direct: {e}")
        fetcher = ProxyFetchClient.from_settings(settings, pool=pool, session=session)
        return cls(
            fetcher,
            max_revalidation_workers=settings.cache_revalidation_workers,
            coalesce_timeout=settings.cache_coalesce_timeout,
            slow_threshold=settings.cache_slow_operation_seconds,
            clock=clock,
        )

    # ===== MARKETS =====

    def list_markets(
        self,
        limit: int = 50,
        offset: int = 0,
        order: Optional[str] = None,
        active: Optional[bool] = True,
        closed: Optional[bool] = False,
        force_refresh: bool = False,
    ) -> Tuple[List[Market], CacheMeta]:
        params = {"limit": limit, "offset": offset, "order": order, "active": active, "closed": closed}
        return self.caches[DataCategory.MARKET_LIST].get(
            market_list_key(params),
            lambda: self.gamma.list_markets(**params),
            force_refresh=force_refresh,
        )

    def get_trending_markets(self, limit: int = 20) -> Tuple[List[Market], CacheMeta]:
        return self.caches[DataCategory.MARKET_LIST].get(
            market_list_key({"view": "trending", "limit": limit}),
            lambda: self.gamma.get_trending_markets(limit=limit),
        )

    def get_top_markets(self, limit: int = 10) -> Tuple[List[Market], CacheMeta]:
        return self.caches[DataCategory.MARKET_LIST].get(
            market_list_key({"view": "top", "limit": limit}),
            lambda: self.gamma.get_top_markets(limit=limit),
        )

    def search_markets(self, query: str, limit: int = 20) -> Tuple[List[Market], CacheMeta]:
        return self.caches[DataCategory.MARKET_LIST].get(
            market_search_key(query, {"limit": limit}),
            lambda: self.gamma.search_markets(query, limit=limit),
        )

    def get_market(self, market_id: str, force_refresh: bool = False) -> Tuple[Market, CacheMeta]:
        return self.caches[DataCategory.MARKET_METADATA].get(
            market_detail_key(market_id),
            lambda: self.gamma.get_market(market_id),
            force_refresh=force_refresh,
        )

    def list_events(
        self,
        limit: int = 20,
        offset: int = 0,
        closed: Optional[bool] = False,
    ) -> Tuple[List[MarketEvent], CacheMeta]:
        params = {"limit": limit, "offset": offset, "closed": closed}
        return self.caches[DataCategory.EVENTS].get(
            event_list_key(params),
            lambda: self.gamma.list_events(**params),
        )

    def get_order_book(self, token_id: str) -> Tuple[OrderBookSnapshot, CacheMeta]:
        return self.caches[DataCategory.ORDER_BOOK].get(
            order_book_key(token_id),
            lambda: self.clob.get_order_book(token_id),
        )

    def get_price_quote(self, token_id: str) -> Tuple[PriceQuote, CacheMeta]:
        """Midpoint price; shares the order book's short TTLs."""
        return self.caches[DataCategory.ORDER_BOOK].get(
            price_key(token_id),
            lambda: self.clob.get_price_quote(token_id),
        )

    # ===== PORTFOLIO =====

    def get_portfolio(self, address: str) -> Tuple[Portfolio, CacheMeta]:
        return self.caches[DataCategory.PORTFOLIO].get(
            portfolio_key(address),
            lambda: self.data.get_portfolio(address),
        )

    def get_activity(self, address: str, limit: int = 50, offset: int = 0) -> Tuple[List[Activity], CacheMeta]:
        return self.caches[DataCategory.PORTFOLIO].get(
            activity_key(address, {"limit": limit, "offset": offset}),
            lambda: self.data.get_activity(address, limit=limit, offset=offset),
        )

    # ===== ADMIN =====

    def get_cache_stats(self) -> Dict[str, Any]:
        categories = {}
        for category, cache in self.caches.items():
            stats = cache.get_stats()
            stats.pop("coalescer", None)
            stats.pop("timing", None)
            categories[category.value] = stats
        return {
            "categories": categories,
            "coalescer": self.coalescer.get_stats(),
            "timing": self.timing.get_stats(),
        }

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        """Clear every category, or only keys containing ``pattern``."""
        if pattern:
            return sum(cache.invalidate_pattern(pattern) for cache in self.caches.values())
        return sum(cache.clear() for cache in self.caches.values())

    def get_proxy_stats(self) -> Dict[str, Any]:
        pool = self.fetcher.pool
        return {
            **asdict(pool.get_stats()),
            "proxies": [proxy.to_dict() for proxy in pool.proxies],
        }

    def reset_proxies(self) -> None:
        self.fetcher.pool.reset()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for background revalidations in every category."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for cache in self.caches.values():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not cache.drain(remaining):
                return False
        return True

    def shutdown(self) -> None:
        for cache in self.caches.values():
            cache.shutdown()
        logger.info("Market data service stopped")
