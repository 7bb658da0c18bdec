"""
Dashboard data client for the backend HTTP API.

Keeps its own small cache (independent of the backend's), deduplicates
concurrent requests and serves stale data while refreshing in the background.
Prefetch helpers warm market details before the user opens them.
"""
import threading
import time
import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

import requests

from market_dash.cache import (
    EntryCache,
    RequestCoalescer,
    RevalidatingCache,
    market_detail_key,
    order_book_key,
)
from market_dash.errors import NotFoundError, UpstreamError
from config.settings import settings

logger = logging.getLogger("dashboard_client")

MARKET_LIST_TTL = 15.0
MARKET_DETAIL_TTL = 60.0
ORDERBOOK_TTL = 5.0

CACHE_MAX_SIZE = 200
CACHE_MAX_TTL = 300.0

TIMEFRAMES = ("24h", "7d", "1m")
TIMEFRAME_ORDER = {
    "24h": "volume24hr",
    "7d": "volume1wk",
    "1m": "volume1mo",
}


def market_list_cache_key(timeframe: str, limit: int, offset: int) -> str:
    return f"markets:list:{timeframe}:{limit}:{offset}"


class MarketDataClient:
    """Cached, deduplicated reads from the dashboard backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
        max_workers: int = 4,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = (base_url or settings.dashboard_api_base_url).rstrip("/")
        self._session = session or requests.Session()
        self.timeout = timeout

        self.store = EntryCache(
            max_size=CACHE_MAX_SIZE,
            default_ttl=MARKET_LIST_TTL,
            max_ttl=CACHE_MAX_TTL,
            clock=clock,
        )
        self.coalescer = RequestCoalescer()
        self._cache = RevalidatingCache(
            self.store,
            coalescer=self.coalescer,
            max_revalidation_workers=max_workers,
            clock=clock,
        )

        self._prefetched: Set[str] = set()
        self._prefetched_lock = threading.Lock()
        self._orderbook_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="orderbook-load")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a backend endpoint and unwrap the response envelope."""
        url = f"{self.base_url}{path}"
        response = self._session.get(url, params=params, timeout=self.timeout)

        if not response.ok:
            error_cls = NotFoundError if response.status_code == 404 else UpstreamError
            raise error_cls(
                f"Failed to fetch {path}: {response.status_code}",
                status_code=response.status_code,
                url=url,
                body=response.text,
            )

        body = response.json()
        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("error") if isinstance(body, dict) else None
            raise UpstreamError(message or f"Unexpected response from {path}", url=url, body=body)
        return body.get("data")

    # ===== FETCHERS =====

    def fetch_market_list(
        self,
        timeframe: str = "24h",
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """
        Fetch the market list ordered by volume over ``timeframe``.

        Returns:
            (markets, from_cache) tuple
        """
        if timeframe not in TIMEFRAME_ORDER:
            raise ValueError(f"Unknown timeframe: {timeframe}")

        params = {"limit": limit, "offset": offset, "order": TIMEFRAME_ORDER[timeframe]}
        markets, meta = self._cache.get(
            market_list_cache_key(timeframe, limit, offset),
            lambda: self._get_json("/api/markets", params) or [],
            ttl=MARKET_LIST_TTL,
        )
        return markets, meta.cached

    def fetch_market_detail(self, market_id: str) -> Tuple[Optional[Dict[str, Any]], bool]:
        market, meta = self._cache.get(
            market_detail_key(market_id),
            lambda: self._get_json(f"/api/markets/{market_id}"),
            ttl=MARKET_DETAIL_TTL,
        )
        return market, meta.cached

    def fetch_order_book(self, market_id: str, token_id: str) -> Tuple[Optional[Dict[str, Any]], bool]:
        book, meta = self._cache.get(
            order_book_key(token_id),
            lambda: self._get_json(f"/api/markets/{market_id}/orderbook", {"tokenId": token_id}),
            ttl=ORDERBOOK_TTL,
        )
        return book, meta.cached

    # ===== PREFETCHING =====

    def prefetch_market_detail(self, market_id: str) -> Optional[Future]:
        """
        Warm a market's details in the background.

        Each market is prefetched once; a failed prefetch can be retried.
        """
        with self._prefetched_lock:
            if market_id in self._prefetched:
                return None
            self._prefetched.add(market_id)

        key = market_detail_key(market_id)
        future = self._cache.prefetch(
            key,
            lambda: self._get_json(f"/api/markets/{market_id}"),
            ttl=MARKET_DETAIL_TTL,
        )
        if future is not None:
            future.add_done_callback(lambda _f: self._forget_if_missing(market_id, key))
        return future

    def _forget_if_missing(self, market_id: str, key: str) -> None:
        if not self.store.has(key):
            with self._prefetched_lock:
                self._prefetched.discard(market_id)

    def prefetch_visible_markets(self, market_ids: Sequence[str]) -> None:
        for market_id in market_ids:
            self.prefetch_market_detail(market_id)

    def prefetch_other_timeframes(self, current_timeframe: str, limit: int = 50) -> List[str]:
        """
        Warm first pages of the timeframes not on screen.

        Returns:
            Timeframes a prefetch was started for
        """
        started = []
        for timeframe in TIMEFRAMES:
            if timeframe == current_timeframe:
                continue
            key = market_list_cache_key(timeframe, limit, 0)
            if self.store.has(key):
                continue
            params = {"limit": limit, "offset": 0, "order": TIMEFRAME_ORDER[timeframe]}
            fetcher = lambda params=params: self._get_json("/api/markets", params) or []
            if self._cache.prefetch(key, fetcher, ttl=MARKET_LIST_TTL) is not None:
                started.append(timeframe)
        return started

    def load_market_with_orderbook(
        self,
        market_id: str,
        on_orderbook: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Return market details now; load the first token's order book in the
        background and hand it to ``on_orderbook``.
        """
        market, _ = self.fetch_market_detail(market_id)
        if not market:
            return None

        token_ids = market.get("clobTokenIds") or []
        if not token_ids:
            return market

        def load_orderbook():
            try:
                book, _ = self.fetch_order_book(market_id, token_ids[0])
            except (UpstreamError, requests.RequestException, ValueError) as e:
                logger.error(f"Order book load failed for {market_id}: {e}")
                return
            if book and on_orderbook:
                on_orderbook(book)

        future = self._orderbook_pool.submit(load_orderbook)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._load_done)
        return market

    def _load_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    # ===== CACHE MANAGEMENT =====

    def get_cache_stats(self) -> Dict[str, Any]:
        with self._prefetched_lock:
            prefetched = len(self._prefetched)
        return {
            "size": self.store.size(),
            "keys": self.store.keys(),
            "in_flight": self.coalescer.active_requests,
            "prefetched": prefetched,
        }

    def clear_cache(self) -> int:
        with self._prefetched_lock:
            self._prefetched.clear()
        return self.store.clear()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for background revalidations, prefetches and order book loads."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            _, not_done = wait_futures(pending, timeout=timeout)
            if not_done:
                return False
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        return self._cache.drain(remaining)

    def close(self) -> None:
        self.drain()
        self._orderbook_pool.shutdown(wait=True)
        self._cache.shutdown()
        self._session.close()
