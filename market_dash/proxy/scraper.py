"""
Bulk market scraper on top of the proxy-aware fetch client.

Events embed their markets, so paging through /events is the fastest way to
collect every market; /markets is paged afterwards for standalone markets.
"""
import time
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Set

import requests
from pydantic import ValidationError

from market_dash.errors import UpstreamError
from market_dash.schemas import Market
from .fetch import FetchResult, ProxyFetchClient, build_url, default_extract_items

logger = logging.getLogger("proxy.scraper")

GAMMA_API = "https://gamma-api.polymarket.com"

PAGE_SIZE = 500
MAX_PAGES = 200
PAGE_DELAY = 0.05
PAGE_TIMEOUT = 20.0
DETAIL_TIMEOUT = 15.0
BENCHMARK_TIMEOUT = 10.0
BENCHMARK_DELAY = 0.1

ErrorCallback = Callable[[Exception, str], None]


@dataclass
class ScrapeProgress:
    """Counters for one scraping call."""
    phase: str = "events"  # events, markets, details, complete
    current_page: int = 0
    pages_fetched: int = 0
    markets_found: int = 0
    errors: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.started_at


def parse_market(
    raw: Mapping[str, Any],
    event_title: Optional[str] = None,
    event_slug: Optional[str] = None,
) -> Market:
    """
    Normalize a raw market payload.

    Raises:
        ValidationError: If the payload cannot be read as a market
    """
    data = dict(raw)
    if event_title is not None:
        data["eventTitle"] = event_title
    if event_slug is not None:
        data["eventSlug"] = event_slug
    return Market.model_validate(data)


class MarketScraper:
    """Collects markets from the market-metadata API through a ProxyFetchClient."""

    def __init__(
        self,
        client: ProxyFetchClient,
        gamma_base_url: Optional[str] = None,
        page_size: int = PAGE_SIZE,
        max_pages: int = MAX_PAGES,
        page_delay: float = PAGE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.gamma_base_url = gamma_base_url or client.base_urls.get("gamma", GAMMA_API)
        self.page_size = page_size
        self.max_pages = max_pages
        self.page_delay = page_delay
        self._sleep = sleep

    def fetch_all_markets_from_events(
        self,
        active_only: bool = True,
        max_markets: Optional[int] = None,
        on_progress: Optional[Callable[[ScrapeProgress], None]] = None,
        on_market: Optional[Callable[[Market], None]] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> List[Market]:
        """
        Collect every market from /events, then standalone ones from /markets.

        Markets are deduplicated by id. A failed events page is reported and
        skipped; a failed /markets page ends the standalone phase.
        """
        progress = ScrapeProgress()
        markets: List[Market] = []
        logger.info("Starting market scrape from events endpoint")

        for market in self._scrape(
            progress,
            active_only=active_only,
            max_markets=max_markets,
            include_standalone=True,
            on_progress=on_progress,
            on_error=on_error,
        ):
            markets.append(market)
            if on_market:
                on_market(market)

        progress.phase = "complete"
        logger.info(
            f"Scrape complete: {len(markets)} markets in {progress.elapsed_seconds:.1f}s "
            f"({progress.errors} errors)"
        )
        if on_progress:
            on_progress(progress)
        return markets

    def stream_all_markets(
        self,
        active_only: bool = True,
        max_markets: Optional[int] = None,
        progress: Optional[ScrapeProgress] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Iterator[Market]:
        """Yield markets from /events as each page arrives."""
        yield from self._scrape(
            progress or ScrapeProgress(),
            active_only=active_only,
            max_markets=max_markets,
            include_standalone=False,
            on_error=on_error,
        )

    def fetch_market_details(
        self,
        market_ids: Sequence[str],
        max_concurrent: int = 5,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[str, Market]:
        """Fetch /markets/{id} for each id concurrently; failed ids are left out."""
        urls = {market_id: build_url(self.gamma_base_url, f"/markets/{market_id}") for market_id in market_ids}
        logger.info(f"Fetching details for {len(urls)} markets")

        def report(done: int, total: int, url: str, ok: bool) -> None:
            if not ok:
                logger.warning(f"Failed: {url}")
            if on_progress:
                on_progress(done, total)

        fetched = self.client.fetch_batch(
            list(urls.values()),
            max_concurrent=max_concurrent,
            on_progress=report,
            timeout=DETAIL_TIMEOUT,
            retries=2,
        )

        details: Dict[str, Market] = {}
        for market_id, url in urls.items():
            result = fetched.get(url)
            if not isinstance(result, FetchResult):
                continue
            try:
                details[market_id] = parse_market(result.data)
            except ValidationError as e:
                logger.warning(f"Malformed details for market {market_id}: {e.error_count()} errors")

        logger.info(f"Fetched details for {len(details)}/{len(urls)} markets")
        return details

    def benchmark_proxies(self, iterations: int = 10) -> Dict[str, Any]:
        """Time single-item requests without retries and report proxy stats."""
        url = build_url(self.gamma_base_url, "/markets", {"limit": 1})
        total_latency = 0.0
        successes = 0

        logger.info(f"Benchmarking proxies with {iterations} requests")
        for i in range(iterations):
            try:
                result = self.client.fetch(url, timeout=BENCHMARK_TIMEOUT, retries=0)
            except (UpstreamError, requests.RequestException) as e:
                logger.info(f"Request {i + 1}: FAILED ({e})")
            else:
                total_latency += result.latency_ms
                successes += 1
                via = result.proxy.host if result.proxy else "direct"
                logger.info(f"Request {i + 1}: {result.latency_ms:.0f}ms via {via}")
            self._sleep(BENCHMARK_DELAY)

        return {
            "avg_latency_ms": total_latency / successes if successes else 0.0,
            "success_rate": successes / iterations * 100 if iterations else 0.0,
            "proxy_stats": asdict(self.client.pool.get_stats()),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _scrape(
        self,
        progress: ScrapeProgress,
        active_only: bool,
        max_markets: Optional[int],
        include_standalone: bool,
        on_progress: Optional[Callable[[ScrapeProgress], None]] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Iterator[Market]:
        seen: Set[str] = set()

        def limit_reached() -> bool:
            return bool(max_markets) and progress.markets_found >= max_markets

        progress.phase = "events"
        event_params = {"closed": "false"} if active_only else {}
        for events in self._iter_pages("/events", event_params, progress, 3, True, on_progress, on_error):
            for event in events:
                if not isinstance(event, dict):
                    continue
                for raw in event.get("markets") or []:
                    market = self._take(raw, seen, progress, on_error, event.get("title"), event.get("slug"))
                    if market is None:
                        continue
                    yield market
                    if limit_reached():
                        return

        if not include_standalone:
            return

        progress.phase = "markets"
        market_params = {"closed": "false", "active": "true"} if active_only else {}
        for page in self._iter_pages("/markets", market_params, progress, 2, False, on_progress, on_error):
            for raw in page:
                market = self._take(raw, seen, progress, on_error)
                if market is None:
                    continue
                yield market
                if limit_reached():
                    return

    def _iter_pages(
        self,
        path: str,
        params: Mapping[str, Any],
        progress: ScrapeProgress,
        retries: int,
        skip_failed: bool,
        on_progress: Optional[Callable[[ScrapeProgress], None]],
        on_error: Optional[ErrorCallback],
    ) -> Iterator[List[Any]]:
        offset = 0
        for page_num in range(self.max_pages):
            url = build_url(self.gamma_base_url, path, {**params, "limit": self.page_size, "offset": offset})
            offset += self.page_size
            progress.current_page = page_num + 1

            try:
                result = self.client.fetch(url, timeout=PAGE_TIMEOUT, retries=retries)
                items = default_extract_items(result.data)
            except (UpstreamError, requests.RequestException) as e:
                progress.errors += 1
                logger.error(f"Error fetching {path} page {page_num + 1}: {e}")
                if on_error:
                    on_error(e, f"{path} page {page_num + 1}")
                if skip_failed:
                    continue
                return

            if not items:
                return

            progress.pages_fetched += 1
            found_before = progress.markets_found
            yield items
            logger.info(
                f"{path} page {page_num + 1}: {len(items)} items, "
                f"{progress.markets_found - found_before} new markets (total: {progress.markets_found})"
            )
            if on_progress:
                on_progress(progress)

            if len(items) < self.page_size:
                return
            self._sleep(self.page_delay)

    def _take(
        self,
        raw: Any,
        seen: Set[str],
        progress: ScrapeProgress,
        on_error: Optional[ErrorCallback],
        event_title: Optional[str] = None,
        event_slug: Optional[str] = None,
    ) -> Optional[Market]:
        """Parse ``raw`` unless it has no id or was already seen."""
        if not isinstance(raw, dict):
            return None
        market_id = raw.get("id") or raw.get("conditionId")
        if not market_id or str(market_id) in seen:
            return None
        seen.add(str(market_id))

        try:
            market = parse_market(raw, event_title, event_slug)
        except ValidationError as e:
            progress.errors += 1
            logger.warning(f"Skipping malformed market {market_id}: {e.error_count()} errors")
            if on_error:
                on_error(e, f"market {market_id}")
            return None

        progress.markets_found += 1
        return market
