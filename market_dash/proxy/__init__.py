"""
Proxy rotation, proxy-aware fetching and bulk market scraping.
"""
from .models import ProxyAuth, ProxyRecord, ProxyStats
from .manager import (
    ProxyPoolManager,
    build_provider_proxy,
    parse_proxy_url,
    rate_limit_backoff,
)
from .fetch import (
    FetchResult,
    ProxyFetchClient,
    build_url,
    default_extract_items,
    is_rate_limited,
    parse_retry_after,
)
from .scraper import MarketScraper, ScrapeProgress, parse_market

__all__ = [
    # Records
    "ProxyAuth",
    "ProxyRecord",
    "ProxyStats",
    # Pool
    "ProxyPoolManager",
    "build_provider_proxy",
    "parse_proxy_url",
    "rate_limit_backoff",
    # Fetching
    "FetchResult",
    "ProxyFetchClient",
    "build_url",
    "default_extract_items",
    "is_rate_limited",
    "parse_retry_after",
    # Scraping
    "MarketScraper",
    "ScrapeProgress",
    "parse_market",
]
