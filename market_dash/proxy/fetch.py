"""
Proxy-aware HTTP client with retry, backoff and proxy rotation.

- Routes requests through the proxy pool (or direct when it is empty)
- Treats 429/503/52x and rate-limit headers as rate limiting, even on 2xx
- Retries rate limits and transient failures on a different proxy
- Fetches many URLs concurrently and pages through offset/limit collections
"""
import base64
import threading
import time
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests
from tenacity import Retrying, RetryCallState, retry_if_exception, stop_after_attempt

from market_dash.errors import NotFoundError, RateLimitError, UpstreamDecodeError, UpstreamError
from .manager import ProxyPoolManager
from .models import ProxyRecord

logger = logging.getLogger("proxy.fetch")

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0
MAX_RETRY_AFTER = 5.0
PAGE_DELAY = 0.1

RATE_LIMIT_STATUS_CODES = frozenset({429, 503, 520, 521, 522, 523, 524})
RATE_LIMIT_HEADERS = ("retry-after", "x-ratelimit-remaining", "x-rate-limit-remaining")

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

ProxySwitchCallback = Callable[[Optional[ProxyRecord], Optional[ProxyRecord]], None]


@dataclass
class FetchResult:
    """Decoded JSON body plus how it was obtained."""
    data: Any
    proxy: Optional[ProxyRecord]
    latency_ms: float
    retry_count: int
    status_code: int = 200


@dataclass
class _AttemptState:
    proxy: Optional[ProxyRecord]
    retry_delay: float = DEFAULT_RETRY_DELAY
    retry_count: int = 0


def is_rate_limited(response: requests.Response) -> bool:
    """True for rate-limit status codes or exhausted rate-limit headers."""
    if response.status_code in RATE_LIMIT_STATUS_CODES:
        return True

    for header in RATE_LIMIT_HEADERS:
        value = response.headers.get(header)
        if value is None:
            continue
        if value.strip() == "0" or (header == "retry-after" and value.strip()):
            return True

    return False


def parse_retry_after(response: requests.Response, default: float = DEFAULT_RETRY_DELAY) -> float:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    value = response.headers.get("retry-after")
    if not value:
        return default

    value = value.strip()
    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def build_url(base_url: str, path: str = "", params: Optional[Mapping[str, Any]] = None) -> str:
    """Join ``path`` onto ``base_url`` and set query parameters (overriding existing ones)."""
    url = base_url.rstrip("/") + path if path else base_url
    if not params:
        return url

    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        query[key] = str(value)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def default_extract_items(payload: Any) -> List[Any]:
    """Items of a page: a bare array or the array under data/markets/events."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for field_name in ("data", "markets", "events"):
            items = payload.get(field_name)
            if isinstance(items, list):
                return items
    raise UpstreamDecodeError(
        f"Expected a list page, got {type(payload).__name__}", body=payload
    )


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (RateLimitError, UpstreamDecodeError)):
        return True
    if isinstance(exc, UpstreamError):
        return exc.status_code is None or exc.status_code >= 500
    return isinstance(exc, requests.RequestException)


class ProxyFetchClient:
    """
    HTTP GET client that rotates through a ProxyPoolManager.

    Retry policy per attempt outcome:
    - Rate limited: mark the proxy rate-limited, wait min(Retry-After, cap),
      rotate, retry; exhaustion raises RateLimitError
    - 5xx / network / timeout / undecodable body: mark the proxy failed,
      wait ``retry_delay * 2**attempt``, rotate, retry; exhaustion re-raises
      the last error
    - Other 4xx: raised immediately (NotFoundError for 404)
    """

    def __init__(
        self,
        pool: Optional[ProxyPoolManager] = None,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_retry_after: float = MAX_RETRY_AFTER,
        page_delay: float = PAGE_DELAY,
        base_urls: Optional[Mapping[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            pool: Proxy pool; an empty pool means direct connections
            session: requests session used for every call
            timeout: Per-request timeout in seconds
            retries: Retries after the first attempt
            retry_delay: Base delay for exponential backoff, seconds
            max_retry_after: Cap on waits requested by Retry-After
            page_delay: Pause between pages in ``fetch_all_pages``
            base_urls: Upstream name -> base URL for ``fetch_upstream``
            sleep: Sleep function for backoff and pacing
        """
        self.pool = pool or ProxyPoolManager()
        self._session = session or requests.Session()
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.max_retry_after = max_retry_after
        self.page_delay = page_delay
        self.base_urls: Dict[str, str] = dict(base_urls or {})
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings,
        pool: Optional[ProxyPoolManager] = None,
        session: Optional[requests.Session] = None,
    ) -> "ProxyFetchClient":
        return cls(
            pool=pool or ProxyPoolManager.from_settings(settings),
            session=session,
            timeout=settings.fetch_timeout_seconds,
            retries=settings.fetch_retries,
            retry_delay=settings.fetch_retry_delay_seconds,
            max_retry_after=settings.fetch_max_retry_after_seconds,
            page_delay=settings.fetch_page_delay_seconds,
            base_urls={
                "gamma": settings.gamma_api_base_url,
                "clob": settings.clob_api_base_url,
                "data": settings.data_api_base_url,
            },
        )

    # ------------------------------------------------------------------
    # Single fetch
    # ------------------------------------------------------------------

    def fetch(
        self,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        use_proxy: bool = True,
        preferred_proxy: Optional[ProxyRecord] = None,
        on_proxy_switch: Optional[ProxySwitchCallback] = None,
    ) -> FetchResult:
        """
        GET ``url`` and decode its JSON body.

        Raises:
            RateLimitError: Still rate limited after every retry
            UpstreamError: Non-retryable 4xx, or 5xx after every retry
            requests.RequestException: Network failure after every retry
        """
        timeout = self.timeout if timeout is None else timeout
        retries = self.retries if retries is None else retries
        retry_delay = self.retry_delay if retry_delay is None else retry_delay

        first_proxy = preferred_proxy
        if first_proxy is None and use_proxy:
            first_proxy = self.pool.get_next_proxy()
        state = _AttemptState(proxy=first_proxy, retry_delay=retry_delay)

        def wait_for(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception()
            if isinstance(exc, RateLimitError):
                requested = retry_delay if exc.retry_after is None else exc.retry_after
                return min(requested, self.max_retry_after)
            return retry_delay * (2 ** (retry_state.attempt_number - 1))

        def rotate(retry_state: RetryCallState) -> None:
            logger.info(
                f"Retrying {url} in {retry_state.next_action.sleep:.2f}s "
                f"(attempt {retry_state.attempt_number + 1}/{retries + 1})"
            )
            old_proxy = state.proxy
            state.proxy = self.pool.get_next_proxy() if use_proxy else None
            state.retry_count += 1
            if on_proxy_switch:
                on_proxy_switch(old_proxy, state.proxy)

        retrying = Retrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_for,
            retry=retry_if_exception(_is_retryable),
            before_sleep=rotate,
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._attempt, url, params, headers, timeout, state)

    def fetch_upstream(
        self,
        api: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        **kwargs,
    ) -> FetchResult:
        """Fetch ``path`` on a named upstream (gamma, clob, data)."""
        if api not in self.base_urls:
            raise KeyError(f"Unknown upstream: {api}")
        return self.fetch(build_url(self.base_urls[api], path, params), **kwargs)

    def _attempt(
        self,
        url: str,
        params: Optional[Mapping[str, Any]],
        headers: Optional[Mapping[str, str]],
        timeout: float,
        state: _AttemptState,
    ) -> FetchResult:
        proxy = state.proxy
        via = f"via {proxy.key}" if proxy else "direct"
        started = time.perf_counter()

        try:
            response = self._session.get(
                url,
                params=params,
                headers=self._build_headers(proxy, headers),
                proxies=self._proxies_for(proxy),
                timeout=timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Fetch failed ({via}): {e}")
            if proxy:
                self.pool.mark_failure(proxy, is_rate_limit=False)
            raise

        latency_ms = (time.perf_counter() - started) * 1000

        if is_rate_limited(response):
            if proxy:
                self.pool.mark_failure(proxy, is_rate_limit=True)
            wait_seconds = parse_retry_after(response, state.retry_delay)
            logger.warning(f"Rate limited on {url} ({via}): HTTP {response.status_code}")
            raise RateLimitError(
                f"Rate limited on {url}: HTTP {response.status_code}",
                status_code=response.status_code,
                url=url,
                retry_after=wait_seconds,
            )

        if not response.ok:
            status = response.status_code
            message = f"HTTP {status}: {response.reason}"
            if 400 <= status < 500:
                error_cls = NotFoundError if status == 404 else UpstreamError
                raise error_cls(message, status_code=status, url=url, body=response.text)
            logger.error(f"Fetch failed ({via}): {message}")
            if proxy:
                self.pool.mark_failure(proxy, is_rate_limit=False)
            raise UpstreamError(message, status_code=status, url=url, body=response.text)

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from {url} ({via}): {e}")
            if proxy:
                self.pool.mark_failure(proxy, is_rate_limit=False)
            raise UpstreamDecodeError(
                f"Invalid JSON from {url}", status_code=response.status_code, url=url
            ) from e

        if proxy:
            self.pool.mark_success(proxy, latency_ms)

        return FetchResult(
            data=data,
            proxy=proxy,
            latency_ms=latency_ms,
            retry_count=state.retry_count,
            status_code=response.status_code,
        )

    def _build_headers(
        self,
        proxy: Optional[ProxyRecord],
        extra: Optional[Mapping[str, str]],
    ) -> Dict[str, str]:
        headers = dict(BROWSER_HEADERS)
        if proxy and proxy.auth:
            token = base64.b64encode(
                f"{proxy.auth.username}:{proxy.auth.password}".encode()
            ).decode()
            headers["Proxy-Authorization"] = f"Basic {token}"
        if extra:
            headers.update(extra)
        return headers

    def _proxies_for(self, proxy: Optional[ProxyRecord]) -> Optional[Dict[str, str]]:
        if proxy is None:
            return None
        proxy_url = self.pool.get_proxy_url(proxy)
        return {"http": proxy_url, "https": proxy_url}

    # ------------------------------------------------------------------
    # Batch and pagination
    # ------------------------------------------------------------------

    def fetch_batch(
        self,
        urls: Sequence[str],
        max_concurrent: int = 10,
        on_progress: Optional[Callable[[int, int, str, bool], None]] = None,
        **fetch_kwargs,
    ) -> Dict[str, Union[FetchResult, Exception]]:
        """
        Fetch many URLs concurrently, one proxy per request.

        URLs are processed in chunks of ``max_concurrent``. Failures are
        isolated: each URL maps to its FetchResult or to the exception it raised.

        Raises:
            ValueError: ``fetch_kwargs`` carries use_proxy or preferred_proxy
        """
        reserved = sorted({"use_proxy", "preferred_proxy"} & set(fetch_kwargs))
        if reserved:
            raise ValueError(f"fetch_batch assigns proxies itself; drop {', '.join(reserved)}")

        results: Dict[str, Union[FetchResult, Exception]] = {}
        if not urls:
            return results

        max_concurrent = max(1, max_concurrent)
        proxies = self.pool.get_proxies_for_batch(min(max_concurrent, len(urls)))
        total = len(urls)
        completed = 0
        lock = threading.Lock()

        def fetch_url(url: str, index: int) -> None:
            nonlocal completed
            proxy = proxies[index % len(proxies)] if proxies else None
            try:
                outcome: Union[FetchResult, Exception] = self.fetch(
                    url,
                    preferred_proxy=proxy,
                    use_proxy=bool(proxies),
                    **fetch_kwargs,
                )
                ok = True
            except Exception as e:
                logger.warning(f"Batch fetch failed for {url}: {e}")
                outcome = e
                ok = False

            with lock:
                results[url] = outcome
                completed += 1
                done = completed

            if on_progress:
                on_progress(done, total, url, ok)

        with ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="proxy-batch") as executor:
            for start in range(0, total, max_concurrent):
                chunk = urls[start:start + max_concurrent]
                futures = [
                    executor.submit(fetch_url, url, start + offset)
                    for offset, url in enumerate(chunk)
                ]
                for future in as_completed(futures):
                    future.result()

        return results

    def fetch_all_pages(
        self,
        base_url: str,
        page_size: int = 500,
        max_pages: int = 100,
        offset_param: str = "offset",
        limit_param: str = "limit",
        extract_items: Optional[Callable[[Any], List[Any]]] = None,
        get_next_offset: Optional[Callable[[Any, int, int], Optional[int]]] = None,
        on_page: Optional[Callable[[int, List[Any]], None]] = None,
        params: Optional[Mapping[str, Any]] = None,
        **fetch_kwargs,
    ) -> List[Any]:
        """
        Page through an offset/limit collection.

        Stops on an empty or short page, after ``max_pages``, when
        ``get_next_offset`` returns None or the same offset, or when a page
        fails (items collected so far are returned).
        """
        extract = extract_items or default_extract_items
        next_offset_for = get_next_offset or (lambda _data, offset, size: offset + size)

        all_items: List[Any] = []
        offset = 0
        page_num = 0

        while page_num < max_pages:
            url = build_url(base_url, params={**(params or {}), offset_param: offset, limit_param: page_size})

            try:
                result = self.fetch(url, **fetch_kwargs)
                items = extract(result.data)
            except (UpstreamError, requests.RequestException) as e:
                logger.error(f"Failed to fetch page {page_num + 1} at offset {offset}: {e}")
                break

            if not items:
                logger.info(f"Pagination complete: no more items at offset {offset}")
                break

            all_items.extend(items)
            if on_page:
                on_page(page_num, items)
            logger.info(f"Page {page_num + 1}: fetched {len(items)} items (total: {len(all_items)})")

            if len(items) < page_size:
                break

            next_offset = next_offset_for(result.data, offset, page_size)
            if next_offset is None or next_offset == offset:
                break

            offset = next_offset
            page_num += 1
            self._sleep(self.page_delay)

        return all_items
