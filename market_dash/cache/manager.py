"""
Stale-while-revalidate accessor over an EntryCache and a RequestCoalescer.
"""
import threading
import time
import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from .core import CacheMeta, CacheSource, DataCategory, utc_timestamp
from .coalescer import RequestCoalescer
from .store import EntryCache

logger = logging.getLogger("cache.manager")

MAX_TIMING_LOGS = 1000
SLOW_OPERATION_SECONDS = 0.5


@dataclass
class TimingLog:
    operation: str
    duration: float
    cache_hit: bool
    timestamp: float


class TimingRecorder:
    """Bounded log of cache access durations."""

    def __init__(
        self,
        max_logs: int = MAX_TIMING_LOGS,
        slow_threshold: float = SLOW_OPERATION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._logs: Deque[TimingLog] = deque(maxlen=max_logs)
        self._lock = threading.Lock()
        self.slow_threshold = slow_threshold

    def record(self, operation: str, duration: float, cache_hit: bool) -> None:
        with self._lock:
            self._logs.append(TimingLog(operation, duration, cache_hit, self._clock()))

        if duration > self.slow_threshold:
            logger.warning(
                f"Slow operation: {operation} took {duration * 1000:.0f}ms (cache: {cache_hit})"
            )
        else:
            logger.debug(f"{operation}: {duration * 1000:.0f}ms (cache: {cache_hit})")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            logs = list(self._logs)

        if not logs:
            return {"avg_duration": 0.0, "cache_hit_rate": 0.0, "slow_operations": 0, "recent_logs": []}

        hits = sum(1 for log in logs if log.cache_hit)
        return {
            "avg_duration": sum(log.duration for log in logs) / len(logs),
            "cache_hit_rate": hits / len(logs) * 100,
            "slow_operations": sum(1 for log in logs if log.duration > self.slow_threshold),
            "recent_logs": [vars(log) for log in logs[-20:]],
        }


class RevalidatingCache:
    """
    Stale-while-revalidate access to one EntryCache.

    Per key:
    - Miss / expired: fetch through the coalescer, store, return
    - Fresh: return the cached value, no network
    - Stale: return the cached value immediately and start one background
      revalidation (none if one is already running for the key). A failed
      revalidation is logged and the stale entry is kept.

    Background work runs on a thread pool and is tracked, so ``drain``
    can wait for it and ``shutdown`` can stop cleanly.
    """

    def __init__(
        self,
        store: EntryCache,
        coalescer: Optional[RequestCoalescer] = None,
        category: Optional[DataCategory] = None,
        max_revalidation_workers: int = 4,
        timing: Optional[TimingRecorder] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: Entry store holding the values
            coalescer: Deduplicator shared by foreground and background fetches
            category: Data category reported in cache metadata
            max_revalidation_workers: Thread pool size for background revalidation
            timing: Recorder for access durations
            clock: Source of epoch seconds (for metadata timestamps)
        """
        self.store = store
        self.category = category
        self._coalescer = coalescer or RequestCoalescer()
        self._timing = timing or TimingRecorder(clock=clock)
        self._clock = clock

        self._revalidation_pool = ThreadPoolExecutor(
            max_workers=max_revalidation_workers,
            thread_name_prefix="cache-revalidate",
        )
        self._revalidating: Set[str] = set()
        self._revalidating_lock = threading.Lock()
        self._tasks: Set[Future] = set()
        self._tasks_lock = threading.Lock()

        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "revalidations": 0,
            "failed_revalidations": 0,
        }
        self._stats_lock = threading.Lock()

    def access(
        self,
        key: str,
        fetcher: Callable[[], Any],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the value for ``key`` following stale-while-revalidate rules."""
        data, _ = self.get(key, fetcher, ttl)
        return data

    def get(
        self,
        key: str,
        fetcher: Callable[[], Any],
        ttl: Optional[float] = None,
        force_refresh: bool = False,
    ) -> Tuple[Any, CacheMeta]:
        """
        Get data from cache or fetch from upstream.

        Args:
            key: Cache key, also used as the dedup key
            fetcher: Zero-argument function returning fresh data
            ttl: Seconds until the stored value turns stale
            force_refresh: Bypass the cached value

        Returns:
            (data, cache_meta) tuple
        """
        started = time.perf_counter()
        operation = key.split(":")[0]

        if force_refresh:
            logger.info(f"FORCE REFRESH: {key}")
            data = self._coalescer.dedupe(key, lambda: self._load(key, fetcher, ttl))
            self._bump("misses")
            self._timing.record(f"fetch:{operation}", time.perf_counter() - started, False)
            return data, self._make_meta(CacheSource.UPSTREAM, ttl, 0.0)

        cached = self.store.get(key)

        if cached is None:
            logger.info(f"CACHE MISS: {key}")
            data = self._coalescer.dedupe(key, lambda: self._load(key, fetcher, ttl))
            self._bump("misses")
            self._timing.record(f"fetch:{operation}", time.perf_counter() - started, False)
            return data, self._make_meta(CacheSource.UPSTREAM, ttl, 0.0)

        if not cached.is_stale:
            logger.debug(f"CACHE HIT (fresh): {key} [age={cached.age_seconds:.1f}s]")
            self._bump("hits_fresh")
            self._timing.record(f"cache:{operation}", time.perf_counter() - started, True)
            return cached.value, self._make_meta(CacheSource.FRESH, ttl, cached.age_seconds)

        logger.info(f"CACHE HIT (stale, revalidating): {key} [age={cached.age_seconds:.1f}s]")
        self._trigger_background_revalidate(key, fetcher, ttl)
        self._bump("hits_stale")
        self._timing.record(f"cache:{operation}", time.perf_counter() - started, True)
        return cached.value, self._make_meta(CacheSource.STALE, ttl, cached.age_seconds)

    def prefetch(
        self,
        key: str,
        fetcher: Callable[[], Any],
        ttl: Optional[float] = None,
    ) -> Optional[Future]:
        """Warm ``key`` in the background unless it already holds a fresh value."""
        cached = self.store.get(key)
        if cached is not None and not cached.is_stale:
            return None
        return self._trigger_background_revalidate(key, fetcher, ttl)

    def _load(self, key: str, fetcher: Callable[[], Any], ttl: Optional[float]) -> Any:
        data = fetcher()
        self.store.set(key, data, ttl)
        return data

    def _trigger_background_revalidate(
        self,
        key: str,
        fetcher: Callable[[], Any],
        ttl: Optional[float],
    ) -> Optional[Future]:
        """Trigger background refresh without blocking."""
        with self._revalidating_lock:
            if key in self._revalidating:
                logger.debug(f"Already revalidating: {key}")
                return None
            self._revalidating.add(key)

        def do_revalidate():
            try:
                logger.debug(f"Background revalidation started: {key}")
                self._coalescer.dedupe(key, lambda: self._load(key, fetcher, ttl))
                self._bump("revalidations")
                logger.debug(f"Background revalidation complete: {key}")
            except Exception as e:
                self._bump("failed_revalidations")
                logger.warning(f"Background revalidation failed: {key} - {e}")
            finally:
                with self._revalidating_lock:
                    self._revalidating.discard(key)

        future = self._revalidation_pool.submit(do_revalidate)
        with self._tasks_lock:
            self._tasks.add(future)
        future.add_done_callback(self._task_done)
        return future

    def _task_done(self, future: Future) -> None:
        with self._tasks_lock:
            self._tasks.discard(future)

    def is_revalidating(self, key: str) -> bool:
        with self._revalidating_lock:
            return key in self._revalidating

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every pending background task.

        Returns:
            True if all tasks finished within ``timeout``
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._tasks_lock:
                pending: List[Future] = list(self._tasks)
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait_futures(pending, timeout=remaining)

    def shutdown(self, wait: bool = True) -> None:
        """Drain outstanding revalidations and stop the pool."""
        if wait:
            self.drain()
        self._revalidation_pool.shutdown(wait=wait)

    def _bump(self, counter: str) -> None:
        with self._stats_lock:
            self._stats[counter] += 1

    def _make_meta(
        self,
        source: CacheSource,
        ttl: Optional[float],
        age: float,
    ) -> CacheMeta:
        """Create cache metadata for response."""
        return CacheMeta(
            last_updated=utc_timestamp(self._clock() - age),
            cache_source=source.value,
            category=self.category.value if self.category else None,
            ttl_seconds=self.store.default_ttl if ttl is None else ttl,
            age_seconds=age,
        )

    def invalidate(self, key: str) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if entry was found and removed
        """
        removed = self.store.delete(key)
        if removed:
            logger.info(f"Invalidated cache: {key}")
        return removed

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Invalidate all cache entries whose key contains ``pattern``.

        Returns:
            Number of entries invalidated
        """
        to_delete = [k for k in self.store.keys() if pattern in k]
        for key in to_delete:
            self.store.delete(key)
        if to_delete:
            logger.info(f"Invalidated {len(to_delete)} entries matching '{pattern}'")
        return len(to_delete)

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        count = self.store.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)

        total_hits = stats["hits_fresh"] + stats["hits_stale"]
        total_requests = total_hits + stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        with self._revalidating_lock:
            revalidating_count = len(self._revalidating)

        return {
            "entries": self.store.size(),
            **stats,
            "hit_rate_percent": round(hit_rate, 1),
            "coalescer": self._coalescer.get_stats(),
            "revalidating_count": revalidating_count,
            "timing": self._timing.get_stats(),
        }
