"""
In-flight ledger: concurrent callers for one key share a single fetch.

The ledger entry for a key lives exactly as long as its fetch. It is removed
when the fetch settles either way, so an error is delivered to everyone who
was waiting and then forgotten; the next caller starts over.
"""
import threading
import time
import logging
from typing import Dict, Optional, Callable, Any, Tuple
from dataclasses import dataclass, field

logger = logging.getLogger("cache.coalescer")


@dataclass
class PendingFetch:
    """Shared outcome of one upstream fetch."""
    done: threading.Event = field(default_factory=threading.Event)
    value: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.time)
    waiters: int = 0

    def outcome(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class RequestCoalescer:
    """
    Request deduplicator keyed by cache key.

    Usage:
        coalescer = RequestCoalescer()
        market = coalescer.dedupe(
            "markets:detail:123",
            lambda: gamma.get_market("123"),
        )
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Max seconds a joining caller blocks on someone else's
                fetch; None waits for the outcome however long it takes
        """
        self._in_flight: Dict[str, PendingFetch] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def dedupe(self, key: str, fetcher: Callable[[], Any]) -> Any:
        """
        Run ``fetcher`` unless a fetch for ``key`` is already in flight, in
        which case wait for that one instead.

        Raises:
            TimeoutError: A joining caller waited longer than the timeout
            Exception: Whatever the fetcher raised, re-raised to every caller
        """
        pending, owner = self._join(key)
        if owner:
            self._run(key, pending, fetcher)
            return pending.outcome()

        if not pending.done.wait(timeout=self._timeout):
            logger.error(f"Timeout waiting for coalesced request: {key}")
            raise TimeoutError(f"Request for {key} timed out after {self._timeout}s")
        return pending.outcome()

    def _join(self, key: str) -> Tuple[PendingFetch, bool]:
        with self._lock:
            pending = self._in_flight.get(key)
            if pending is not None:
                pending.waiters += 1
                logger.debug(f"Coalescing request for {key} (waiters: {pending.waiters})")
                return pending, False
            pending = self._in_flight[key] = PendingFetch()
        logger.debug(f"Initiating fetch for {key}")
        return pending, True

    def _run(self, key: str, pending: PendingFetch, fetcher: Callable[[], Any]) -> None:
        try:
            pending.value = fetcher()
        except BaseException as e:
            pending.error = e
            logger.warning(f"Fetch failed for {key}: {e}")
        finally:
            # unregistered before any waiter wakes
            with self._lock:
                if self._in_flight.get(key) is pending:
                    del self._in_flight[key]
            pending.done.set()

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def waiter_count(self, key: str) -> int:
        """Callers currently blocked on the in-flight fetch for ``key``."""
        with self._lock:
            pending = self._in_flight.get(key)
            return pending.waiters if pending else 0

    @property
    def active_requests(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
            }
