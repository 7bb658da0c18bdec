"""
Request coalescer tests: one fetch per key for concurrent callers.
"""
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

import pytest

from config.settings import Settings
from market_dash.cache import RequestCoalescer


def test_single_call_returns_fetcher_result():
    coalescer = RequestCoalescer()
    assert coalescer.dedupe("k", lambda: 42) == 42
    assert coalescer.active_requests == 0


def test_concurrent_callers_share_one_fetch(wait_until):
    """N concurrent callers for one key run the fetcher exactly once"""
    coalescer = RequestCoalescer(timeout=5)
    release = threading.Event()
    calls = []

    def fetcher():
        calls.append(1)
        release.wait(5)
        return {"id": "m1"}

    with ThreadPoolExecutor(max_workers=5) as pool:
        futures = [pool.submit(coalescer.dedupe, "markets:detail:m1", fetcher) for _ in range(5)]
        assert wait_until(lambda: coalescer.waiter_count("markets:detail:m1") == 4)
        release.set()
        results = [f.result(timeout=5) for f in futures]

    assert len(calls) == 1
    assert all(result is results[0] for result in results)
    assert not coalescer.is_in_flight("markets:detail:m1")


def test_error_reaches_every_waiter_and_is_not_replayed(wait_until):
    """All callers see the same error; the next call fetches again"""
    coalescer = RequestCoalescer(timeout=5)
    release = threading.Event()
    calls = []

    def failing():
        calls.append(1)
        release.wait(5)
        raise RuntimeError("upstream down")

    with ThreadPoolExecutor(max_workers=3) as pool:
        futures = [pool.submit(coalescer.dedupe, "k", failing) for _ in range(3)]
        assert wait_until(lambda: coalescer.waiter_count("k") == 2)
        release.set()
        errors = [f.exception(timeout=5) for f in futures]

    assert len(calls) == 1
    assert all(isinstance(e, RuntimeError) for e in errors)
    assert coalescer.dedupe("k", lambda: "recovered") == "recovered"


def test_different_keys_do_not_coalesce():
    coalescer = RequestCoalescer()
    assert coalescer.dedupe("a", lambda: 1) == 1
    assert coalescer.dedupe("b", lambda: 2) == 2


def test_waiter_times_out(wait_until):
    """A waiter gives up after the timeout while the fetch keeps running"""
    coalescer = RequestCoalescer(timeout=0.05)
    release = threading.Event()

    with ThreadPoolExecutor(max_workers=1) as pool:
        initiator = pool.submit(coalescer.dedupe, "slow", lambda: release.wait(5) and "done")
        assert wait_until(lambda: coalescer.is_in_flight("slow"))

        with pytest.raises(TimeoutError):
            coalescer.dedupe("slow", lambda: "never called")

        release.set()
        assert initiator.result(timeout=5) == "done"


def test_waiter_blocks_until_slow_fetch_settles(wait_until):
    """Without a timeout a joining caller gets the owner's value however long it takes"""
    coalescer = RequestCoalescer()
    release = threading.Event()
    value = {"id": "m1"}

    with ThreadPoolExecutor(max_workers=2) as pool:
        owner = pool.submit(coalescer.dedupe, "slow", lambda: release.wait(5) and value)
        assert wait_until(lambda: coalescer.is_in_flight("slow"))
        joiner = pool.submit(coalescer.dedupe, "slow", lambda: "never called")
        assert wait_until(lambda: coalescer.waiter_count("slow") == 1)

        with pytest.raises(FutureTimeout):
            joiner.result(timeout=0.2)

        release.set()
        assert owner.result(timeout=5) is value
        assert joiner.result(timeout=5) is value


def test_joining_waits_by_default():
    assert Settings(_env_file=None).cache_coalesce_timeout is None


def test_base_exception_reaches_waiters(wait_until):
    """An interrupt in the owner's fetch is raised to joined callers, not turned into None"""
    coalescer = RequestCoalescer()
    release = threading.Event()

    def interrupted():
        release.wait(5)
        raise SystemExit("abort")

    with ThreadPoolExecutor(max_workers=2) as pool:
        owner = pool.submit(coalescer.dedupe, "k", interrupted)
        assert wait_until(lambda: coalescer.is_in_flight("k"))
        joiner = pool.submit(coalescer.dedupe, "k", lambda: "never called")
        assert wait_until(lambda: coalescer.waiter_count("k") == 1)
        release.set()

        assert isinstance(owner.exception(timeout=5), SystemExit)
        assert isinstance(joiner.exception(timeout=5), SystemExit)

    assert not coalescer.is_in_flight("k")


def test_stats_list_active_keys(wait_until):
    coalescer = RequestCoalescer()
    release = threading.Event()

    with ThreadPoolExecutor(max_workers=1) as pool:
        pool.submit(coalescer.dedupe, "orderbook:t1", lambda: release.wait(5))
        assert wait_until(lambda: coalescer.active_requests == 1)
        assert coalescer.get_stats() == {"active_requests": 1, "active_keys": ["orderbook:t1"]}
        release.set()
