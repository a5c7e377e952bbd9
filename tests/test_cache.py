import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone

import pytest

from eventmet.cache import ResultCache, fingerprint, normalize_filters


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingMetrics:
    def __init__(self):
        self.lookups = Counter()
        self._lock = threading.Lock()

    def record_cache_lookup(self, kind, outcome):
        with self._lock:
            self.lookups[outcome] += 1


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 15, tzinfo=timezone.utc)


def test_fingerprint_ignores_filter_order():
    a = fingerprint("ai_request", "day", START, END, {"service": "openai", "user_id": "u1"})
    b = fingerprint("ai_request", "day", START, END, [("user_id", "u1"), ("service", "openai")])

    assert a == b
    assert a != fingerprint("ai_request", "hour", START, END, {"service": "openai", "user_id": "u1"})
    assert a != fingerprint("sales", "day", START, END, {"service": "openai", "user_id": "u1"})
    assert fingerprint("ai_request", "day", START, END) != fingerprint("ai_request", "total", START, END)


def test_normalize_filters():
    assert normalize_filters(None) == ()
    assert normalize_filters({"b": "2", "a": "1"}) == (("a", "1"), ("b", "2"))


def test_hit_within_ttl_and_recompute_after_expiry():
    clock = FakeClock()
    metrics = RecordingMetrics()
    cache = ResultCache(default_ttl=300, clock=clock, metrics=metrics)
    calls = []

    def compute():
        calls.append(1)
        return len(calls)

    assert cache.get_or_compute("k", "ai_request", compute) == 1
    clock.advance(299)
    assert cache.get_or_compute("k", "ai_request", compute) == 1
    clock.advance(1)
    assert cache.get_or_compute("k", "ai_request", compute) == 2

    assert metrics.lookups == Counter({"miss": 1, "hit": 1, "expired": 1})


def test_bump_generation_makes_entries_stale_for_that_kind_only():
    cache = ResultCache(clock=FakeClock())
    cache.get_or_compute("ai", "ai_request", lambda: "ai-v1")
    cache.get_or_compute("sales", "sales", lambda: "sales-v1")

    assert cache.bump_generation("ai_request") == 1

    assert cache.get_or_compute("ai", "ai_request", lambda: "ai-v2") == "ai-v2"
    assert cache.get_or_compute("sales", "sales", lambda: "sales-v2") == "sales-v1"
    assert cache.generation("ai_request") == 1
    assert cache.generation("sales") == 0


def test_result_computed_before_a_write_is_not_served_after_it():
    cache = ResultCache(clock=FakeClock())

    def compute_while_write_lands():
        cache.bump_generation("ai_request")
        return "pre-write"

    assert cache.get_or_compute("k", "ai_request", compute_while_write_lands) == "pre-write"
    assert cache.get_or_compute("k", "ai_request", lambda: "post-write") == "post-write"


def test_concurrent_misses_compute_once():
    metrics = RecordingMetrics()
    cache = ResultCache(metrics=metrics)
    release = threading.Event()
    calls = []

    def slow_compute():
        calls.append(1)
        release.wait(5)
        return {"count": 42}

    with ThreadPoolExecutor(max_workers=10) as pool:
        futures = [pool.submit(cache.get_or_compute, "k", "ai_request", slow_compute) for _ in range(10)]
        wait_until(lambda: metrics.lookups["coalesced"] == 9)
        release.set()
        results = [future.result(timeout=5) for future in futures]

    assert len(calls) == 1
    assert all(result is results[0] for result in results)
    assert metrics.lookups == Counter({"miss": 1, "coalesced": 9})
    assert len(cache) == 1


def test_failed_compute_propagates_to_waiters_and_is_not_cached():
    metrics = RecordingMetrics()
    cache = ResultCache(metrics=metrics)
    started = threading.Event()
    release = threading.Event()

    def failing():
        started.set()
        release.wait(5)
        raise RuntimeError("database unavailable")

    with ThreadPoolExecutor(max_workers=2) as pool:
        leader = pool.submit(cache.get_or_compute, "k", "sales", failing)
        assert started.wait(5)
        waiter = pool.submit(cache.get_or_compute, "k", "sales", lambda: "unused")
        wait_until(lambda: metrics.lookups["coalesced"] == 1)
        release.set()

        with pytest.raises(RuntimeError):
            leader.result(timeout=5)
        with pytest.raises(RuntimeError):
            waiter.result(timeout=5)

    assert len(cache) == 0
    assert cache.get_or_compute("k", "sales", lambda: "recovered") == "recovered"


def test_waiter_timeout_does_not_cancel_the_computation():
    cache = ResultCache()
    started = threading.Event()
    release = threading.Event()

    def slow():
        started.set()
        release.wait(5)
        return "done"

    with ThreadPoolExecutor(max_workers=1) as pool:
        leader = pool.submit(cache.get_or_compute, "k", "performance", slow)
        assert started.wait(5)

        with pytest.raises(FutureTimeout):
            cache.get_or_compute("k", "performance", lambda: "unused", timeout=0.05)

        release.set()
        assert leader.result(timeout=5) == "done"

    assert cache.get_or_compute("k", "performance", lambda: "unused") == "done"


def test_purge_expired_and_invalidate_all():
    clock = FakeClock()
    cache = ResultCache(default_ttl=10, clock=clock)
    cache.get_or_compute("short", "ai_request", lambda: 1)
    cache.get_or_compute("long", "ai_request", lambda: 2, ttl=60)

    clock.advance(30)

    assert cache.purge_expired() == 1
    assert len(cache) == 1

    cache.invalidate_all()

    assert len(cache) == 0
    assert cache.generation("engagement") == 1


def test_expired_entries_are_swept_on_a_later_miss():
    clock = FakeClock()
    cache = ResultCache(default_ttl=10, clock=clock)
    for name in ("k1", "k2", "k3", "k4", "k5"):
        cache.get_or_compute(name, "ai_request", lambda: 1)
    assert len(cache) == 5

    clock.advance(30)
    cache.get_or_compute("fresh", "ai_request", lambda: 2)

    assert len(cache) == 1


def test_stale_generation_entries_are_swept():
    clock = FakeClock()
    cache = ResultCache(default_ttl=300, clock=clock, sweep_interval=1)
    cache.get_or_compute("ai", "ai_request", lambda: 1)
    cache.get_or_compute("sales", "sales", lambda: 1)
    cache.bump_generation("ai_request")

    clock.advance(2)
    cache.get_or_compute("other", "sales", lambda: 2)

    assert len(cache) == 2
    assert cache.get_or_compute("sales", "sales", lambda: 3) == 1
