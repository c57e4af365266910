from __future__ import annotations

import random
import threading

import pytest
from ingestor.rate_limit import InMemoryBucketStore, RateLimiter, get_client_ip

pytestmark = pytest.mark.unit


def test_four_immediate_requests_exhaust_capacity_of_three(fake_clock) -> None:
    limiter = RateLimiter(capacity=3, refill_per_ms=60_000, clock=fake_clock)

    decisions = [limiter.check("ingest:1.2.3.4") for _ in range(4)]

    assert [decision.allowed for decision in decisions] == [True, True, True, False]
    assert [decision.remaining for decision in decisions] == [2, 1, 0, 0]


def test_one_refill_interval_admits_exactly_one_more_request(fake_clock) -> None:
    limiter = RateLimiter(capacity=3, refill_per_ms=60_000, clock=fake_clock)
    for _ in range(4):
        limiter.check("ingest:1.2.3.4")

    fake_clock.advance(60_000)

    assert limiter.check("ingest:1.2.3.4").allowed is True
    assert limiter.check("ingest:1.2.3.4").allowed is False


def test_partial_interval_progress_is_not_lost(fake_clock) -> None:
    limiter = RateLimiter(capacity=2, refill_per_ms=1_000, clock=fake_clock)
    limiter.check("k")
    limiter.check("k")

    fake_clock.advance(1_500)
    assert limiter.check("k").allowed is True
    fake_clock.advance(500)
    assert limiter.check("k").allowed is True
    assert limiter.check("k").allowed is False


def test_refill_is_capped_at_capacity(fake_clock) -> None:
    limiter = RateLimiter(capacity=3, refill_per_ms=1_000, clock=fake_clock)
    limiter.check("k")

    fake_clock.advance(1_000_000)
    decision = limiter.check("k")

    assert decision.remaining == 2
    bucket = limiter.store.get("k")
    assert bucket is not None
    assert bucket.tokens <= bucket.capacity


def test_tokens_stay_within_bounds_for_random_sequences(fake_clock) -> None:
    rng = random.Random(7)
    limiter = RateLimiter(capacity=5, refill_per_ms=250, clock=fake_clock)

    for _ in range(2_000):
        fake_clock.advance(rng.choice([0, 0, 0, 10, 100, 250, 900, 5_000]))
        limiter.check("k")
        bucket = limiter.store.get("k")
        assert bucket is not None
        assert 0 <= bucket.tokens <= bucket.capacity


def test_keys_are_independent(fake_clock) -> None:
    limiter = RateLimiter(capacity=1, refill_per_ms=60_000, clock=fake_clock)

    assert limiter.check("ingest:a").allowed is True
    assert limiter.check("ingest:a").allowed is False
    assert limiter.check("ingest:b").allowed is True


def test_per_call_overrides_take_precedence_over_defaults(fake_clock) -> None:
    limiter = RateLimiter(capacity=20, refill_per_ms=60_000, clock=fake_clock)

    decisions = [limiter.check("k", capacity=2, refill_per_ms=10) for _ in range(3)]

    assert [decision.allowed for decision in decisions] == [True, True, False]
    fake_clock.advance(10)
    assert limiter.check("k", capacity=2, refill_per_ms=10).allowed is True


def test_shrinking_capacity_clamps_existing_tokens(fake_clock) -> None:
    limiter = RateLimiter(capacity=10, refill_per_ms=60_000, clock=fake_clock)
    limiter.check("k")

    decision = limiter.check("k", capacity=2)

    assert decision.allowed is True
    assert decision.remaining == 1


def test_concurrent_checks_never_over_admit() -> None:
    limiter = RateLimiter(capacity=50, refill_per_ms=10**9)
    allowed: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(20):
            decision = limiter.check("shared")
            with lock:
                allowed.append(decision.allowed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(allowed) == 50
    assert len(allowed) == 160


def test_idle_buckets_are_swept(fake_clock) -> None:
    store = InMemoryBucketStore(idle_ttl_ms=1_000, sweep_every=1_000)
    limiter = RateLimiter(store, capacity=3, refill_per_ms=100, clock=fake_clock)
    limiter.check("old")
    fake_clock.advance(5_000)
    limiter.check("fresh")

    removed = store.sweep(fake_clock())

    assert removed == 1
    assert store.get("old") is None
    assert store.get("fresh") is not None


def test_store_evicts_least_recently_seen_keys_beyond_bound(fake_clock) -> None:
    store = InMemoryBucketStore(max_keys=2)
    limiter = RateLimiter(store, capacity=3, refill_per_ms=100, clock=fake_clock)
    for key in ("a", "b", "c"):
        limiter.check(key)
        fake_clock.advance(10)

    assert len(store) == 2
    assert store.get("a") is None


def test_get_client_ip_prefers_first_forwarded_entry() -> None:
    assert get_client_ip({"x-forwarded-for": " 10.0.0.1 , 10.0.0.2"}) == "10.0.0.1"
    assert get_client_ip({"x-real-ip": "10.0.0.9"}) == "10.0.0.9"
    assert get_client_ip({}) == "unknown"
