"""Token-bucket admission control keyed by caller identity.

Bucket state lives behind :class:`BucketStore` so the admission algorithm does
not care where the counters are kept. :class:`InMemoryBucketStore` is the
default and is only correct for a single process; a horizontally scaled
deployment has to provide a store whose ``update`` is atomic across instances.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol, TypeVar

R = TypeVar("R")

DEFAULT_CAPACITY = 20
DEFAULT_REFILL_PER_MS = 60_000
UNKNOWN_CLIENT = "unknown"


def monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class TokenBucket:
    tokens: float
    capacity: int
    refill_per_ms: int
    last_refill_at: float
    last_seen_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int


class BucketStore(Protocol):
    def update(self, key: str, fn: Callable[[TokenBucket | None], tuple[TokenBucket, R]]) -> R:
        """Atomically read the bucket for ``key``, store the bucket ``fn`` returns, return its result."""
        ...


class InMemoryBucketStore:
    def __init__(
        self,
        *,
        idle_ttl_ms: float = 60 * 60 * 1000,
        sweep_every: int = 500,
        max_keys: int = 10_000,
    ) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[str, TokenBucket] = {}
        self._idle_ttl_ms = idle_ttl_ms
        self._sweep_every = max(sweep_every, 1)
        self._max_keys = max(max_keys, 1)
        self._updates = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def get(self, key: str) -> TokenBucket | None:
        with self._lock:
            return self._buckets.get(key)

    def update(self, key: str, fn: Callable[[TokenBucket | None], tuple[TokenBucket, R]]) -> R:
        with self._lock:
            bucket, result = fn(self._buckets.get(key))
            self._buckets[key] = bucket
            self._updates += 1
            if self._updates % self._sweep_every == 0:
                self._sweep(bucket.last_seen_at)
            if len(self._buckets) > self._max_keys:
                self._evict_oldest(keep=key)
            return result

    def sweep(self, now_ms: float) -> int:
        with self._lock:
            return self._sweep(now_ms)

    def _sweep(self, now_ms: float) -> int:
        stale = [
            key
            for key, bucket in self._buckets.items()
            if now_ms - bucket.last_seen_at > self._idle_ttl_ms
        ]
        for key in stale:
            del self._buckets[key]
        return len(stale)

    def _evict_oldest(self, *, keep: str) -> None:
        overflow = len(self._buckets) - self._max_keys
        candidates = sorted(
            (bucket.last_seen_at, key) for key, bucket in self._buckets.items() if key != keep
        )
        for _, key in candidates[:overflow]:
            del self._buckets[key]


class RateLimiter:
    def __init__(
        self,
        store: BucketStore | None = None,
        *,
        capacity: int = DEFAULT_CAPACITY,
        refill_per_ms: int = DEFAULT_REFILL_PER_MS,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self.store = store if store is not None else InMemoryBucketStore()
        self.capacity = capacity
        self.refill_per_ms = refill_per_ms
        self._clock = clock

    def check(
        self,
        key: str,
        capacity: int | None = None,
        refill_per_ms: int | None = None,
    ) -> RateLimitDecision:
        resolved_capacity = max(capacity if capacity is not None else self.capacity, 0)
        resolved_refill = max(refill_per_ms if refill_per_ms is not None else self.refill_per_ms, 1)
        now = self._clock()

        def consume(bucket: TokenBucket | None) -> tuple[TokenBucket, RateLimitDecision]:
            if bucket is None:
                bucket = TokenBucket(
                    tokens=float(resolved_capacity),
                    capacity=resolved_capacity,
                    refill_per_ms=resolved_refill,
                    last_refill_at=now,
                    last_seen_at=now,
                )
            bucket.capacity = resolved_capacity
            bucket.refill_per_ms = resolved_refill
            bucket.tokens = min(bucket.tokens, float(resolved_capacity))
            bucket.last_seen_at = now

            elapsed = now - bucket.last_refill_at
            if elapsed > 0:
                intervals = int(elapsed // resolved_refill)
                if intervals > 0:
                    bucket.tokens = min(float(resolved_capacity), bucket.tokens + intervals)
                    bucket.last_refill_at += intervals * resolved_refill
            # A full bucket cannot bank refill progress.
            if bucket.tokens >= resolved_capacity:
                bucket.last_refill_at = now

            allowed = bucket.tokens >= 1
            if allowed:
                bucket.tokens -= 1
            return bucket, RateLimitDecision(allowed=allowed, remaining=int(bucket.tokens))

        return self.store.update(key, consume)


def get_client_ip(headers: Mapping[str, str]) -> str:
    forwarded = headers.get("x-forwarded-for") or headers.get("x-real-ip")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return UNKNOWN_CLIENT
