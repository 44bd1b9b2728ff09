"""
Simple in-process rate limiting utilities.

The API applies one token bucket per client address so a misbehaving app build
cannot flood report submission or payment initiation.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


@dataclass
class TokenBucketRateLimiter:
    """Token bucket limiter for N events per window (best-effort, thread-safe)."""

    max_events: float
    window_seconds: float = 60.0
    burst: float | None = None

    def __post_init__(self) -> None:
        if float(self.max_events) <= 0:
            raise ValueError("max_events must be > 0")
        if float(self.window_seconds) <= 0:
            raise ValueError("window_seconds must be > 0")
        self._capacity = float(self.burst) if self.burst is not None else float(self.max_events)
        self._tokens = self._capacity
        self._refill_per_sec = float(self.max_events) / float(self.window_seconds)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last
        if elapsed <= 0:
            return
        self._tokens = min(self._capacity, self._tokens + elapsed * self._refill_per_sec)
        self._last = now

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take `tokens` if available; never blocks."""
        need = float(tokens)
        if need <= 0:
            return True
        with self._lock:
            self._refill()
            if self._tokens >= need:
                self._tokens -= need
                return True
            return False

    def is_full(self) -> bool:
        """True once the bucket has refilled to capacity (its key can be forgotten)."""
        with self._lock:
            self._refill()
            return self._tokens >= self._capacity


@dataclass
class KeyedRateLimiter:
    """One `TokenBucketRateLimiter` per key (e.g. client IP), at most `max_keys` of them."""

    max_events: float
    window_seconds: float = 60.0
    max_keys: int = 10_000
    _buckets: dict[str, TokenBucketRateLimiter] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def __post_init__(self) -> None:
        if int(self.max_keys) <= 0:
            raise ValueError("max_keys must be > 0")

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict(self) -> None:
        for key in [k for k, b in self._buckets.items() if b.is_full()]:
            del self._buckets[key]
        # Still too many active keys: drop the oldest.
        while len(self._buckets) >= self.max_keys:
            del self._buckets[next(iter(self._buckets))]

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self.max_keys:
                    self._evict()
                bucket = TokenBucketRateLimiter(max_events=self.max_events, window_seconds=self.window_seconds)
                self._buckets[key] = bucket
        return bucket.try_acquire()
