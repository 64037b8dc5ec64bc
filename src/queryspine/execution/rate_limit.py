"""Token buckets for per-caller query throughput.

Dashboards refresh in bursts. A caller may burst up to the bucket capacity
and is then held to the refill rate, so one busy dashboard cannot
monopolize the engine.

::

    TokenBucket    ─ steady refill rate + burst capacity, starts full
    CallerBuckets  ─ one TokenBucket per caller, created on first use

``take`` is a single atomic check-and-spend that answers with the wait
time on denial, so a denial and its retry-after hint always agree. Time
comes from an injectable monotonic clock.

Example::

    buckets = CallerBuckets(rate=20 / 60, capacity=20)
    wait = buckets.take("analyst-1")
    if wait:
        raise Denied(caller="analyst-1", retry_after=wait)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

Clock = Callable[[], float]


class TokenBucket:
    """Refills ``rate`` tokens per second up to ``capacity``."""

    def __init__(self, rate: float, capacity: float, clock: Clock = time.monotonic):
        if rate <= 0 or capacity <= 0:
            raise ValueError(f"rate and capacity must be positive, got rate={rate} capacity={capacity}")
        self.rate = rate
        self.capacity = capacity
        self.clock = clock
        self._level = float(capacity)
        self._stamp = clock()
        self._lock = threading.Lock()

    def _refill_locked(self) -> None:
        now = self.clock()
        # a clock stepping backwards neither adds nor drains tokens
        if now > self._stamp:
            self._level = min(self.capacity, self._level + (now - self._stamp) * self.rate)
        self._stamp = now

    def take(self, tokens: float = 1.0) -> float:
        """Spend ``tokens`` if the bucket holds them.

        Returns:
            ``0.0`` when spent, otherwise the seconds until enough tokens
            will have refilled (nothing is spent).
        """
        if tokens > self.capacity:
            raise ValueError(f"cannot take {tokens} tokens from a bucket of {self.capacity}")
        with self._lock:
            self._refill_locked()
            if self._level >= tokens:
                self._level -= tokens
                return 0.0
            return (tokens - self._level) / self.rate

    @property
    def tokens(self) -> float:
        with self._lock:
            self._refill_locked()
            return self._level

    @property
    def is_full(self) -> bool:
        return self.tokens >= self.capacity

    def __repr__(self) -> str:
        return f"TokenBucket(rate={self.rate:.4g}/s, capacity={self.capacity:g}, tokens={self.tokens:.2f})"


class CallerBuckets:
    """A :class:`TokenBucket` per caller.

    Buckets of idle callers refill to capacity and are indistinguishable
    from fresh ones, so every ``prune_every`` takes the full ones are
    dropped to bound memory.
    """

    def __init__(
        self,
        rate: float,
        capacity: float,
        clock: Clock = time.monotonic,
        prune_every: int = 1000,
    ):
        if rate <= 0 or capacity <= 0:
            raise ValueError(f"rate and capacity must be positive, got rate={rate} capacity={capacity}")
        self.rate = rate
        self.capacity = capacity
        self.clock = clock
        self.prune_every = prune_every
        self._buckets: dict[str, TokenBucket] = {}
        self._takes = 0
        self._lock = threading.Lock()

    def take(self, caller: str, tokens: float = 1.0) -> float:
        """Spend from ``caller``'s bucket; see :meth:`TokenBucket.take`."""
        with self._lock:
            self._takes += 1
            if self._takes >= self.prune_every:
                self._takes = 0
                self._prune_locked()
            bucket = self._buckets.get(caller)
            if bucket is None:
                bucket = self._buckets[caller] = TokenBucket(self.rate, self.capacity, self.clock)
        return bucket.take(tokens)

    def tokens(self, caller: str) -> float:
        """Tokens ``caller`` could spend right now."""
        with self._lock:
            bucket = self._buckets.get(caller)
        return bucket.tokens if bucket is not None else float(self.capacity)

    def forget(self, caller: str) -> None:
        with self._lock:
            self._buckets.pop(caller, None)

    def prune(self) -> int:
        """Drop buckets that have refilled completely. Returns how many."""
        with self._lock:
            return self._prune_locked()

    def _prune_locked(self) -> int:
        idle = [caller for caller, bucket in self._buckets.items() if bucket.is_full]
        for caller in idle:
            del self._buckets[caller]
        return len(idle)

    def __contains__(self, caller: str) -> bool:
        with self._lock:
            return caller in self._buckets

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


__all__ = ["CallerBuckets", "Clock", "TokenBucket"]
