"""
Per-caller token-bucket rate limiting.

Each caller identity gets its own bucket of ``capacity`` tokens, refilled to
full every ``refill_interval`` seconds. Exhausting a bucket fails closed with
RateLimitedError; callers are never parked waiting for tokens.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from credverify.core.exceptions import RateLimitedError
from credverify.cv_logging import get_logger, short_id

logger = get_logger(__name__)

# idle callers are pruned once this many buckets exist
DEFAULT_MAX_CALLERS = 10_000


@dataclass
class _Bucket:
    tokens: int
    window_start: float


class TokenBucket:
    """Fixed-interval refill token bucket, keyed by caller identity."""

    def __init__(
        self,
        capacity: int,
        refill_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_callers: int = DEFAULT_MAX_CALLERS,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be positive")
        self._capacity = capacity
        self._interval = refill_interval
        self._clock = clock
        self._max_callers = max(1, max_callers)
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def _bucket(self, caller: str, now: float) -> _Bucket:
        bucket = self._buckets.get(caller)
        if bucket is None:
            if len(self._buckets) >= self._max_callers:
                self._prune(now)
            bucket = _Bucket(tokens=self._capacity, window_start=now)
            self._buckets[caller] = bucket
        elif now - bucket.window_start >= self._interval:
            elapsed_windows = int((now - bucket.window_start) // self._interval)
            bucket.window_start += elapsed_windows * self._interval
            bucket.tokens = self._capacity
        return bucket

    def _prune(self, now: float) -> None:
        # a bucket whose window has elapsed would refill to capacity anyway
        idle = [c for c, b in self._buckets.items() if now - b.window_start >= self._interval]
        for caller in idle:
            del self._buckets[caller]
        if idle:
            logger.debug("rate_limiter_pruned", callers=len(idle), remaining=len(self._buckets))

    def caller_count(self) -> int:
        with self._lock:
            return len(self._buckets)

    def remaining(self, caller: str) -> int:
        with self._lock:
            return self._bucket(caller, self._clock()).tokens

    def try_acquire(self, caller: str, tokens: int = 1) -> bool:
        """Take tokens if available; return False (and take nothing) otherwise."""
        if tokens < 1:
            return True
        with self._lock:
            bucket = self._bucket(caller, self._clock())
            if bucket.tokens < tokens:
                return False
            bucket.tokens -= tokens
            return True

    def acquire(self, caller: str, tokens: int = 1) -> None:
        """Take tokens or raise RateLimitedError."""
        if self.try_acquire(caller, tokens):
            return
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(caller)
            retry_after = (bucket.window_start + self._interval - now) if bucket else None
        logger.warning(
            "rate_limited",
            caller=short_id(caller),
            requested=tokens,
            retry_after_sec=None if retry_after is None else round(max(0.0, retry_after), 1),
        )
        raise RateLimitedError(
            "Rate limit exceeded. Please try again later.",
            caller=caller,
            retry_after=retry_after,
        )

    def reset(self, caller: str | None = None) -> None:
        with self._lock:
            if caller is None:
                self._buckets.clear()
            else:
                self._buckets.pop(caller, None)
