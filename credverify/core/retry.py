"""
Exponential backoff with jitter, shared by every network call.

The delay before retry n (1-indexed, the first retry follows the first
failure) is ``min(max_delay, base_delay * 2**(n-1))`` plus a uniform jitter in
``[0, jitter_fraction * that delay]``. Fatal failures (per the classifier)
are re-raised immediately without consuming the remaining attempts.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, TypeVar

from credverify.core.exceptions import ConfigurationError, RetryExhaustedError, is_retryable
from credverify.cv_logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SEC = 1.0
DEFAULT_MAX_DELAY_SEC = 30.0
DEFAULT_JITTER_FRACTION = 0.1


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff shape."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SEC
    max_delay: float = DEFAULT_MAX_DELAY_SEC
    jitter_fraction: float = DEFAULT_JITTER_FRACTION

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must be non-negative")
        if not (0.0 <= self.jitter_fraction <= 1.0):
            raise ConfigurationError("jitter_fraction must be between 0 and 1")

    def base_delay_for(self, retry_number: int) -> float:
        """Delay before retry n without jitter."""
        return min(self.max_delay, self.base_delay * (2 ** (retry_number - 1)))

    def delay_for(self, retry_number: int, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry n including jitter."""
        delay = self.base_delay_for(retry_number)
        return delay + rng() * self.jitter_fraction * delay

    def with_overrides(self, **changes: Any) -> "RetryPolicy":
        """Copy with non-None overrides applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


class RetryScheduler:
    """
    Run an async operation under a RetryPolicy.

    The operation receives the 1-indexed attempt number. Explicit loop with an
    attempt counter and accumulated delay; no recursion.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        classifier: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._classifier = classifier
        self._sleep = sleep
        self._rng = rng

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        *,
        policy: RetryPolicy | None = None,
        on_retry: Callable[[int, BaseException, float], Any] | None = None,
        label: str = "operation",
    ) -> T:
        """
        Call operation until it succeeds, fails fatally, or attempts run out.

        Raises the fatal error unchanged, or RetryExhaustedError wrapping the
        last retryable error.
        """
        pol = policy or self.policy
        total_delay = 0.0
        last_error: BaseException | None = None
        for attempt in range(1, pol.max_attempts + 1):
            try:
                return await operation(attempt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if not self._classifier(e):
                    logger.warning(
                        "retry_fatal_error",
                        label=label,
                        attempt=attempt,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise
                if attempt >= pol.max_attempts:
                    break
                delay = pol.delay_for(attempt, self._rng)
                total_delay += delay
                logger.warning(
                    "retry_scheduled",
                    label=label,
                    attempt=attempt,
                    max_attempts=pol.max_attempts,
                    delay_sec=round(delay, 3),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                await self._sleep(delay)
        assert last_error is not None
        logger.error(
            "retry_exhausted",
            label=label,
            attempts=pol.max_attempts,
            total_delay_sec=round(total_delay, 3),
            error=str(last_error),
        )
        raise RetryExhaustedError(last_error, pol.max_attempts) from last_error
