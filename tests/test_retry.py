"""
RetryScheduler tests: retry bound, backoff shape, fatal short-circuit.
"""

from __future__ import annotations

import pytest

from conftest import FakeClock
from credverify.core.exceptions import (
    ConfigurationError,
    LedgerRejectedError,
    NetworkTransientError,
    RetryExhaustedError,
    is_retryable,
)
from credverify.core.retry import RetryPolicy, RetryScheduler


def test_base_delay_doubles_and_caps():
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=5.0)
    assert [policy.base_delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_jitter_stays_within_fraction():
    policy = RetryPolicy(base_delay=2.0, jitter_fraction=0.1)
    assert policy.delay_for(1, rng=lambda: 0.0) == 2.0
    assert policy.delay_for(1, rng=lambda: 1.0) == pytest.approx(2.2)


def test_policy_rejects_bad_values():
    with pytest.raises(ConfigurationError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ConfigurationError):
        RetryPolicy(jitter_fraction=1.5)


def test_with_overrides_ignores_none():
    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    changed = policy.with_overrides(max_attempts=5, base_delay=None)
    assert changed.max_attempts == 5
    assert changed.base_delay == 1.0


def test_classifier_defaults():
    assert is_retryable(NetworkTransientError("reset"))
    assert not is_retryable(LedgerRejectedError("bad"))
    assert not is_retryable(ValueError("boom"))


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures(clock: FakeClock):
    calls: list[int] = []

    async def op(attempt: int) -> str:
        calls.append(attempt)
        if attempt < 3:
            raise NetworkTransientError("timeout")
        return "ok"

    scheduler = RetryScheduler(RetryPolicy(max_attempts=3, base_delay=0.1), sleep=clock.sleep, rng=lambda: 0.0)
    assert await scheduler.run(op) == "ok"
    assert calls == [1, 2, 3]
    assert clock.sleeps == [pytest.approx(0.1), pytest.approx(0.2)]


@pytest.mark.asyncio
async def test_never_exceeds_max_attempts(clock: FakeClock):
    calls: list[int] = []

    async def op(attempt: int) -> None:
        calls.append(attempt)
        raise NetworkTransientError("still down")

    scheduler = RetryScheduler(RetryPolicy(max_attempts=4, base_delay=0.5), sleep=clock.sleep, rng=lambda: 0.0)
    with pytest.raises(RetryExhaustedError) as exc_info:
        await scheduler.run(op)
    assert calls == [1, 2, 3, 4]
    assert exc_info.value.attempts == 4
    assert isinstance(exc_info.value.last_error, NetworkTransientError)
    # no sleep after the final attempt
    assert len(clock.sleeps) == 3


@pytest.mark.asyncio
async def test_fatal_error_short_circuits(clock: FakeClock):
    calls: list[int] = []

    async def op(attempt: int) -> None:
        calls.append(attempt)
        raise LedgerRejectedError("insufficient funds")

    scheduler = RetryScheduler(RetryPolicy(max_attempts=5), sleep=clock.sleep)
    with pytest.raises(LedgerRejectedError):
        await scheduler.run(op)
    assert calls == [1]
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_on_retry_callback_sees_each_retry(clock: FakeClock):
    seen: list[tuple[int, float]] = []

    async def op(attempt: int) -> int:
        if attempt == 1:
            raise NetworkTransientError("blip")
        return attempt

    scheduler = RetryScheduler(RetryPolicy(base_delay=1.0), sleep=clock.sleep, rng=lambda: 0.5)
    result = await scheduler.run(op, on_retry=lambda n, e, d: seen.append((n, d)))
    assert result == 2
    assert seen == [(1, pytest.approx(1.05))]
