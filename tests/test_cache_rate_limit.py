"""
TTLCache, TokenBucket and CachedIdentityService tests.
"""

from __future__ import annotations

import pytest
from solders.pubkey import Pubkey

from conftest import PROGRAM_ID, FakeClock, FakeLedger, attestation_account, valid_payload
from credverify.attestation.verifier import AttestationVerifier
from credverify.core.exceptions import ConfigurationError, NetworkTransientError, RateLimitedError
from credverify.identity.address_generation import IdentityDeriver, derive_address
from credverify.identity.cache import CachedIdentityService, TTLCache
from credverify.utils.rate_limiter import TokenBucket

SEED = "7001234567"
SALT = "pepper"
ADDRESS = str(Pubkey.new_unique())


def _service(clock: FakeClock, *, capacity: int = 100, verifier=None) -> CachedIdentityService:
    return CachedIdentityService(
        IdentityDeriver(SALT),
        TokenBucket(capacity, 3600, clock=clock),
        verifier=verifier,
        cache=TTLCache(clock=clock),
    )


def test_ttl_cache_expires_entries(clock: FakeClock):
    cache = TTLCache(clock=clock)
    cache.set(("op", "ns", "x"), 1, ttl=10)
    assert cache.get(("op", "ns", "x")) == 1
    clock.now += 10
    assert cache.get(("op", "ns", "x")) is None


def test_ttl_cache_prefix_invalidation(clock: FakeClock):
    cache = TTLCache(clock=clock)
    cache.set(("verify", "NG", "fp1", "addr1"), True)
    cache.set(("verify", "NG", "fp1", "addr2"), True)
    cache.set(("verify", "NG", "fp2", "addr1"), True)
    assert cache.invalidate_prefix(("verify", "NG", "fp1")) == 2
    assert len(cache) == 1


def test_ttl_cache_evicts_oldest_when_full(clock: FakeClock):
    cache = TTLCache(clock=clock, max_entries=2)
    cache.set(("a",), 1)
    clock.now += 1
    cache.set(("b",), 2)
    clock.now += 1
    cache.set(("c",), 3)
    assert cache.get(("a",)) is None
    assert cache.get(("c",)) == 3


def test_token_bucket_fails_closed_and_refills(clock: FakeClock):
    bucket = TokenBucket(2, 60, clock=clock)
    bucket.acquire("alice")
    bucket.acquire("alice")
    with pytest.raises(RateLimitedError) as exc_info:
        bucket.acquire("alice")
    assert exc_info.value.retry_after == pytest.approx(60)
    # other callers have their own bucket
    bucket.acquire("bob")
    clock.now += 60
    bucket.acquire("alice")
    assert bucket.remaining("alice") == 1


def test_token_bucket_prunes_idle_callers(clock: FakeClock):
    bucket = TokenBucket(1, 60, clock=clock, max_callers=2)
    bucket.acquire("a")
    bucket.acquire("b")
    clock.now += 61
    bucket.acquire("c")
    assert bucket.caller_count() == 1

    # callers still inside their window keep their limit
    bucket.acquire("d")
    bucket.acquire("e")
    assert bucket.caller_count() == 3
    assert not bucket.try_acquire("d")


def test_injected_empty_cache_is_used(clock: FakeClock):
    cache = TTLCache(clock=clock)
    assert len(cache) == 0
    service = CachedIdentityService(IdentityDeriver(SALT), TokenBucket(10, 60, clock=clock), cache=cache)
    assert service.cache is cache
    service.derive_address(SEED)
    assert len(cache) == 2
    assert service.derive_address(SEED).cached


def test_derive_address_is_cached(clock: FakeClock):
    service = _service(clock)
    first = service.derive_address(SEED)
    second = service.derive_address(SEED)
    assert first.success and first.address == derive_address(SEED, SALT)
    assert not first.cached
    assert second.cached
    assert second.address == first.address


def test_invalid_identifier_is_rejected_before_derivation(clock: FakeClock):
    service = _service(clock)
    result = service.derive_address("123", namespace="NG")
    assert not result.success
    assert result.address is None
    assert "NG" in (result.error or "")


def test_verify_address_positive_and_negative(clock: FakeClock):
    service = _service(clock)
    address = derive_address(SEED, SALT)
    assert service.verify_address(SEED, address).is_valid
    bad = service.verify_address(SEED, ADDRESS)
    assert not bad.is_valid
    assert service.verify_address(SEED, ADDRESS).cached
    # negative results expire after five minutes, positive ones are still cached
    clock.now += 301
    assert not service.verify_address(SEED, ADDRESS).cached
    assert service.verify_address(SEED, address).cached


def test_rate_limit_applies_per_caller(clock: FakeClock):
    service = _service(clock, capacity=2)
    service.derive_address(SEED, caller="c1")
    service.derive_address(SEED, caller="c1")
    with pytest.raises(RateLimitedError):
        service.derive_address(SEED, caller="c1")
    assert service.derive_address(SEED, caller="c2").success


def test_batch_is_charged_up_front(clock: FakeClock):
    service = _service(clock, capacity=3)
    address = derive_address(SEED, SALT)
    with pytest.raises(RateLimitedError):
        service.batch_verify_addresses([(SEED, address)] * 4)
    results = service.batch_verify_addresses([(SEED, address), (SEED, ADDRESS)])
    assert [r.is_valid for r in results] == [True, False]


def test_invalidate_drops_identity_entries(clock: FakeClock):
    service = _service(clock)
    address = derive_address(SEED, SALT)
    service.derive_address(SEED)
    service.verify_address(SEED, address)
    assert service.invalidate(SEED) >= 3
    assert not service.derive_address(SEED).cached


def test_missing_salt_surfaces_on_identity_use(clock: FakeClock):
    service = CachedIdentityService(None, TokenBucket(10, 60, clock=clock), cache=TTLCache(clock=clock))
    with pytest.raises(ConfigurationError):
        service.derive_address(SEED)


@pytest.mark.asyncio
async def test_attestation_results_cached_but_not_transient_ones(clock: FakeClock, ledger: FakeLedger):
    good = "So11111111111111111111111111111111111111112"
    flaky = ADDRESS
    ledger.accounts[good] = attestation_account(good, valid_payload())
    ledger.accounts[flaky] = NetworkTransientError("timeout")
    verifier = AttestationVerifier(ledger, PROGRAM_ID, sleep=clock.sleep)
    service = _service(clock, verifier=verifier)

    first = await service.verify_attestation(good)
    assert first.is_valid and not first.cached
    assert (await service.verify_attestation(good)).cached

    failed = await service.verify_attestation(flaky)
    assert failed.transient
    assert not (await service.verify_attestation(flaky)).cached
