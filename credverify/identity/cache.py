"""
Short-TTL memoization in front of identity derivation and attestation checks.

Keys are tuples ``(operation, namespace, *input)`` so an admin can drop every
entry for one identifier with a key-prefix invalidation. Positive results are
kept for an hour, negative ones for five minutes: validity is expected to be
stable, invalidity is often a transient input mistake. Every lookup first
passes the caller's token bucket, which fails closed.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Hashable, Sequence

from credverify.core.exceptions import ConfigurationError
from credverify.cv_logging import get_logger, short_id
from credverify.identity.address_generation import IdentityDeriver
from credverify.identity.validation import DEFAULT_COUNTRY, validate_identifier
from credverify.utils.rate_limiter import TokenBucket

if TYPE_CHECKING:
    from credverify.attestation.verifier import AttestationVerifier, VerificationResult

logger = get_logger(__name__)

POSITIVE_TTL_SEC = 3600.0
NEGATIVE_TTL_SEC = 300.0
ADDRESS_TTL_SEC = 300.0
VALIDATION_NEGATIVE_TTL_SEC = 60.0
DEFAULT_MAX_ENTRIES = 10_000

CacheKey = tuple[Hashable, ...]

_MISSING = object()


@dataclass
class CacheEntry:
    value: Any
    inserted_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


class TTLCache:
    """Thread-safe TTL map with per-entry TTL and tuple-prefix invalidation."""

    def __init__(
        self,
        default_ttl: float = ADDRESS_TTL_SEC,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if entry.expired(self._clock()):
                del self._entries[key]
                return default
            return entry.value

    def set(self, key: CacheKey, value: Any, ttl: float | None = None) -> None:
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict(now)
            self._entries[key] = CacheEntry(value=value, inserted_at=now, ttl=self._default_ttl if ttl is None else ttl)

    def _evict(self, now: float) -> None:
        for k in [k for k, e in self._entries.items() if e.expired(now)]:
            del self._entries[k]
        while len(self._entries) >= self._max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k].inserted_at)
            del self._entries[oldest]

    def delete(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: CacheKey) -> int:
        """Drop every key whose leading elements equal prefix. Returns the count removed."""
        n = len(prefix)
        with self._lock:
            doomed = [k for k in self._entries if k[:n] == prefix]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@dataclass(frozen=True)
class AddressLookup:
    success: bool
    country_code: str
    address: str | None = None
    error: str | None = None
    cached: bool = False


@dataclass(frozen=True)
class AddressCheck:
    is_valid: bool
    country_code: str
    address: str | None = None
    error: str | None = None
    cached: bool = False


class CachedIdentityService:
    """Rate-limited, cached front for IdentityDeriver and AttestationVerifier."""

    def __init__(
        self,
        deriver: IdentityDeriver | None,
        limiter: TokenBucket,
        *,
        verifier: "AttestationVerifier | None" = None,
        cache: TTLCache | None = None,
        positive_ttl: float = POSITIVE_TTL_SEC,
        negative_ttl: float = NEGATIVE_TTL_SEC,
        address_ttl: float = ADDRESS_TTL_SEC,
    ) -> None:
        self._deriver = deriver
        self._limiter = limiter
        self._verifier = verifier
        self._cache = cache if cache is not None else TTLCache()
        self._positive_ttl = positive_ttl
        self._negative_ttl = negative_ttl
        self._address_ttl = address_ttl

    @property
    def cache(self) -> TTLCache:
        return self._cache

    def _require_deriver(self) -> IdentityDeriver:
        if self._deriver is None:
            raise ConfigurationError("Identity salt is required (set NIN_SALT)")
        return self._deriver

    def _validation_error(self, seed: str, namespace: str) -> tuple[str, str | None]:
        fp = self._require_deriver().fingerprint(seed)
        key = ("validate", namespace, fp)
        cached = self._cache.get(key, _MISSING)
        if cached is not _MISSING:
            return fp, cached
        result = validate_identifier(seed, namespace)
        self._cache.set(key, result.error, ttl=self._positive_ttl if result.is_valid else VALIDATION_NEGATIVE_TTL_SEC)
        return fp, result.error

    def derive_address(self, seed: str, *, caller: str = "default", namespace: str = DEFAULT_COUNTRY) -> AddressLookup:
        """Derive (or recall) the address for seed. RateLimitedError if caller is over budget."""
        self._limiter.acquire(caller)
        ns = namespace.upper()
        fp, error = self._validation_error(seed, ns)
        if error:
            return AddressLookup(False, ns, error=error)
        key = ("address", ns, fp)
        cached = self._cache.get(key)
        if cached is not None:
            return replace(cached, cached=True)
        result = AddressLookup(True, ns, address=self._require_deriver().derive_address(seed))
        self._cache.set(key, result, ttl=self._address_ttl)
        return result

    def verify_address(
        self,
        seed: str,
        address: str,
        *,
        caller: str = "default",
        namespace: str = DEFAULT_COUNTRY,
    ) -> AddressCheck:
        """Check address was derived from seed; negative results cached briefly."""
        self._limiter.acquire(caller)
        return self._verify_address_unmetered(seed, address, namespace.upper())

    def _verify_address_unmetered(self, seed: str, address: str, ns: str) -> AddressCheck:
        fp, error = self._validation_error(seed, ns)
        if error:
            return AddressCheck(False, ns, address=address, error=error)
        key = ("verify", ns, fp, address)
        cached = self._cache.get(key)
        if cached is not None:
            return replace(cached, cached=True)
        ok = self._require_deriver().verify(seed, address)
        result = AddressCheck(ok, ns, address=address, error=None if ok else "Address does not match identifier")
        self._cache.set(key, result, ttl=self._positive_ttl if ok else self._negative_ttl)
        return result

    def batch_verify_addresses(
        self,
        pairs: Sequence[tuple[str, str]],
        *,
        caller: str = "default",
        namespace: str = DEFAULT_COUNTRY,
    ) -> list[AddressCheck]:
        """Verify many (seed, address) pairs; the whole batch is charged up front."""
        self._limiter.acquire(caller, tokens=max(1, len(pairs)))
        ns = namespace.upper()
        return [self._verify_address_unmetered(seed, address, ns) for seed, address in pairs]

    async def verify_attestation(self, address: str, *, caller: str = "default") -> "VerificationResult":
        """Cached AttestationVerifier.verify; transient failures are never cached."""
        if self._verifier is None:
            raise RuntimeError("CachedIdentityService was built without an AttestationVerifier")
        self._limiter.acquire(caller)
        key = ("attestation", "", address)
        cached = self._cache.get(key)
        if cached is not None:
            return replace(cached, cached=True)
        result = await self._verifier.verify(address)
        if not result.transient:
            self._cache.set(key, result, ttl=self._positive_ttl if result.is_valid else self._negative_ttl)
        return result

    def invalidate(self, seed: str, namespace: str = DEFAULT_COUNTRY) -> int:
        """Admin: drop every cached entry for seed in namespace."""
        ns = namespace.upper()
        fp = self._require_deriver().fingerprint(seed)
        removed = sum(
            self._cache.invalidate_prefix((op, ns, fp)) for op in ("validate", "address", "verify")
        )
        logger.info("identity_cache_invalidated", namespace=ns, fingerprint=short_id(fp, 12), removed=removed)
        return removed

    def invalidate_attestation(self, address: str) -> bool:
        return self._cache.delete(("attestation", "", address))
