"""
Attestation verification against the ledger.

verify() never raises for a bad attestation: every outcome is a
VerificationResult with a short reason. batch_verify() checks addresses in
chunks with a pause between chunks, and one failing address never affects
the others.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from credverify.attestation.models import AttestationRecord, decode_attestation
from credverify.core.exceptions import CredverifyError, StructuralValidationError, ValidationError
from credverify.cv_logging import get_logger, short_id
from credverify.ledger.client import LedgerClient
from credverify.utils.address_utils import is_valid_address

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 10
DEFAULT_CHUNK_PAUSE_SEC = 0.5

INVALID_ADDRESS = "invalid address"
NOT_FOUND = "not found"
WRONG_OWNER = "wrong owner"


@dataclass(frozen=True)
class VerificationResult:
    """
    Outcome of one verification.

    transient marks results caused by network trouble rather than the
    attestation itself; caches must not keep them.
    """

    address: str
    is_valid: bool
    reason: str | None = None
    record: AttestationRecord | None = None
    transient: bool = False
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "isValid": self.is_valid,
            "reason": self.reason,
            "record": self.record.to_dict() if self.record else None,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


class AttestationVerifier:
    """Check that an address holds a well-formed attestation owned by the program."""

    def __init__(
        self,
        ledger: LedgerClient,
        program_id: str,
        *,
        issuer: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_pause: float = DEFAULT_CHUNK_PAUSE_SEC,
        clock_ms: Callable[[], int] = _now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._program_id = program_id
        self._issuer = issuer
        self._chunk_size = max(1, chunk_size)
        self._chunk_pause = max(0.0, chunk_pause)
        self._clock_ms = clock_ms
        self._sleep = sleep

    @property
    def program_id(self) -> str:
        return self._program_id

    async def verify(self, address: str) -> VerificationResult:
        if not isinstance(address, str) or not is_valid_address(address):
            return VerificationResult(str(address), False, INVALID_ADDRESS)
        address = address.strip()
        try:
            account = await self._ledger.get_account_info(address)
        except ValidationError:
            return VerificationResult(address, False, INVALID_ADDRESS)
        except CredverifyError as e:
            logger.warning("attestation_verify_error", address=short_id(address), error=str(e))
            return VerificationResult(address, False, f"verification failed: {e}", transient=True)
        if account is None:
            return VerificationResult(address, False, NOT_FOUND)
        if account.owner != self._program_id:
            logger.info(
                "attestation_wrong_owner",
                address=short_id(address),
                owner=short_id(account.owner),
                expected=short_id(self._program_id),
            )
            return VerificationResult(address, False, WRONG_OWNER)
        try:
            record = decode_attestation(
                address,
                account.owner,
                account.data,
                now_ms=self._clock_ms(),
                default_issuer=self._issuer,
            )
        except StructuralValidationError as e:
            logger.info("attestation_invalid", address=short_id(address), reason=e.message)
            return VerificationResult(address, False, e.message)
        return VerificationResult(address, True, record=record)

    async def _verify_isolated(self, address: str) -> VerificationResult:
        try:
            return await self.verify(address)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("attestation_verify_unexpected_error", address=short_id(address), error=str(e))
            return VerificationResult(str(address), False, f"verification failed: {e}", transient=True)

    async def batch_verify(
        self,
        addresses: Iterable[str],
        *,
        chunk_size: int | None = None,
        chunk_pause: float | None = None,
    ) -> dict[str, VerificationResult]:
        """Verify every address; result keys keep input order (duplicates collapse)."""
        items = list(addresses)
        size = max(1, chunk_size or self._chunk_size)
        pause = self._chunk_pause if chunk_pause is None else max(0.0, chunk_pause)
        results: dict[str, VerificationResult] = {}
        for start in range(0, len(items), size):
            chunk = items[start : start + size]
            outcomes = await asyncio.gather(*(self._verify_isolated(a) for a in chunk))
            for addr, outcome in zip(chunk, outcomes):
                results.setdefault(str(addr), outcome)
            if start + size < len(items) and pause > 0:
                await self._sleep(pause)
        valid = sum(1 for r in results.values() if r.is_valid)
        logger.info("attestation_batch_verified", total=len(results), valid=valid, invalid=len(results) - valid)
        return results
