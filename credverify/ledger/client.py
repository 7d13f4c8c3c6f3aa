"""
Async ledger RPC client.

Wraps solana-py's AsyncClient with an explicit open/close lifecycle and maps
its failures onto the credverify taxonomy: transport problems become
NetworkTransientError, an explicit rejection of a send becomes
LedgerRejectedError. Results come back as the plain dataclasses in
credverify.ledger.models. One instance is shared by every component.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Sequence

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.message import Message
from solders.signature import Signature

from credverify.core.exceptions import (
    ConfigurationError,
    LedgerRejectedError,
    NetworkTransientError,
    ValidationError,
)
from credverify.cv_logging import get_logger, short_id
from credverify.ledger.models import AccountSnapshot, BlockhashInfo, SignatureStatus
from credverify.utils.address_utils import parse_address

logger = get_logger(__name__)

DEFAULT_COMMITMENT = "confirmed"
DEFAULT_RPC_TIMEOUT_SEC = 15.0

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    SolanaRpcException,
    httpx.HTTPError,
    asyncio.TimeoutError,
    ConnectionError,
)

_TRANSIENT_SEND_MARKERS = ("blockhash not found", "node is behind", "too many requests")


def _rpc_error_message(e: RPCException) -> str:
    arg = e.args[0] if e.args else e
    return str(getattr(arg, "message", None) or arg)


def _rpc_error_logs(e: RPCException) -> list[str]:
    arg = e.args[0] if e.args else None
    data = getattr(arg, "data", None)
    logs = getattr(data, "logs", None)
    return list(logs) if logs else []


def _rpc_error_detail(e: RPCException) -> Any:
    arg = e.args[0] if e.args else None
    data = getattr(arg, "data", None)
    return getattr(data, "err", None) or _rpc_error_message(e)


class LedgerClient:
    """Shared async RPC client. Call open() before use and close() when done."""

    def __init__(
        self,
        rpc_url: str,
        *,
        commitment: str = DEFAULT_COMMITMENT,
        timeout: float = DEFAULT_RPC_TIMEOUT_SEC,
        client: AsyncClient | None = None,
    ) -> None:
        if not rpc_url and client is None:
            raise ConfigurationError("rpc_url must be non-empty")
        self.rpc_url = rpc_url
        self.commitment = commitment
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def open(self) -> "LedgerClient":
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=self.commitment, timeout=self._timeout)
            self._owns_client = True
            logger.info("ledger_client_opened", rpc_url=short_id(self.rpc_url, 32), commitment=self.commitment)
        return self

    async def close(self) -> None:
        """Release the HTTP connection pool. Safe to call twice."""
        client, self._client = self._client, None
        if client is not None and self._owns_client:
            await client.close()
            logger.info("ledger_client_closed")

    async def __aenter__(self) -> "LedgerClient":
        return await self.open()

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _require(self) -> AsyncClient:
        if self._client is None:
            raise ConfigurationError("LedgerClient is not open")
        return self._client

    async def _rpc(self, method: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except RPCException as e:
            logger.warning("ledger_rpc_error", method=method, error=_rpc_error_message(e))
            raise NetworkTransientError(f"{method} failed: {_rpc_error_message(e)}", code="RPC_ERROR") from e
        except _TRANSPORT_ERRORS as e:
            logger.warning("ledger_rpc_transport_error", method=method, error_type=type(e).__name__, error=str(e))
            raise NetworkTransientError(f"{method} failed: {e}") from e

    async def get_latest_blockhash(self, commitment: str | None = None) -> BlockhashInfo:
        resp = await self._rpc("getLatestBlockhash", self._require().get_latest_blockhash(commitment or self.commitment))
        return BlockhashInfo.from_rpc(resp.value)

    async def send_raw_transaction(
        self,
        payload: bytes,
        *,
        skip_preflight: bool = False,
        preflight_commitment: str | None = None,
    ) -> str:
        """
        Broadcast a signed transaction and return its signature.

        A preflight or validation rejection raises LedgerRejectedError; a stale
        blockhash or transport failure raises NetworkTransientError.
        """
        opts = TxOpts(
            skip_confirmation=True,
            skip_preflight=skip_preflight,
            preflight_commitment=preflight_commitment or self.commitment,
        )
        try:
            resp = await self._require().send_raw_transaction(payload, opts=opts)
        except RPCException as e:
            message = _rpc_error_message(e)
            if any(marker in message.lower() for marker in _TRANSIENT_SEND_MARKERS):
                logger.warning("ledger_send_transient", error=message)
                raise NetworkTransientError(f"sendTransaction failed: {message}", code="RPC_ERROR") from e
            logger.warning("ledger_send_rejected", error=message)
            raise LedgerRejectedError(
                f"Transaction rejected: {message}",
                ledger_error=_rpc_error_detail(e),
                logs=_rpc_error_logs(e),
            ) from e
        except _TRANSPORT_ERRORS as e:
            logger.warning("ledger_send_transport_error", error_type=type(e).__name__, error=str(e))
            raise NetworkTransientError(f"sendTransaction failed: {e}") from e
        return str(resp.value)

    async def get_signature_status(self, signature: str) -> SignatureStatus | None:
        """Status for one signature, or None while the ledger has not seen it."""
        statuses = await self.get_signature_statuses([signature])
        return statuses[0]

    async def get_signature_statuses(self, signatures: Sequence[str]) -> list[SignatureStatus | None]:
        try:
            sigs = [Signature.from_string(s) for s in signatures]
        except ValueError as e:
            raise ValidationError(f"Invalid signature: {e}", field="signature") from e
        resp = await self._rpc(
            "getSignatureStatuses",
            self._require().get_signature_statuses(sigs, search_transaction_history=True),
        )
        values = list(resp.value or [])
        values += [None] * (len(signatures) - len(values))
        return [
            SignatureStatus.from_rpc(sig, status) if status is not None else None
            for sig, status in zip(signatures, values)
        ]

    async def get_block_height(self, commitment: str | None = None) -> int:
        resp = await self._rpc("getBlockHeight", self._require().get_block_height(commitment or self.commitment))
        return int(resp.value)

    async def get_slot(self, commitment: str | None = None) -> int:
        resp = await self._rpc("getSlot", self._require().get_slot(commitment or self.commitment))
        return int(resp.value)

    async def get_account_info(self, address: str) -> AccountSnapshot | None:
        """Account at address, or None if it does not exist. ValidationError on a bad address."""
        pubkey = parse_address(address)
        resp = await self._rpc("getAccountInfo", self._require().get_account_info(pubkey, commitment=self.commitment))
        if resp.value is None:
            return None
        return AccountSnapshot.from_rpc(address, resp.value)

    async def get_fee_for_message(self, message: Message) -> int | None:
        resp = await self._rpc("getFeeForMessage", self._require().get_fee_for_message(message, commitment=self.commitment))
        return None if resp.value is None else int(resp.value)

    async def get_balance(self, address: str) -> int:
        pubkey = parse_address(address)
        resp = await self._rpc("getBalance", self._require().get_balance(pubkey, commitment=self.commitment))
        return int(resp.value)
