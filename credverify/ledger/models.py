"""
Normalized ledger RPC results.

solana-py responses are wrapped solders objects; these plain frozen
dataclasses are what the rest of the package consumes, so tests can build
them directly without touching RPC types.
"""

from dataclasses import dataclass, field
from typing import Any

CONFIRMED_STATUSES = ("confirmed", "finalized")


@dataclass(frozen=True)
class BlockhashInfo:
    """Recent blockhash and the last block height at which it is still valid."""

    blockhash: str
    last_valid_block_height: int

    @classmethod
    def from_rpc(cls, value: Any) -> "BlockhashInfo":
        """Build from GetLatestBlockhashResp.value."""
        return cls(
            blockhash=str(value.blockhash),
            last_valid_block_height=int(value.last_valid_block_height),
        )


@dataclass(frozen=True)
class SignatureStatus:
    """
    Status of one signature from getSignatureStatuses.

    err is None on success; any other value is the ledger's transaction error.
    """

    signature: str
    slot: int | None
    err: Any
    confirmation_status: str | None  # processed | confirmed | finalized

    @property
    def is_confirmed(self) -> bool:
        return self.err is None and self.confirmation_status in CONFIRMED_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.err is not None

    @classmethod
    def from_rpc(cls, signature: str, status: Any) -> "SignatureStatus":
        """Build from one TransactionStatus item; confirmation_status may be an enum."""
        raw = getattr(status, "confirmation_status", None)
        if raw is not None and not isinstance(raw, str):
            raw = str(raw).rsplit(".", 1)[-1]
        slot = getattr(status, "slot", None)
        return cls(
            signature=signature,
            slot=int(slot) if slot is not None else None,
            err=getattr(status, "err", None),
            confirmation_status=raw.lower() if raw else None,
        )


@dataclass(frozen=True)
class AccountSnapshot:
    """Account state as read from the ledger."""

    address: str
    owner: str
    lamports: int
    data: bytes = field(repr=False)
    executable: bool = False

    @classmethod
    def from_rpc(cls, address: str, account: Any) -> "AccountSnapshot":
        data = getattr(account, "data", b"")
        return cls(
            address=address,
            owner=str(account.owner),
            lamports=int(getattr(account, "lamports", 0)),
            data=bytes(data) if data is not None else b"",
            executable=bool(getattr(account, "executable", False)),
        )
