"""Address validation utilities."""

from __future__ import annotations

from solders.pubkey import Pubkey

from credverify.core.exceptions import ValidationError


def is_valid_address(address: str) -> bool:
    """Return True if address is a valid base58 Solana public key."""
    try:
        Pubkey.from_string(address.strip())
        return True
    except Exception:
        return False


def parse_address(address: str, *, field: str = "address") -> Pubkey:
    """Parse a base58 address into a Pubkey; ValidationError if malformed."""
    if not isinstance(address, str) or not address.strip():
        raise ValidationError(f"{field} must be a non-empty string", field=field)
    try:
        return Pubkey.from_string(address.strip())
    except Exception as e:
        raise ValidationError(f"Invalid Solana address for {field}", field=field) from e
