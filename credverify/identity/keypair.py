"""
Authority keypair loading.

Accepts SOLANA_PRIVATE_KEY as a base58 string or a JSON array, and only as a
full 64-byte ed25519 secret key. Anything shorter is rejected: zero-padding a
32-byte value does not produce a usable keypair.
"""

from __future__ import annotations

import json

import base58
from solders.keypair import Keypair

from credverify.core.exceptions import ConfigurationError
from credverify.cv_logging import get_logger

logger = get_logger(__name__)

SECRET_KEY_LEN = 64


def _decode_secret(raw: str) -> bytes:
    if raw.startswith("["):
        try:
            arr = json.loads(raw)
            return bytes(arr)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            raise ConfigurationError("Invalid SOLANA_PRIVATE_KEY: malformed JSON byte array") from e
    try:
        return base58.b58decode(raw)
    except ValueError as e:
        raise ConfigurationError("Invalid SOLANA_PRIVATE_KEY format. Expected base58 encoded string.") from e


def load_keypair(private_key: str | None) -> Keypair:
    """Load the submitting authority's Keypair; ConfigurationError on anything but 64 bytes."""
    raw = (private_key or "").strip()
    if not raw:
        raise ConfigurationError("SOLANA_PRIVATE_KEY environment variable is required")
    secret = _decode_secret(raw)
    if len(secret) != SECRET_KEY_LEN:
        logger.warning("authority_key_wrong_length", length=len(secret), expected=SECRET_KEY_LEN)
        raise ConfigurationError(
            f"SOLANA_PRIVATE_KEY must decode to a {SECRET_KEY_LEN}-byte secret key, got {len(secret)} bytes"
        )
    try:
        return Keypair.from_bytes(secret)
    except Exception as e:
        raise ConfigurationError("SOLANA_PRIVATE_KEY is not a valid ed25519 secret key") from e
