"""
Deterministic Solana identities from a private identifier.

The 32-byte ed25519 seed is SHA-256(secret || salt); the address is the
base58 public key of the keypair built from that seed. The salt is mandatory:
without it short identifiers could be brute-forced offline from the address.

Pure functions, no I/O. Private material lives only on the returned
DerivedIdentity and is excluded from its repr.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from credverify.core.exceptions import ConfigurationError, ValidationError

# ed25519 keypair seed length
SEED_LEN = 32

ATTESTATION_SEED_PREFIX = b"attestation"
STUDENT_CREDENTIAL_SEED_PREFIX = b"student_credential"


def _to_bytes(value: bytes | str, name: str) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    raise ValidationError(f"{name} must be bytes or str", field=name)


def _require_salt(salt: bytes | str | None) -> bytes:
    if salt is None:
        raise ConfigurationError("Identity salt is required (set NIN_SALT)")
    raw = _to_bytes(salt, "salt")
    if not raw:
        raise ConfigurationError("Identity salt must be non-empty (set NIN_SALT)")
    return raw


@dataclass(frozen=True)
class DerivedIdentity:
    """Public address plus transient private keypair. Never persist or log keypair."""

    address: str
    keypair: Keypair = field(repr=False, compare=False)
    cache_key: str = field(repr=False)

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()


def derive_seed(secret: bytes | str, salt: bytes | str | None) -> bytes:
    """SHA-256(secret || salt): exactly the 32 bytes an ed25519 seed needs."""
    salt_b = _require_salt(salt)
    secret_b = _to_bytes(secret, "secret")
    if not secret_b:
        raise ValidationError("secret must be non-empty", field="secret")
    return hashlib.sha256(secret_b + salt_b).digest()[:SEED_LEN]


def identity_fingerprint(secret: bytes | str, salt: bytes | str | None) -> str:
    """Stable lookup key for a secret: HMAC-SHA256 keyed by the salt, unrelated to the seed."""
    salt_b = _require_salt(salt)
    return hmac.new(salt_b, _to_bytes(secret, "secret"), hashlib.sha256).hexdigest()


class IdentityDeriver:
    """Derive and check deterministic addresses. Holds the server-side salt."""

    def __init__(self, salt: bytes | str | None) -> None:
        self._salt = _require_salt(salt)

    def __repr__(self) -> str:
        return "IdentityDeriver(salt=***)"

    def derive(self, secret: bytes | str) -> DerivedIdentity:
        return derive_identity(secret, self._salt)

    def derive_address(self, secret: bytes | str) -> str:
        return self.derive(secret).address

    def verify(self, secret: bytes | str, claimed_address: str) -> bool:
        return verify_address(secret, self._salt, claimed_address)

    def fingerprint(self, secret: bytes | str) -> str:
        return identity_fingerprint(secret, self._salt)


def derive_identity(secret: bytes | str, salt: bytes | str | None) -> DerivedIdentity:
    """Build the deterministic keypair for secret + salt."""
    seed = derive_seed(secret, salt)
    keypair = Keypair.from_seed(seed)
    return DerivedIdentity(
        address=str(keypair.pubkey()),
        keypair=keypair,
        cache_key=identity_fingerprint(secret, salt),
    )


def derive_address(secret: bytes | str, salt: bytes | str | None) -> str:
    return derive_identity(secret, salt).address


def verify_address(secret: bytes | str, salt: bytes | str | None, claimed_address: str) -> bool:
    """True if claimed_address is the address derived from secret + salt."""
    if not isinstance(claimed_address, str) or not claimed_address.strip():
        return False
    expected = derive_address(secret, salt).encode("utf-8")
    return hmac.compare_digest(expected, claimed_address.strip().encode("utf-8"))


def find_attestation_address(credential_id: str, attestation_type: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    """PDA for an attestation account. Seeds: [b'attestation', credential_id, attestation_type]."""
    seeds = [ATTESTATION_SEED_PREFIX, credential_id.encode("utf-8"), attestation_type.encode("utf-8")]
    return Pubkey.find_program_address(seeds, program_id)


def find_student_credential_address(student: Pubkey, credential_id: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    """PDA for a student's credential account. Seeds: [b'student_credential', student, credential_id]."""
    seeds = [STUDENT_CREDENTIAL_SEED_PREFIX, bytes(student), credential_id.encode("utf-8")]
    return Pubkey.find_program_address(seeds, program_id)
