"""
Deterministic identity derivation, authority keys, and the lookup cache.
"""

from credverify.identity.address_generation import (
    DerivedIdentity,
    IdentityDeriver,
    derive_address,
    derive_identity,
    verify_address,
)
from credverify.identity.keypair import load_keypair

__all__ = [
    "DerivedIdentity",
    "IdentityDeriver",
    "derive_address",
    "derive_identity",
    "load_keypair",
    "verify_address",
]
