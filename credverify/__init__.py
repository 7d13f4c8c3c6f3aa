"""
credverify — Solana attestation client core.

Submits transactions and waits for durable confirmation, derives
deterministic identities from private identifiers, keeps an authenticated
reconnecting session with the attestation-session service, and verifies
on-chain attestation records singly or in batch.
"""

__version__ = "0.1.0"
