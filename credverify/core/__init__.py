"""
Core utilities — error taxonomy, retry policy, and the event registry.

Cross-cutting pieces shared by the ledger, session, identity and
attestation packages.
"""
