"""
On-chain attestation records: decoding, instruction building and verification.
"""

from credverify.attestation.batch_jobs import BatchJob, BatchStatus, BatchVerificationJobs
from credverify.attestation.instructions import AttestationRequest, build_create_attestation_instruction
from credverify.attestation.models import AttestationRecord, AttestationType, decode_attestation
from credverify.attestation.verifier import AttestationVerifier, VerificationResult

__all__ = [
    "AttestationRecord",
    "AttestationRequest",
    "AttestationType",
    "AttestationVerifier",
    "BatchJob",
    "BatchStatus",
    "BatchVerificationJobs",
    "VerificationResult",
    "build_create_attestation_instruction",
    "decode_attestation",
]
