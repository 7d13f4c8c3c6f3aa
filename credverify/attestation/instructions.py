"""
create_attestation instruction builder.

The attestation account is a PDA with seeds
[b'attestation', credential_id, attestation_type]. Instruction data is the
UTF-8 JSON payload tagged with ``"type": "create_attestation"``; the program
stores it as the account data that decode_attestation later reads.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from credverify.attestation.models import AttestationType
from credverify.identity.address_generation import find_attestation_address
from credverify.utils.address_utils import parse_address

CREATE_ATTESTATION_TAG = "create_attestation"


@dataclass(frozen=True)
class AttestationRequest:
    """Fields written into a new attestation account."""

    credential_id: str
    student_id: str
    university_id: str
    attestation_type: AttestationType = AttestationType.UNIVERSITY_ISSUED
    government_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self, *, timestamp_ms: int | None = None, issuer: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "credentialId": self.credential_id,
            "studentId": self.student_id,
            "universityId": self.university_id,
            "attestationType": AttestationType(self.attestation_type).value,
        }
        if self.government_id:
            payload["governmentId"] = self.government_id
        if self.metadata:
            payload["metadata"] = self.metadata
        if timestamp_ms is not None:
            payload["timestamp"] = timestamp_ms
        if issuer:
            payload["issuer"] = issuer
        return payload


def build_create_attestation_instruction(
    program_id: Pubkey,
    authority: Pubkey,
    request: AttestationRequest,
    *,
    timestamp_ms: int | None = None,
) -> tuple[Instruction, Pubkey]:
    """
    Build the create_attestation instruction. Returns (Instruction, attestation_pda).

    student_id and university_id must be base58 addresses; ValidationError otherwise.
    """
    student = parse_address(request.student_id, field="student_id")
    university = parse_address(request.university_id, field="university_id")
    attestation_type = AttestationType(request.attestation_type).value
    pda, _ = find_attestation_address(request.credential_id, attestation_type, program_id)

    payload = {"type": CREATE_ATTESTATION_TAG, **request.to_payload(timestamp_ms=timestamp_ms, issuer=str(authority))}
    data = json.dumps(payload, separators=(",", ":")).encode("utf-8")

    accounts = [
        AccountMeta(pubkey=pda, is_signer=False, is_writable=True),
        AccountMeta(pubkey=student, is_signer=False, is_writable=False),
        AccountMeta(pubkey=university, is_signer=False, is_writable=False),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
    ]
    return Instruction(program_id=program_id, data=data, accounts=accounts), pda
