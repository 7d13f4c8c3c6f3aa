"""
On-chain attestation records.

Account payloads are UTF-8 JSON written by the create_attestation
instruction. decode_attestation is a tagged decode: it either returns a
complete AttestationRecord or raises StructuralValidationError whose message
is the verification reason. Partial records are never returned.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from credverify.core.exceptions import StructuralValidationError

REQUIRED_FIELDS = ("credentialId", "studentId", "universityId")

MALFORMED_DATA = "malformed data"
UNKNOWN_ATTESTATION_TYPE = "unknown attestation type"
TIMESTAMP_IN_FUTURE = "timestamp in future"


class AttestationType(str, Enum):
    UNIVERSITY_ISSUED = "UNIVERSITY_ISSUED"
    GOVERNMENT_ACCREDITED = "GOVERNMENT_ACCREDITED"


@dataclass(frozen=True)
class AttestationRecord:
    """Decoded attestation account. timestamp is epoch milliseconds."""

    address: str
    owner_program: str
    attestation_type: AttestationType
    credential_id: str
    student_id: str
    university_id: str
    timestamp: int
    issuer: str | None = None
    government_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "ownerProgram": self.owner_program,
            "attestationType": self.attestation_type.value,
            "credentialId": self.credential_id,
            "studentId": self.student_id,
            "universityId": self.university_id,
            "timestamp": self.timestamp,
            "issuer": self.issuer,
            "governmentId": self.government_id,
            "metadata": dict(self.metadata),
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


def _load_payload(data: bytes) -> dict[str, Any]:
    try:
        text = data.decode("utf-8").strip()
        payload = json.loads(text) if text else None
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StructuralValidationError(MALFORMED_DATA, code="MALFORMED_DATA") from e
    if not isinstance(payload, dict):
        raise StructuralValidationError(MALFORMED_DATA, code="MALFORMED_DATA")
    return payload


def decode_attestation(
    address: str,
    owner_program: str,
    data: bytes,
    *,
    now_ms: int | None = None,
    default_issuer: str | None = None,
) -> AttestationRecord:
    """Decode account data into an AttestationRecord or raise StructuralValidationError."""
    payload = _load_payload(data)
    for name in REQUIRED_FIELDS:
        value = payload.get(name)
        if not isinstance(value, str) or not value:
            raise StructuralValidationError(f"missing field: {name}", field=name, code="MISSING_FIELD")

    try:
        attestation_type = AttestationType(payload.get("attestationType"))
    except ValueError as e:
        raise StructuralValidationError(UNKNOWN_ATTESTATION_TYPE, field="attestationType", code="UNKNOWN_TYPE") from e

    now = _now_ms() if now_ms is None else now_ms
    timestamp = payload.get("timestamp")
    if timestamp is None:
        timestamp = now
    elif isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or not math.isfinite(timestamp):
        raise StructuralValidationError(MALFORMED_DATA, field="timestamp", code="MALFORMED_DATA")
    elif timestamp > now:
        raise StructuralValidationError(TIMESTAMP_IN_FUTURE, field="timestamp", code="TIMESTAMP_IN_FUTURE")

    metadata = payload.get("metadata")
    issuer = payload.get("issuer")
    government_id = payload.get("governmentId")
    return AttestationRecord(
        address=address,
        owner_program=owner_program,
        attestation_type=attestation_type,
        credential_id=payload["credentialId"],
        student_id=payload["studentId"],
        university_id=payload["universityId"],
        timestamp=int(timestamp),
        issuer=issuer if isinstance(issuer, str) and issuer else default_issuer,
        government_id=government_id if isinstance(government_id, str) else None,
        metadata=metadata if isinstance(metadata, dict) else {},
    )
