"""
Country-specific format checks for national identifiers.

Runs before derivation so obviously malformed identifiers never reach the
keypair step. NG identifiers additionally carry a state-code range and a
weighted mod-11 check digit.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_COUNTRY = "DEFAULT"

IDENTIFIER_PATTERNS: dict[str, re.Pattern[str]] = {
    # Nigeria: 11 digits
    "NG": re.compile(r"^\d{11}$"),
    # US: 9 digits, optional hyphens
    "US": re.compile(r"^\d{3}-?\d{2}-?\d{4}$"),
    # UK: 2 letters, 6 digits, 1 letter
    "UK": re.compile(r"^[A-Z]{2}\d{6}[A-Z]$"),
    DEFAULT_COUNTRY: re.compile(r"^[A-Z0-9]{8,20}$"),
}


@dataclass(frozen=True)
class IdentifierValidation:
    is_valid: bool
    country_code: str
    normalized: str = ""
    error: str | None = None


def normalize_identifier(value: str) -> str:
    return value.strip().upper()


def _ng_checksum_ok(nin: str) -> bool:
    state_code = int(nin[0:3])
    if state_code < 1 or state_code > 38:
        return False
    digits = [int(c) for c in nin]
    total = sum(d * (10 - i) for i, d in enumerate(digits[:10]))
    return (total % 11) % 10 == digits[10]


def validate_identifier(value: str | None, country_code: str | None = None) -> IdentifierValidation:
    """Check value against the country's pattern; unknown countries use DEFAULT."""
    country = (country_code or DEFAULT_COUNTRY).strip().upper()
    if not value or not value.strip():
        return IdentifierValidation(False, country, error="Identifier is required")
    normalized = normalize_identifier(value)
    pattern = IDENTIFIER_PATTERNS.get(country, IDENTIFIER_PATTERNS[DEFAULT_COUNTRY])
    if not pattern.match(normalized):
        return IdentifierValidation(False, country, normalized, f"Invalid identifier format for country {country}")
    if country == "NG" and not _ng_checksum_ok(normalized):
        return IdentifierValidation(False, country, normalized, "Invalid Nigerian identifier checksum")
    return IdentifierValidation(True, country, normalized)
