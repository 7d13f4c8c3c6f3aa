"""
Session and stream state for the attestation-session service (SAS).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    EXPIRED = "expired"


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class Session:
    """
    Immutable snapshot of an authenticated session.

    expires_at is wall-clock epoch seconds. Tokens are excluded from repr so a
    logged session never leaks credentials.
    """

    token: str = field(repr=False)
    expires_at: float
    refresh_token: str | None = field(default=None, repr=False)
    streaming_endpoint: str | None = None
    user: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def seconds_remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)
