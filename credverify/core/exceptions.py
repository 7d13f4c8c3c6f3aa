"""
Application-level exceptions.

Every error carries a stable machine-readable ``code`` so callers can map
failures to support diagnostics without re-querying the network. The
``is_retryable`` classifier is the single place that decides which failures
consume retry budget.
"""

from __future__ import annotations

import asyncio
from typing import Any


class CredverifyError(Exception):
    """Base class for all credverify errors."""

    code = "CREDVERIFY_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigurationError(CredverifyError):
    """Missing or unusable configuration (salt, keys, endpoints). Never retried."""

    code = "CONFIGURATION_ERROR"


class ValidationError(CredverifyError):
    """Malformed address or input. Never retried."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: str | None = None, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.field = field


class StructuralValidationError(ValidationError):
    """On-chain payload failed the tagged decode step."""

    code = "STRUCTURAL_VALIDATION_ERROR"


class NetworkTransientError(CredverifyError):
    """Timeout, connection reset, or RPC transport failure. Retryable."""

    code = "NETWORK_TRANSIENT"


class LedgerRejectedError(CredverifyError):
    """The ledger returned an explicit transaction error. Fatal."""

    code = "LEDGER_REJECTED"

    def __init__(
        self,
        message: str,
        *,
        signature: str | None = None,
        ledger_error: Any = None,
        logs: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.signature = signature
        self.ledger_error = ledger_error
        self.logs = logs or []

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["signature"] = self.signature
        out["ledger_error"] = None if self.ledger_error is None else str(self.ledger_error)
        return out


class ConfirmationTimeoutError(CredverifyError):
    """Confirmation did not arrive in time. Retryable at the submission level only."""

    code = "CONFIRMATION_TIMEOUT"

    def __init__(self, message: str, *, signature: str | None = None) -> None:
        super().__init__(message)
        self.signature = signature


class BlockhashExpiredError(ConfirmationTimeoutError):
    """Network block height passed the attempt's last valid height."""

    code = "BLOCKHASH_EXPIRED"


class AuthenticationError(CredverifyError):
    """The attestation-session service rejected the credentials or returned no token."""

    code = "AUTHENTICATION_FAILED"


class SessionExpiredError(CredverifyError):
    """Session could not be refreshed or was expired by the server."""

    code = "SESSION_EXPIRED"


class RateLimitedError(CredverifyError):
    """Caller exceeded its token bucket. Fails closed; never queued."""

    code = "RATE_LIMITED"

    def __init__(self, message: str, *, caller: str | None = None, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.caller = caller
        self.retry_after = retry_after


class InvalidStateTransition(CredverifyError):
    """A confirmation or session state machine was driven backwards."""

    code = "INVALID_STATE_TRANSITION"


class RetryExhaustedError(CredverifyError):
    """All attempts failed with retryable errors; wraps the last one."""

    code = "RETRY_EXHAUSTED"

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class SubmissionFailedError(CredverifyError):
    """Terminal failure of a logical submission, with every attempt signature."""

    code = "SUBMISSION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException,
        attempts: int,
        signatures: list[str],
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts
        self.signatures = list(signatures)

    @property
    def last_signature(self) -> str | None:
        return self.signatures[-1] if self.signatures else None

    @property
    def ledger_error(self) -> Any:
        return getattr(self.cause, "ledger_error", None)

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out.update(
            attempts=self.attempts,
            signatures=self.signatures,
            cause_code=getattr(self.cause, "code", type(self.cause).__name__),
        )
        return out


class SubmissionCancelledError(CredverifyError):
    """
    Local waiting stopped (deadline or caller cancellation).

    Cancellation is local-only: transactions already sent may still land.
    """

    code = "SUBMISSION_CANCELLED"

    def __init__(self, message: str, *, signatures: list[str]) -> None:
        super().__init__(message)
        self.signatures = list(signatures)


_FATAL_TYPES: tuple[type[BaseException], ...] = (
    ConfigurationError,
    AuthenticationError,
    ValidationError,
    LedgerRejectedError,
    SessionExpiredError,
    RateLimitedError,
    InvalidStateTransition,
)

_RETRYABLE_TYPES: tuple[type[BaseException], ...] = (
    NetworkTransientError,
    ConfirmationTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)


def is_retryable(exc: BaseException) -> bool:
    """Default classifier: transient network/expiry failures retry, everything else is fatal."""
    if isinstance(exc, _FATAL_TYPES):
        return False
    return isinstance(exc, _RETRYABLE_TYPES)
