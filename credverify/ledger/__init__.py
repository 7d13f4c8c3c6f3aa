"""
Ledger access: RPC client, transaction submitter, websocket subscriptions.
"""

from credverify.ledger.client import LedgerClient
from credverify.ledger.models import AccountSnapshot, BlockhashInfo, SignatureStatus
from credverify.ledger.submitter import (
    ConfirmationState,
    SubmissionAttempt,
    SubmissionResult,
    SubmitOptions,
    TransactionSubmitter,
)
from credverify.ledger.subscriptions import LedgerSubscriptions

__all__ = [
    "AccountSnapshot",
    "BlockhashInfo",
    "ConfirmationState",
    "LedgerClient",
    "LedgerSubscriptions",
    "SignatureStatus",
    "SubmissionAttempt",
    "SubmissionResult",
    "SubmitOptions",
    "TransactionSubmitter",
]
