"""
Transaction submission and confirmation.

One logical submission runs up to max_attempts attempts. Each attempt fetches
a fresh blockhash, compiles and signs a message with the authority as fee
payer, broadcasts it, and polls its signature status until one of:

- confirmed/finalized: CONFIRMED, the submission succeeds;
- a ledger error: FAILED, fatal, no further attempts;
- block height past the blockhash's last valid height: EXPIRED, retryable;
- the confirmation timeout: EXPIRED, retryable.

Attempt states only move forward (UNSENT -> SENT -> terminal). An attempt
that expired is never revisited, so a late confirmation of an abandoned
signature cannot resurrect it. Events per submission, in order: attempt,
sent, then confirmed | expired per attempt, and one terminal confirmed or
failed.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction

from credverify.core.events import EventBus, EventKind
from credverify.core.exceptions import (
    BlockhashExpiredError,
    ConfirmationTimeoutError,
    InvalidStateTransition,
    LedgerRejectedError,
    NetworkTransientError,
    RetryExhaustedError,
    SubmissionCancelledError,
    SubmissionFailedError,
    ValidationError,
)
from credverify.core.retry import RetryPolicy, RetryScheduler
from credverify.cv_logging import get_logger, short_id
from credverify.ledger.client import LedgerClient
from credverify.ledger.models import SignatureStatus

logger = get_logger(__name__)

DEFAULT_CONFIRM_TIMEOUT_SEC = 30.0
DEFAULT_CONFIRM_POLL_INTERVAL_SEC = 1.0


class ConfirmationState(str, Enum):
    UNSENT = "unsent"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({ConfirmationState.CONFIRMED, ConfirmationState.FAILED, ConfirmationState.EXPIRED})

_ALLOWED_TRANSITIONS: dict[ConfirmationState, frozenset[ConfirmationState]] = {
    ConfirmationState.UNSENT: frozenset({ConfirmationState.SENT, ConfirmationState.FAILED}),
    ConfirmationState.SENT: _TERMINAL_STATES,
}


@dataclass
class SubmissionAttempt:
    """One retry iteration of a submission."""

    attempt_number: int
    blockhash: str
    last_valid_block_height: int
    signature: str | None = None
    state: ConfirmationState = ConfirmationState.UNSENT
    error: str | None = None
    slot: int | None = None
    raw_payload: bytes = field(default=b"", repr=False)

    def transition(self, new_state: ConfirmationState, *, error: str | None = None) -> None:
        """Move forward to new_state; InvalidStateTransition for anything else."""
        if new_state not in _ALLOWED_TRANSITIONS.get(self.state, frozenset()):
            raise InvalidStateTransition(
                f"attempt {self.attempt_number}: cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        if error is not None:
            self.error = error


@dataclass
class SubmitOptions:
    """Per-call overrides. None means use the submitter's defaults."""

    max_attempts: int | None = None
    base_delay: float | None = None
    max_delay: float | None = None
    jitter_fraction: float | None = None
    commitment: str | None = None
    skip_preflight: bool = False
    confirm_timeout: float | None = None
    poll_interval: float | None = None
    # seconds from the call; stops local waiting only
    deadline: float | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class SubmissionResult:
    signature: str
    slot: int | None
    blockhash: str
    last_valid_block_height: int
    attempts: int
    history: tuple[SubmissionAttempt, ...] = field(default=(), repr=False, compare=False)


def _signatures(attempts: Sequence[SubmissionAttempt]) -> list[str]:
    return [a.signature for a in attempts if a.signature]


def _reached(status: SignatureStatus, commitment: str) -> bool:
    if commitment == "finalized":
        return status.err is None and status.confirmation_status == "finalized"
    return status.is_confirmed


class TransactionSubmitter:
    """Sign, send and confirm transactions for one authority keypair."""

    def __init__(
        self,
        ledger: LedgerClient,
        authority: Keypair,
        events: EventBus,
        *,
        policy: RetryPolicy | None = None,
        commitment: str = "confirmed",
        confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT_SEC,
        poll_interval: float = DEFAULT_CONFIRM_POLL_INTERVAL_SEC,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._ledger = ledger
        self._authority = authority
        self._events = events
        self._policy = policy or RetryPolicy()
        self._commitment = commitment
        self._confirm_timeout = confirm_timeout
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._scheduler = RetryScheduler(self._policy, sleep=sleep, rng=rng)

    @property
    def authority_address(self) -> str:
        return str(self._authority.pubkey())

    def _policy_for(self, opts: SubmitOptions) -> RetryPolicy:
        return self._policy.with_overrides(
            max_attempts=opts.max_attempts,
            base_delay=opts.base_delay,
            max_delay=opts.max_delay,
            jitter_fraction=opts.jitter_fraction,
        )

    def _sign(self, instructions: Sequence[Instruction], signers: Sequence[Keypair], blockhash: Hash) -> tuple[bytes, str]:
        payer = self._authority.pubkey()
        message = Message.new_with_blockhash(list(instructions), payer, blockhash)
        keypairs = [self._authority] + [s for s in signers if s.pubkey() != payer]
        tx = Transaction(keypairs, message, blockhash)
        return bytes(tx), str(tx.signatures[0])

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair] = (),
        options: SubmitOptions | None = None,
    ) -> SubmissionResult:
        """
        Submit instructions and wait for confirmation.

        Raises SubmissionFailedError (fatal ledger error or retries exhausted)
        or SubmissionCancelledError (deadline passed). Both carry every
        signature sent so far.
        """
        opts = options or SubmitOptions()
        if not instructions:
            raise ValidationError("at least one instruction is required", field="instructions")
        policy = self._policy_for(opts)
        attempts: list[SubmissionAttempt] = []
        ctx: dict[str, Any] = {"idempotency_key": opts.idempotency_key} if opts.idempotency_key else {}

        async def _attempt(n: int) -> SubmissionAttempt:
            return await self._run_attempt(n, instructions, signers, opts, attempts, ctx)

        run = self._scheduler.run(_attempt, policy=policy, label="submit")
        try:
            if opts.deadline is None:
                final = await run
            else:
                final = await asyncio.wait_for(run, timeout=max(0.0, opts.deadline))
        except asyncio.TimeoutError:
            sigs = _signatures(attempts)
            logger.warning("tx_submission_deadline", attempts=len(attempts), signatures=sigs, **ctx)
            raise SubmissionCancelledError(
                f"Gave up waiting after {opts.deadline}s; sent transactions may still land",
                signatures=sigs,
            ) from None
        except asyncio.CancelledError:
            logger.warning("tx_submission_cancelled", attempts=len(attempts), signatures=_signatures(attempts), **ctx)
            raise
        except RetryExhaustedError as e:
            raise self._fail(e.last_error, attempts, ctx) from e.last_error
        except Exception as e:
            raise self._fail(e, attempts, ctx) from e

        self._events.emit(
            EventKind.CONFIRMED,
            signature=final.signature,
            slot=final.slot,
            attempt=final.attempt_number,
            attempts=len(attempts),
            terminal=True,
            **ctx,
        )
        logger.info(
            "tx_submission_confirmed",
            signature=short_id(final.signature, 24),
            slot=final.slot,
            attempts=len(attempts),
        )
        return SubmissionResult(
            signature=final.signature or "",
            slot=final.slot,
            blockhash=final.blockhash,
            last_valid_block_height=final.last_valid_block_height,
            attempts=len(attempts),
            history=tuple(attempts),
        )

    def _fail(self, cause: BaseException, attempts: list[SubmissionAttempt], ctx: dict[str, Any]) -> SubmissionFailedError:
        sigs = _signatures(attempts)
        self._events.emit(
            EventKind.FAILED,
            error=str(cause),
            error_code=getattr(cause, "code", type(cause).__name__),
            attempts=len(attempts),
            signatures=sigs,
            signature=sigs[-1] if sigs else None,
            terminal=True,
            **ctx,
        )
        logger.error(
            "tx_submission_failed",
            attempts=len(attempts),
            error_type=type(cause).__name__,
            error=str(cause),
            signatures=sigs,
        )
        return SubmissionFailedError(
            f"Submission failed after {len(attempts)} attempt(s): {cause}",
            cause=cause,
            attempts=len(attempts),
            signatures=sigs,
        )

    async def _run_attempt(
        self,
        n: int,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        opts: SubmitOptions,
        attempts: list[SubmissionAttempt],
        ctx: dict[str, Any],
    ) -> SubmissionAttempt:
        commitment = opts.commitment or self._commitment
        self._events.emit(EventKind.ATTEMPT, attempt=n, **ctx)
        bh = await self._ledger.get_latest_blockhash(commitment)
        payload, signature = self._sign(instructions, signers, Hash.from_string(bh.blockhash))
        attempt = SubmissionAttempt(
            attempt_number=n,
            blockhash=bh.blockhash,
            last_valid_block_height=bh.last_valid_block_height,
            raw_payload=payload,
        )
        attempts.append(attempt)
        try:
            sent = await self._ledger.send_raw_transaction(
                payload,
                skip_preflight=opts.skip_preflight,
                preflight_commitment=commitment,
            )
        except LedgerRejectedError as e:
            attempt.transition(ConfirmationState.FAILED, error=str(e))
            raise
        except NetworkTransientError as e:
            attempt.error = str(e)
            raise
        attempt.signature = sent or signature
        attempt.transition(ConfirmationState.SENT)
        self._events.emit(
            EventKind.SENT,
            signature=attempt.signature,
            attempt=n,
            blockhash=attempt.blockhash,
            last_valid_block_height=attempt.last_valid_block_height,
            **ctx,
        )
        logger.info(
            "tx_sent",
            signature=short_id(attempt.signature, 24),
            attempt=n,
            last_valid_block_height=attempt.last_valid_block_height,
        )
        await self._await_confirmation(attempt, commitment, opts, ctx)
        return attempt

    async def _await_confirmation(
        self,
        attempt: SubmissionAttempt,
        commitment: str,
        opts: SubmitOptions,
        ctx: dict[str, Any],
    ) -> None:
        """Poll until CONFIRMED (return), FAILED (LedgerRejectedError) or EXPIRED (ConfirmationTimeoutError)."""
        sig = attempt.signature or ""
        timeout = opts.confirm_timeout if opts.confirm_timeout is not None else self._confirm_timeout
        interval = opts.poll_interval if opts.poll_interval is not None else self._poll_interval
        started = self._clock()
        while True:
            status: SignatureStatus | None = None
            try:
                status = await self._ledger.get_signature_status(sig)
            except NetworkTransientError as e:
                logger.warning("tx_confirm_poll_error", signature=short_id(sig, 24), error=str(e))
            if status is not None and status.is_failed:
                attempt.slot = status.slot
                attempt.transition(ConfirmationState.FAILED, error=str(status.err))
                logger.warning("tx_confirm_failed", signature=short_id(sig, 24), err=str(status.err))
                raise LedgerRejectedError(
                    f"Transaction {sig} failed: {status.err}",
                    signature=sig,
                    ledger_error=status.err,
                )
            if status is not None and _reached(status, commitment):
                attempt.slot = status.slot
                attempt.transition(ConfirmationState.CONFIRMED)
                logger.info(
                    "tx_confirmed",
                    signature=short_id(sig, 24),
                    slot=status.slot,
                    confirmation_status=status.confirmation_status,
                )
                return

            height: int | None = None
            try:
                height = await self._ledger.get_block_height(commitment)
            except NetworkTransientError as e:
                logger.warning("tx_block_height_poll_error", signature=short_id(sig, 24), error=str(e))
            if height is not None and height > attempt.last_valid_block_height:
                self._expire(attempt, "blockhash_expired", ctx, block_height=height)
                raise BlockhashExpiredError(
                    f"Blockhash for {sig} expired at height {attempt.last_valid_block_height}",
                    signature=sig,
                )
            if self._clock() - started >= timeout:
                self._expire(attempt, "timeout", ctx)
                raise ConfirmationTimeoutError(f"No confirmation for {sig} within {timeout}s", signature=sig)
            await self._sleep(interval)

    def _expire(self, attempt: SubmissionAttempt, reason: str, ctx: dict[str, Any], **extra: Any) -> None:
        attempt.transition(ConfirmationState.EXPIRED, error=reason)
        self._events.emit(
            EventKind.EXPIRED,
            signature=attempt.signature,
            attempt=attempt.attempt_number,
            reason=reason,
            **extra,
            **ctx,
        )
        logger.warning(
            "tx_attempt_expired",
            signature=short_id(attempt.signature, 24),
            attempt=attempt.attempt_number,
            reason=reason,
            **extra,
        )

    async def estimate_fee(self, instructions: Sequence[Instruction]) -> int | None:
        """Fee in lamports for a message with these instructions, paid by the authority."""
        bh = await self._ledger.get_latest_blockhash()
        message = Message.new_with_blockhash(list(instructions), self._authority.pubkey(), Hash.from_string(bh.blockhash))
        return await self._ledger.get_fee_for_message(message)

    async def authority_balance(self) -> int:
        return await self._ledger.get_balance(self.authority_address)
