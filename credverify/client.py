"""
CredentialLedgerClient: the single entry point for applications.

Owns every component (ledger RPC client, submitter, session manager,
subscription registry, verifier, identity cache) and their lifecycle. There
are no module-level singletons: build one client per configuration, call
open() (or use ``async with``), and shutdown() when done. shutdown() is
idempotent and releases every subscription, timer, task and connection.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, Sequence

import httpx
import websockets
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from credverify.attestation.batch_jobs import BatchJob, BatchVerificationJobs
from credverify.attestation.instructions import AttestationRequest, build_create_attestation_instruction
from credverify.attestation.verifier import AttestationVerifier, VerificationResult
from credverify.config.settings import ClientSettings
from credverify.core.events import EventBus, EventKind, Handler, Subscription
from credverify.core.exceptions import ConfigurationError
from credverify.core.retry import RetryPolicy
from credverify.cv_logging import get_logger, short_id
from credverify.identity.address_generation import IdentityDeriver
from credverify.identity.cache import AddressCheck, AddressLookup, CachedIdentityService
from credverify.identity.keypair import load_keypair
from credverify.identity.validation import DEFAULT_COUNTRY
from credverify.ledger.client import LedgerClient
from credverify.ledger.submitter import SubmissionResult, SubmitOptions, TransactionSubmitter
from credverify.ledger.subscriptions import LedgerSubscriptions
from credverify.session.manager import SessionManager
from credverify.session.models import Session
from credverify.utils.address_utils import parse_address
from credverify.utils.rate_limiter import TokenBucket

logger = get_logger(__name__)


class CredentialLedgerClient:
    """Facade over submission, session, identity and verification components."""

    def __init__(
        self,
        settings: ClientSettings | None = None,
        *,
        ledger: LedgerClient | None = None,
        authority: Keypair | None = None,
        events: EventBus | None = None,
        http_client: httpx.AsyncClient | None = None,
        ws_connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or ClientSettings()
        s = self.settings
        self.events = events or EventBus()
        self.ledger = ledger or LedgerClient(s.rpc_url, commitment=s.commitment, timeout=s.rpc_timeout_sec)
        self._authority = authority
        self._http_client = http_client
        self._ws_connect = ws_connect
        self._sleep = sleep
        self._clock = clock
        self.retry_policy = RetryPolicy(
            max_attempts=s.max_retries,
            base_delay=s.retry_base_delay_sec,
            max_delay=s.retry_max_delay_sec,
            jitter_fraction=s.retry_jitter_fraction,
        )
        self.rate_limiter = TokenBucket(s.rate_limit_capacity, s.rate_limit_interval_sec)
        self.verifier = AttestationVerifier(
            self.ledger,
            s.program_id,
            chunk_size=s.batch_chunk_size,
            chunk_pause=s.batch_pause_sec,
            sleep=sleep,
        )
        self.identity = CachedIdentityService(
            IdentityDeriver(s.identity_salt) if s.identity_salt else None,
            self.rate_limiter,
            verifier=self.verifier,
        )
        self.batch_jobs = BatchVerificationJobs(
            self.verifier,
            self.events,
            chunk_size=s.batch_chunk_size,
            chunk_pause=s.batch_pause_sec,
            sleep=sleep,
        )
        self._submitter: TransactionSubmitter | None = None
        self._session_manager: SessionManager | None = None
        self._subscriptions: LedgerSubscriptions | None = None
        self._handles: list[Subscription] = []
        self._opened = False
        self._closed = False

    def __repr__(self) -> str:
        return f"CredentialLedgerClient(rpc_url={short_id(self.settings.rpc_url, 32)!r}, open={self._opened})"

    # lifecycle

    async def open(self) -> "CredentialLedgerClient":
        if self._closed:
            raise RuntimeError("CredentialLedgerClient has been shut down")
        if not self._opened:
            await self.ledger.open()
            self._opened = True
            logger.info("client_opened", program_id=short_id(self.settings.program_id))
        return self

    async def shutdown(self) -> None:
        """Release every resource. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()
        await self.batch_jobs.close()
        if self._subscriptions is not None:
            await self._subscriptions.close()
        if self._session_manager is not None:
            await self._session_manager.close()
        await self.ledger.close()
        await self.events.close()
        self._opened = False
        logger.info("client_shutdown")

    async def __aenter__(self) -> "CredentialLedgerClient":
        return await self.open()

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("CredentialLedgerClient has been shut down")
        if not self._opened:
            raise RuntimeError("CredentialLedgerClient is not open; call open() first")

    def _track(self, handle: Subscription) -> Subscription:
        self._handles.append(handle)
        return handle

    # components built on first use

    @property
    def submitter(self) -> TransactionSubmitter:
        if self._submitter is None:
            authority = self._authority or load_keypair(self.settings.authority_private_key)
            self._submitter = TransactionSubmitter(
                self.ledger,
                authority,
                self.events,
                policy=self.retry_policy,
                commitment=self.settings.commitment,
                confirm_timeout=self.settings.confirm_timeout_sec,
                poll_interval=self.settings.confirm_poll_interval_sec,
                sleep=self._sleep,
                clock=self._clock,
            )
        return self._submitter

    @property
    def session_manager(self) -> SessionManager:
        if self._session_manager is None:
            s = self.settings
            if not s.sas_enabled:
                raise ConfigurationError("SAS_AUTH_ENDPOINT is not configured")
            self._session_manager = SessionManager(
                s.sas_auth_endpoint,
                s.sas_api_key,
                self.events,
                ws_endpoint=s.sas_ws_endpoint or None,
                session_timeout=s.sas_session_timeout_sec,
                auto_refresh=s.sas_auto_refresh,
                reconnect_base_delay=s.reconnect_base_delay_sec,
                max_reconnect_attempts=s.max_reconnect_attempts,
                http_client=self._http_client,
                connect=self._ws_connect,
            )
        return self._session_manager

    @property
    def subscriptions(self) -> LedgerSubscriptions:
        if self._subscriptions is None:
            self._subscriptions = LedgerSubscriptions(
                self.settings.ws_url,
                self.events,
                commitment=self.settings.commitment,
                connect=self._ws_connect,
            )
        return self._subscriptions

    # identity

    def derive_address(self, seed: str, *, caller: str = "default", namespace: str = DEFAULT_COUNTRY) -> AddressLookup:
        return self.identity.derive_address(seed, caller=caller, namespace=namespace)

    def verify_address(
        self,
        seed: str,
        address: str,
        *,
        caller: str = "default",
        namespace: str = DEFAULT_COUNTRY,
    ) -> AddressCheck:
        return self.identity.verify_address(seed, address, caller=caller, namespace=namespace)

    def batch_verify_addresses(
        self,
        pairs: Sequence[tuple[str, str]],
        *,
        caller: str = "default",
        namespace: str = DEFAULT_COUNTRY,
    ) -> list[AddressCheck]:
        return self.identity.batch_verify_addresses(pairs, caller=caller, namespace=namespace)

    def invalidate_identity(self, seed: str, namespace: str = DEFAULT_COUNTRY) -> int:
        return self.identity.invalidate(seed, namespace)

    # submission

    async def submit_and_confirm(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair] = (),
        options: SubmitOptions | None = None,
    ) -> SubmissionResult:
        self._ensure_open()
        return await self.submitter.submit(instructions, signers, options)

    async def create_attestation(
        self,
        request: AttestationRequest,
        options: SubmitOptions | None = None,
    ) -> tuple[SubmissionResult, str]:
        """Submit a create_attestation instruction. Returns (result, attestation address)."""
        self._ensure_open()
        program_id = parse_address(self.settings.program_id, field="program_id")
        authority = Pubkey.from_string(self.submitter.authority_address)
        ix, pda = build_create_attestation_instruction(
            program_id,
            authority,
            request,
            timestamp_ms=int(time.time() * 1000),
        )
        result = await self.submitter.submit([ix], (), options)
        self.identity.invalidate_attestation(str(pda))
        return result, str(pda)

    async def estimate_fee(self, instructions: Sequence[Instruction]) -> int | None:
        self._ensure_open()
        return await self.submitter.estimate_fee(instructions)

    async def authority_balance(self) -> int:
        self._ensure_open()
        return await self.submitter.authority_balance()

    # session

    async def authenticate(self, credentials: dict[str, Any] | None = None) -> Session:
        self._ensure_open()
        return await self.session_manager.authenticate(credentials)

    async def refresh_session(self) -> Session:
        self._ensure_open()
        return await self.session_manager.refresh()

    async def logout(self) -> None:
        if self._session_manager is not None:
            await self._session_manager.logout()

    def is_authenticated(self) -> bool:
        return self._session_manager is not None and self._session_manager.is_authenticated()

    @property
    def session(self) -> Session | None:
        return self._session_manager.session if self._session_manager is not None else None

    # events and subscriptions

    def on_event(self, kind: EventKind | str, handler: Handler) -> Subscription:
        return self._track(self.events.on(kind, handler))

    async def listen_to_account_changes(self, address: str, handler: Handler) -> Subscription:
        self._ensure_open()
        return self._track(await self.subscriptions.listen_to_account_changes(address, handler))

    async def listen_to_program_logs(self, handler: Handler, program_id: str | None = None) -> Subscription:
        self._ensure_open()
        target = program_id or self.settings.program_id
        return self._track(await self.subscriptions.listen_to_program_logs(target, handler))

    # verification

    async def verify(self, address: str, *, caller: str = "default") -> VerificationResult:
        self._ensure_open()
        return await self.identity.verify_attestation(address, caller=caller)

    async def batch_verify(self, addresses: Iterable[str]) -> dict[str, VerificationResult]:
        self._ensure_open()
        return await self.verifier.batch_verify(addresses)

    def start_batch_job(self, addresses: Iterable[str], *, metadata: dict[str, Any] | None = None) -> str:
        self._ensure_open()
        return self.batch_jobs.start(addresses, metadata=metadata)

    def batch_job_status(self, batch_id: str) -> BatchJob | None:
        return self.batch_jobs.status(batch_id)
