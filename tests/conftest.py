"""
Pytest fixtures and fakes for credverify tests. No network access: the ledger,
the SAS HTTP API and websockets are all replaced in-process.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import pytest
from solders.hash import Hash
from solders.keypair import Keypair

from credverify.core.events import EventBus, LedgerEvent
from credverify.core.exceptions import NetworkTransientError
from credverify.ledger.models import AccountSnapshot, BlockhashInfo, SignatureStatus

PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
OTHER_PROGRAM_ID = "11111111111111111111111111111111"


class FakeClock:
    """Monotonic clock that only moves when the fake sleep is awaited."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class FakeLedger:
    """
    Stand-in for LedgerClient.

    send_results: items are a signature string or an exception to raise, consumed
    in order (the last one repeats). statuses: signature -> list of
    SignatureStatus | None consumed per poll (the last one repeats).
    """

    def __init__(self) -> None:
        self.block_height = 100
        self.last_valid_offset = 150
        self.send_results: list[Any] = []
        self.statuses: dict[str, list[SignatureStatus | None]] = {}
        self.default_status: Callable[[str], SignatureStatus | None] | None = None
        self.accounts: dict[str, AccountSnapshot | Exception | None] = {}
        self.sent: list[bytes] = []
        self.blockhashes: list[BlockhashInfo] = []
        self.balance = 5_000_000
        self.fee = 5000
        self.opened = False
        self.closed = False

    async def open(self) -> "FakeLedger":
        self.opened = True
        return self

    async def close(self) -> None:
        self.closed = True

    async def get_latest_blockhash(self, commitment: str | None = None) -> BlockhashInfo:
        info = BlockhashInfo(str(Hash.new_unique()), self.block_height + self.last_valid_offset)
        self.blockhashes.append(info)
        return info

    async def send_raw_transaction(self, payload: bytes, *, skip_preflight: bool = False, preflight_commitment: str | None = None) -> str:
        self.sent.append(payload)
        outcome = self.send_results[min(len(self.sent), len(self.send_results)) - 1] if self.send_results else None
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome or ""

    async def get_signature_status(self, signature: str) -> SignatureStatus | None:
        queue = self.statuses.get(signature)
        if queue:
            return queue.pop(0) if len(queue) > 1 else queue[0]
        if self.default_status is not None:
            return self.default_status(signature)
        return None

    async def get_block_height(self, commitment: str | None = None) -> int:
        return self.block_height

    async def get_account_info(self, address: str) -> AccountSnapshot | None:
        value = self.accounts.get(address)
        if isinstance(value, Exception):
            raise value
        return value

    async def get_fee_for_message(self, message: Any) -> int | None:
        return self.fee

    async def get_balance(self, address: str) -> int:
        return self.balance


def confirmed(signature: str, slot: int = 42) -> SignatureStatus:
    return SignatureStatus(signature=signature, slot=slot, err=None, confirmation_status="confirmed")


def failed(signature: str, err: Any = "InstructionError", slot: int = 42) -> SignatureStatus:
    return SignatureStatus(signature=signature, slot=slot, err=err, confirmation_status="processed")


def attestation_account(address: str, payload: dict[str, Any] | bytes, owner: str = PROGRAM_ID) -> AccountSnapshot:
    data = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return AccountSnapshot(address=address, owner=owner, lamports=1_000_000, data=data)


def valid_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "credentialId": "cred-001",
        "studentId": str(Keypair().pubkey()),
        "universityId": str(Keypair().pubkey()),
        "attestationType": "UNIVERSITY_ISSUED",
        "timestamp": 1_700_000_000_000,
    }
    payload.update(overrides)
    return payload


class FakeWebSocket:
    """Async-iterable websocket fed from a queue; None in the queue ends iteration."""

    def __init__(self, messages: list[Any] | None = None, *, stay_open: bool = False) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.send_error: BaseException | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        for m in messages or []:
            self._queue.put_nowait(m)
        if not stay_open:
            self._queue.put_nowait(None)

    def feed(self, message: Any) -> None:
        self._queue.put_nowait(message)

    def finish(self) -> None:
        self._queue.put_nowait(None)

    async def send(self, data: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item if isinstance(item, str) else json.dumps(item)


class FakeConnect:
    """Replacement for websockets.connect: hands out prepared sockets or raises."""

    def __init__(self, outcomes: list[FakeWebSocket | BaseException] | None = None, *, default: Any = None) -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.urls: list[str] = []

    def __call__(self, url: str, **kwargs: Any) -> "_FakeConnection":
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if outcome is None:
            outcome = OSError("connection refused")
        return _FakeConnection(outcome)


class _FakeConnection:
    def __init__(self, outcome: Any) -> None:
        self._outcome = outcome

    async def __aenter__(self) -> FakeWebSocket:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc: Any) -> None:
        if isinstance(self._outcome, FakeWebSocket):
            self._outcome.closed = True


class EventRecorder:
    """Collects every event of the given kinds in emission order."""

    def __init__(self, bus: EventBus, *kinds: Any) -> None:
        self.events: list[LedgerEvent] = []
        for kind in kinds:
            bus.on(kind, self.events.append)

    @property
    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def authority() -> Keypair:
    return Keypair()


@pytest.fixture
def transient_error() -> NetworkTransientError:
    return NetworkTransientError("connection reset by peer")
