"""
SessionManager and StreamConnection against an in-process SAS (httpx.MockTransport)
and fake websockets.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest
from solders.pubkey import Pubkey

from conftest import EventRecorder, FakeClock, FakeConnect, FakeWebSocket
from credverify.core.events import EventBus, EventKind
from credverify.core.exceptions import AuthenticationError, NetworkTransientError, SessionExpiredError
from credverify.session.manager import SessionManager
from credverify.session.models import AuthState, StreamState
from credverify.session.stream import StreamConnection, stream_url

AUTH_ENDPOINT = "https://sas.test/api"
NOW = 1_700_000_000.0

SESSION_KINDS = (
    EventKind.SESSION_AUTHENTICATED,
    EventKind.SESSION_AUTH_FAILED,
    EventKind.SESSION_REFRESHED,
    EventKind.SESSION_EXPIRED,
)


class FakeSAS:
    """Scripted SAS endpoints; responses are keyed by path suffix."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, Any] = {
            "authenticate": httpx.Response(
                200,
                json={"token": "tok-1", "refreshToken": "ref-1", "expiresIn": 3600, "user": {"id": "user-42"}},
            ),
            "refresh": httpx.Response(200, json={"token": "tok-2", "expiresIn": 3600}),
            "logout": httpx.Response(204),
        }
        self.refresh_gate: asyncio.Event | None = None
        self.auth_gate: asyncio.Event | None = None

    def paths(self) -> list[str]:
        return [r.url.path.rsplit("/", 1)[-1] for r in self.requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        name = request.url.path.rsplit("/", 1)[-1]
        if name == "authenticate" and self.auth_gate is not None:
            await self.auth_gate.wait()
        if name == "refresh":
            if self.refresh_gate is not None:
                await self.refresh_gate.wait()
        outcome = self.responses[name]
        if callable(outcome):
            outcome = outcome()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _manager(sas: FakeSAS, events: EventBus, **kwargs) -> SessionManager:
    client = httpx.AsyncClient(transport=httpx.MockTransport(sas.handler))
    return SessionManager(AUTH_ENDPOINT, "api-key", events, http_client=client, clock=lambda: NOW, **kwargs)


@pytest.mark.asyncio
async def test_authenticate_creates_session(events):
    sas = FakeSAS()
    recorder = EventRecorder(events, *SESSION_KINDS)
    manager = _manager(sas, events)

    session = await manager.authenticate({"username": "registrar"})

    request = sas.requests[0]
    assert request.headers["X-API-Key"] == "api-key"
    assert json.loads(request.content) == {"username": "registrar"}
    assert manager.state == AuthState.AUTHENTICATED
    assert manager.is_authenticated()
    assert session.expires_at == NOW + 3600
    assert session.user == {"id": "user-42"}
    assert "tok-1" not in repr(session)
    assert recorder.kinds == ["session_authenticated"]
    timer = manager.refresh_timer
    assert timer is not None and not timer.done()

    await manager.close()
    await asyncio.sleep(0)
    assert timer.cancelled()
    assert manager.state == AuthState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_authenticate_without_token_fails(events):
    sas = FakeSAS()
    sas.responses["authenticate"] = httpx.Response(200, json={"user": {}})
    recorder = EventRecorder(events, *SESSION_KINDS)
    manager = _manager(sas, events)

    with pytest.raises(AuthenticationError):
        await manager.authenticate()

    assert manager.state == AuthState.UNAUTHENTICATED
    assert manager.session is None
    assert recorder.kinds == ["session_auth_failed"]
    await manager.close()


@pytest.mark.asyncio
async def test_authenticate_rejection_uses_server_message(events):
    sas = FakeSAS()
    sas.responses["authenticate"] = httpx.Response(401, json={"message": "bad api key"})
    manager = _manager(sas, events)
    with pytest.raises(AuthenticationError, match="bad api key"):
        await manager.authenticate()
    await manager.close()


@pytest.mark.asyncio
async def test_unreachable_service_is_transient(events):
    sas = FakeSAS()
    sas.responses["authenticate"] = httpx.ConnectError("connection refused")
    manager = _manager(sas, events)
    with pytest.raises(NetworkTransientError):
        await manager.authenticate()
    await manager.close()


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_request(events):
    sas = FakeSAS()
    manager = _manager(sas, events, auto_refresh=False)
    await manager.authenticate()
    sas.refresh_gate = asyncio.Event()

    waiters = [asyncio.ensure_future(manager.refresh()) for _ in range(3)]
    await asyncio.sleep(0)
    sas.refresh_gate.set()
    sessions = await asyncio.gather(*waiters)

    assert sas.paths().count("refresh") == 1
    assert {s.token for s in sessions} == {"tok-2"}
    refresh = sas.requests[-1]
    assert refresh.headers["Authorization"] == "Bearer tok-1"
    assert json.loads(refresh.content) == {"refreshToken": "ref-1"}
    assert manager.state == AuthState.AUTHENTICATED
    await manager.close()


@pytest.mark.asyncio
async def test_failed_refresh_expires_session(events):
    sas = FakeSAS()
    sas.responses["refresh"] = httpx.Response(401, json={"error": "refresh token revoked"})
    recorder = EventRecorder(events, *SESSION_KINDS)
    manager = _manager(sas, events, auto_refresh=False)
    await manager.authenticate()

    with pytest.raises(SessionExpiredError, match="revoked"):
        await manager.refresh()

    assert manager.state == AuthState.EXPIRED
    assert manager.session is None
    assert not manager.is_authenticated()
    assert recorder.kinds == ["session_authenticated", "session_expired"]
    # no automatic retry of the refresh
    assert sas.paths().count("refresh") == 1
    with pytest.raises(SessionExpiredError):
        await manager.refresh()
    await manager.close()


@pytest.mark.asyncio
async def test_timer_refreshes_before_expiry(events):
    sas = FakeSAS()
    # 200s left is inside the five minute lead, so the timer fires at once
    sas.responses["authenticate"] = httpx.Response(200, json={"token": "tok-1", "refreshToken": "ref-1", "expiresIn": 200})
    refreshed = asyncio.Event()
    events.on(EventKind.SESSION_REFRESHED, lambda e: refreshed.set())
    manager = _manager(sas, events)
    await manager.authenticate()

    await asyncio.wait_for(refreshed.wait(), timeout=1)

    assert sas.paths() == ["authenticate", "refresh"]
    assert manager.session.token == "tok-2"
    assert manager.session.refresh_token == "ref-1"
    # the next timer is scheduled from the refreshed expiry
    assert manager.refresh_timer is not None and not manager.refresh_timer.done()
    await manager.close()


@pytest.mark.asyncio
async def test_logout_tears_down_even_when_server_errors(events):
    sas = FakeSAS()
    sas.responses["logout"] = httpx.ReadTimeout("timed out")
    manager = _manager(sas, events, auto_refresh=False)
    await manager.authenticate()

    await manager.logout()

    assert sas.paths() == ["authenticate", "logout"]
    assert manager.session is None
    assert manager.state == AuthState.UNAUTHENTICATED
    await manager.close()
    await manager.close()


@pytest.mark.asyncio
async def test_stream_starts_with_session_token_and_server_expiry(events):
    sas = FakeSAS()
    sas.responses["authenticate"] = httpx.Response(
        200,
        json={"token": "tok 1", "refreshToken": "ref-1", "wsEndpoint": "wss://sas.test/stream"},
    )
    ws = FakeWebSocket(stay_open=True)
    connect = FakeConnect([ws])
    recorder = EventRecorder(events, *SESSION_KINDS)
    manager = _manager(sas, events, auto_refresh=False, connect=connect)
    await manager.authenticate()
    stream = manager.stream
    assert stream is not None

    ws.feed({"type": "sessionExpired"})
    await asyncio.wait_for(stream.task, timeout=1)

    assert connect.urls == ["wss://sas.test/stream?token=tok%201"]
    assert manager.state == AuthState.EXPIRED
    assert manager.stream is None
    assert stream.state == StreamState.CLOSED
    assert recorder.kinds == ["session_authenticated", "session_expired"]
    await manager.close()


@pytest.mark.asyncio
async def test_concurrent_authenticate_leaves_one_stream(events):
    sas = FakeSAS()
    tokens = iter(["tok-a", "tok-b"])
    sas.responses["authenticate"] = lambda: httpx.Response(
        200, json={"token": next(tokens), "wsEndpoint": "wss://sas.test/stream"}
    )
    sas.auth_gate = asyncio.Event()
    sockets = [FakeWebSocket(stay_open=True), FakeWebSocket(stay_open=True)]
    connect = FakeConnect(list(sockets))
    manager = _manager(sas, events, auto_refresh=False, connect=connect)

    first = asyncio.ensure_future(manager.authenticate())
    second = asyncio.ensure_future(manager.authenticate())
    await asyncio.sleep(0)
    sas.auth_gate.set()
    await asyncio.gather(first, second)

    assert manager.session.token == "tok-b"

    async def _connected() -> None:
        while not connect.urls or not connect.urls[-1].endswith("tok-b"):
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_connected(), timeout=1)
    assert len(connect.urls) <= 2
    await manager.close()

    assert manager.stream is None
    assert all(ws.closed for ws in sockets[: len(connect.urls)])


def test_stream_url_quotes_token():
    assert stream_url("wss://x/ws", "a/b+c") == "wss://x/ws?token=a%2Fb%2Bc"
    assert stream_url("wss://x/ws?v=1", "t") == "wss://x/ws?v=1&token=t"


@pytest.mark.asyncio
async def test_stream_reconnect_is_bounded(events, clock: FakeClock):
    recorder = EventRecorder(events, EventKind.STREAM_DISCONNECTED)
    connect = FakeConnect()
    stream = StreamConnection("wss://sas.test/stream", lambda: "tok", events, connect=connect, sleep=clock.sleep)

    stream.start()
    await asyncio.wait_for(stream.task, timeout=1)

    assert clock.sleeps == [1, 2, 4, 8, 16]
    assert len(connect.urls) == 6
    assert [e.get("terminal") for e in recorder.events] == [False] * 5 + [True]
    assert stream.state == StreamState.CLOSED
    await stream.close()


@pytest.mark.asyncio
async def test_stream_reconnect_counter_resets_on_open(events, clock: FakeClock):
    connect = FakeConnect([OSError("down"), FakeWebSocket([]), OSError("down")], default=None)
    stream = StreamConnection(
        "wss://sas.test/stream", lambda: "tok", events, connect=connect, sleep=clock.sleep, max_attempts=2
    )
    stream.start()
    await asyncio.wait_for(stream.task, timeout=1)
    # fail, open then close (counter resets), fail, fail and stop
    assert clock.sleeps == [1, 1, 2]
    assert len(connect.urls) == 4


@pytest.mark.asyncio
async def test_stream_dispatches_messages_and_drops_malformed(events, clock: FakeClock):
    address = str(Pubkey.new_unique())
    recorder = EventRecorder(
        events, EventKind.ACCOUNT_CHANGED, EventKind.CONFIRMED, EventKind.FAILED, EventKind.STREAM_MESSAGE
    )
    ws = FakeWebSocket(
        [
            "{not json",
            {"no": "type"},
            {"type": "accountChange", "data": {"publicKey": "garbage"}},
            {"type": "accountChange", "data": {"publicKey": address}},
            {"type": "transactionConfirmed", "data": {"signature": "sig-1"}},
            {"type": "transactionFailed", "data": {"signature": "sig-2", "error": "custom program error: 0x1"}},
            {"type": "heartbeat", "data": {"seq": 7}},
        ],
        stay_open=True,
    )
    stream = StreamConnection("wss://sas.test/stream", lambda: "tok", events, connect=FakeConnect([ws]), sleep=clock.sleep)
    stream.start()
    for _ in range(20):
        await asyncio.sleep(0)
        if len(recorder.events) == 4:
            break

    assert recorder.kinds == ["account_changed", "confirmed", "failed", "stream_message"]
    assert recorder.events[0].get("address") == address
    assert recorder.events[0].get("source") == "sas"
    assert recorder.events[2].get("error") == "custom program error: 0x1"
    assert recorder.events[3].get("data") == {"seq": 7}
    assert stream.is_open

    await stream.close()
    await stream.close()
    assert ws.closed
    assert stream.state == StreamState.CLOSED
