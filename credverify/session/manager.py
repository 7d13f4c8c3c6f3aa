"""
Session lifecycle with the attestation-session service (SAS).

State machine::

    UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED
    AUTHENTICATED -> REFRESHING -> AUTHENTICATED | EXPIRED

At most one live session per manager. An auto-refresh timer fires five
minutes before expiry; starting a new timer cancels the old one. refresh() is
single-flight: concurrent callers await the same request. A failed refresh is
never retried: the session expires, the stream is torn down, a
SESSION_EXPIRED event is emitted and SessionExpiredError is raised.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Callable

import httpx
import websockets

from credverify.core.events import EventBus, EventKind
from credverify.core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    NetworkTransientError,
    SessionExpiredError,
)
from credverify.cv_logging import get_logger, short_id
from credverify.session.models import AuthState, Session
from credverify.session.stream import (
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_BASE_DELAY_SEC,
    StreamConnection,
)

logger = get_logger(__name__)

DEFAULT_SESSION_TIMEOUT_SEC = 3600.0
REFRESH_LEAD_SEC = 300.0
DEFAULT_HTTP_TIMEOUT_SEC = 15.0


def _error_message(resp: httpx.Response, fallback: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or fallback)
    return fallback


def _json_body(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class SessionManager:
    """Authenticate, refresh, stream and log out against one SAS deployment."""

    def __init__(
        self,
        auth_endpoint: str,
        api_key: str,
        events: EventBus,
        *,
        ws_endpoint: str | None = None,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT_SEC,
        auto_refresh: bool = True,
        reconnect_base_delay: float = DEFAULT_RECONNECT_BASE_DELAY_SEC,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        http_client: httpx.AsyncClient | None = None,
        connect: Callable[..., Any] = websockets.connect,
        clock: Callable[[], float] = time.time,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT_SEC,
    ) -> None:
        self._auth_endpoint = (auth_endpoint or "").rstrip("/")
        self._api_key = api_key
        self._events = events
        self._ws_endpoint = ws_endpoint or None
        self._session_timeout = session_timeout
        self._auto_refresh = auto_refresh
        self._reconnect_base_delay = reconnect_base_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._http = http_client
        self._owns_http = http_client is None
        self._http_timeout = http_timeout
        self._connect = connect
        self._clock = clock
        self._state = AuthState.UNAUTHENTICATED
        self._session: Session | None = None
        self._stream: StreamConnection | None = None
        self._refresh_timer: asyncio.Task[None] | None = None
        self._refresh_inflight: asyncio.Task[Session] | None = None
        # one authenticate at a time, so a replaced session's stream is always closed
        self._auth_lock = asyncio.Lock()
        # bumped on every teardown so an in-flight refresh cannot revive a dead session
        self._generation = 0

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def stream(self) -> StreamConnection | None:
        return self._stream

    @property
    def refresh_timer(self) -> asyncio.Task[None] | None:
        return self._refresh_timer

    def is_authenticated(self) -> bool:
        return (
            self._state in (AuthState.AUTHENTICATED, AuthState.REFRESHING)
            and self._session is not None
            and not self._session.is_expired(self._clock())
        )

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._http_timeout)
            self._owns_http = True
        return self._http

    def _url(self, path: str) -> str:
        return f"{self._auth_endpoint}/{path}"

    def _expiry(self, body: dict[str, Any]) -> float:
        expires_in = body.get("expiresIn")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool) and expires_in > 0:
            return self._clock() + float(expires_in)
        return self._clock() + self._session_timeout

    async def authenticate(self, credentials: dict[str, Any] | None = None) -> Session:
        """
        Exchange the API key (and optional credentials) for a session.

        Raises AuthenticationError on rejection and NetworkTransientError when
        the service is unreachable. Replaces any existing session.
        """
        if not self._auth_endpoint or not self._api_key:
            raise ConfigurationError("SAS_AUTH_ENDPOINT and SAS_API_KEY are required")
        async with self._auth_lock:
            return await self._authenticate(credentials)

    async def _authenticate(self, credentials: dict[str, Any] | None) -> Session:
        if self._session is not None or self._stream is not None:
            await self._teardown()
        self._state = AuthState.AUTHENTICATING
        try:
            try:
                resp = await self._client().post(
                    self._url("authenticate"),
                    json=credentials or {},
                    headers={"X-API-Key": self._api_key},
                )
            except httpx.HTTPError as e:
                raise NetworkTransientError(f"SAS authentication request failed: {e}") from e
            if resp.status_code >= 400:
                raise AuthenticationError(
                    _error_message(resp, f"SAS auth failed with status {resp.status_code}")
                )
            body = _json_body(resp)
            token = body.get("token")
            if not isinstance(token, str) or not token:
                raise AuthenticationError("Invalid SAS response: missing token")
        except (AuthenticationError, NetworkTransientError) as e:
            self._state = AuthState.UNAUTHENTICATED
            logger.warning("sas_auth_failed", error=str(e), error_code=e.code)
            self._events.emit(EventKind.SESSION_AUTH_FAILED, error=str(e), error_code=e.code)
            raise

        user = body.get("user") if isinstance(body.get("user"), dict) else {}
        self._session = Session(
            token=token,
            expires_at=self._expiry(body),
            refresh_token=body.get("refreshToken") or None,
            streaming_endpoint=body.get("wsEndpoint") or self._ws_endpoint,
            user=user,
        )
        self._state = AuthState.AUTHENTICATED
        self._schedule_refresh()
        self._start_stream()
        logger.info(
            "sas_authenticated",
            user_id=short_id(user.get("id")),
            expires_in_sec=round(self._session.seconds_remaining(self._clock())),
        )
        self._events.emit(EventKind.SESSION_AUTHENTICATED, user=user, expires_at=self._session.expires_at)
        return self._session

    def _schedule_refresh(self) -> None:
        self._cancel_refresh_timer()
        session = self._session
        if not self._auto_refresh or session is None or not session.refresh_token:
            return
        delay = max(0.0, session.expires_at - self._clock() - REFRESH_LEAD_SEC)
        self._refresh_timer = asyncio.get_running_loop().create_task(self._refresh_after(delay))
        logger.debug("sas_refresh_scheduled", delay_sec=round(delay, 1))

    def _cancel_refresh_timer(self) -> None:
        timer, self._refresh_timer = self._refresh_timer, None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _refresh_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.refresh()
        except SessionExpiredError as e:
            logger.warning("sas_auto_refresh_failed", error=str(e))

    def _start_stream(self) -> None:
        session = self._session
        if session is None or not session.streaming_endpoint:
            return
        if self._stream is not None:
            raise RuntimeError("stream already running for this session")
        self._stream = StreamConnection(
            session.streaming_endpoint,
            lambda: self._session.token if self._session is not None else None,
            self._events,
            on_session_expired=self._on_server_expired,
            connect=self._connect,
            base_delay=self._reconnect_base_delay,
            max_attempts=self._max_reconnect_attempts,
        )
        self._stream.start()

    async def _on_server_expired(self) -> None:
        await self._expire("expired by server")

    async def refresh(self) -> Session:
        """Refresh the session; concurrent callers share one request. SessionExpiredError on failure."""
        task = self._refresh_inflight
        if task is None:
            if self._session is None or self._state not in (AuthState.AUTHENTICATED, AuthState.REFRESHING):
                raise SessionExpiredError("No active session to refresh")
            if not self._session.refresh_token:
                raise SessionExpiredError("Session has no refresh token")
            task = asyncio.get_running_loop().create_task(self._do_refresh())
            self._refresh_inflight = task

            def _clear(t: asyncio.Task[Session]) -> None:
                if self._refresh_inflight is t:
                    self._refresh_inflight = None

            task.add_done_callback(_clear)
        return await asyncio.shield(task)

    async def _do_refresh(self) -> Session:
        session = self._session
        assert session is not None
        generation = self._generation
        self._state = AuthState.REFRESHING
        try:
            try:
                resp = await self._client().post(
                    self._url("refresh"),
                    json={"refreshToken": session.refresh_token},
                    headers={"Authorization": f"Bearer {session.token}"},
                )
            except httpx.HTTPError as e:
                raise SessionExpiredError(f"Session refresh request failed: {e}") from e
            if resp.status_code >= 400:
                raise SessionExpiredError(
                    _error_message(resp, f"Failed to refresh session (status {resp.status_code})")
                )
            body = _json_body(resp)
            token = body.get("token")
            if not isinstance(token, str) or not token:
                raise SessionExpiredError("Invalid refresh response: missing token")
        except SessionExpiredError as e:
            if generation == self._generation:
                await self._expire(str(e))
            raise
        if generation != self._generation:
            raise SessionExpiredError("Session ended while refresh was in flight")

        self._session = replace(
            session,
            token=token,
            refresh_token=body.get("refreshToken") or session.refresh_token,
            expires_at=self._expiry(body),
        )
        self._state = AuthState.AUTHENTICATED
        self._schedule_refresh()
        logger.info("sas_session_refreshed", expires_in_sec=round(self._session.seconds_remaining(self._clock())))
        self._events.emit(EventKind.SESSION_REFRESHED, expires_at=self._session.expires_at)
        return self._session

    async def _expire(self, reason: str) -> None:
        if self._state == AuthState.EXPIRED and self._session is None:
            return
        logger.warning("sas_session_expired", reason=reason)
        await self._teardown()
        self._state = AuthState.EXPIRED
        self._events.emit(EventKind.SESSION_EXPIRED, reason=reason)

    async def _teardown(self) -> None:
        self._generation += 1
        self._cancel_refresh_timer()
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.close()
        self._session = None

    async def logout(self) -> None:
        """Best-effort server logout, then unconditional local teardown."""
        session = self._session
        try:
            if session is not None and self._auth_endpoint:
                await self._client().post(
                    self._url("logout"),
                    headers={"Authorization": f"Bearer {session.token}"},
                )
        except httpx.HTTPError as e:
            logger.warning("sas_logout_error_ignored", error=str(e))
        finally:
            await self._teardown()
            self._state = AuthState.UNAUTHENTICATED
            logger.info("sas_logged_out")

    async def close(self) -> None:
        """Local teardown without notifying the server; closes an owned HTTP client. Safe to call twice."""
        await self._teardown()
        if self._state != AuthState.EXPIRED:
            self._state = AuthState.UNAUTHENTICATED
        inflight, self._refresh_inflight = self._refresh_inflight, None
        if inflight is not None and not inflight.done():
            inflight.cancel()
            await asyncio.gather(inflight, return_exceptions=True)
        http, self._http = self._http, None
        if http is not None and self._owns_http:
            await http.aclose()
