"""
Authenticated event stream from the attestation-session service.

A single run task owns the socket: connect to ``{endpoint}?token=...``,
dispatch messages by their ``type`` field, and on disconnect reconnect after
``min(base_delay * 2**(n-1), max_delay)`` for reconnect n. The counter resets
on every successful open; once max_attempts reconnects fail in a row the
stream stops and emits a terminal STREAM_DISCONNECTED event.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed

from credverify.core.events import EventBus, EventKind
from credverify.cv_logging import get_logger, short_id
from credverify.session.models import StreamState
from credverify.utils.address_utils import is_valid_address

logger = get_logger(__name__)

DEFAULT_RECONNECT_BASE_DELAY_SEC = 1.0
DEFAULT_RECONNECT_MAX_DELAY_SEC = 30.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5


def stream_url(endpoint: str, token: str) -> str:
    sep = "&" if "?" in endpoint else "?"
    return f"{endpoint}{sep}token={quote(token, safe='')}"


class StreamConnection:
    """Reconnecting websocket that turns service messages into bus events."""

    def __init__(
        self,
        endpoint: str,
        token_provider: Callable[[], str | None],
        events: EventBus,
        *,
        on_session_expired: Callable[[], Awaitable[Any]] | None = None,
        connect: Callable[..., Any] = websockets.connect,
        base_delay: float = DEFAULT_RECONNECT_BASE_DELAY_SEC,
        max_delay: float = DEFAULT_RECONNECT_MAX_DELAY_SEC,
        max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.endpoint = endpoint
        self._token_provider = token_provider
        self._events = events
        self._on_session_expired = on_session_expired
        self._connect = connect
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._sleep = sleep
        self.state = StreamState.IDLE
        self.reconnect_attempts = 0
        self.last_close_reason: str | None = None
        self._ws: Any = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self.state == StreamState.OPEN

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    def start(self) -> None:
        """Start the run task; a second call while it runs is a no-op."""
        if self._closed:
            raise RuntimeError("StreamConnection is closed")
        if self._task is not None and not self._task.done():
            logger.warning("stream_already_running", endpoint=short_id(self.endpoint, 32))
            return
        self._task = asyncio.get_running_loop().create_task(self.run())

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt (1-indexed)."""
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    async def run(self) -> None:
        while not self._closed:
            token = self._token_provider()
            if not token:
                logger.error("stream_no_token", endpoint=short_id(self.endpoint, 32))
                self.state = StreamState.CLOSED
                return
            self.state = StreamState.CONNECTING
            try:
                async with self._connect(stream_url(self.endpoint, token)) as ws:
                    self._ws = ws
                    self.state = StreamState.OPEN
                    self.reconnect_attempts = 0
                    logger.info("stream_connected", endpoint=short_id(self.endpoint, 32))
                    self._events.emit(EventKind.STREAM_CONNECTED, endpoint=self.endpoint)
                    async for raw in ws:
                        await self._handle_message(raw)
                        if self._closed:
                            break
                    self.last_close_reason = "closed"
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as e:
                self.last_close_reason = f"{e.code} {e.reason}".strip()
            except Exception as e:
                self.last_close_reason = f"{type(e).__name__}: {e}"
                logger.warning("stream_error", endpoint=short_id(self.endpoint, 32), error=str(e))
            finally:
                self._ws = None

            if self._closed:
                break
            if self.reconnect_attempts >= self._max_attempts:
                self.state = StreamState.CLOSED
                logger.error(
                    "stream_reconnect_exhausted",
                    attempts=self.reconnect_attempts,
                    reason=self.last_close_reason,
                )
                self._events.emit(
                    EventKind.STREAM_DISCONNECTED,
                    reason=self.last_close_reason,
                    attempts=self.reconnect_attempts,
                    terminal=True,
                )
                return
            self.reconnect_attempts += 1
            delay = self.reconnect_delay(self.reconnect_attempts)
            self.state = StreamState.RECONNECTING
            logger.info(
                "stream_reconnect",
                attempt=self.reconnect_attempts,
                max_attempts=self._max_attempts,
                backoff_sec=round(delay, 1),
                reason=self.last_close_reason,
            )
            self._events.emit(
                EventKind.STREAM_DISCONNECTED,
                reason=self.last_close_reason,
                attempt=self.reconnect_attempts,
                delay=delay,
                terminal=False,
            )
            await self._sleep(delay)
        self.state = StreamState.CLOSED

    async def _handle_message(self, raw: Any) -> None:
        """Route one message by type. Malformed messages are logged and dropped."""
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            logger.warning("stream_malformed_message", error=str(e))
            return
        if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
            logger.warning("stream_malformed_message", error="missing type")
            return
        kind = msg["type"]
        data = msg.get("data")
        if not isinstance(data, dict):
            data = {}

        if kind == "accountChange":
            public_key = data.get("publicKey")
            if not isinstance(public_key, str) or not is_valid_address(public_key):
                logger.warning("stream_bad_public_key", public_key=short_id(public_key))
                return
            self._events.emit(EventKind.ACCOUNT_CHANGED, address=public_key, source="sas")
        elif kind == "sessionExpired":
            logger.warning("stream_session_expired")
            if self._on_session_expired is not None:
                await self._on_session_expired()
        elif kind == "transactionConfirmed":
            if data.get("signature"):
                self._events.emit(EventKind.CONFIRMED, signature=data["signature"], source="sas")
        elif kind == "transactionFailed":
            self._events.emit(
                EventKind.FAILED,
                signature=data.get("signature"),
                error=data.get("error") or "transaction failed",
                source="sas",
            )
        else:
            self._events.emit(EventKind.STREAM_MESSAGE, type=kind, data=data)

    async def close(self) -> None:
        """Stop reconnecting and close the socket. Safe to call twice, or from a message handler."""
        if self._closed:
            return
        self._closed = True
        self.state = StreamState.CLOSED
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug("stream_close_error", error=str(e))
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("stream_closed", endpoint=short_id(self.endpoint, 32))
