"""
Account-change and program-log subscriptions over the ledger RPC websocket.

Registrations are keyed by (kind, target). Listening to the same target twice
reuses the upstream subscription and only adds a handler; the upstream
subscription is dropped when the last handler is cancelled. The connection
loop reconnects with exponential backoff and re-subscribes every live
registration after each reconnect. Subscription handles stay safe to cancel
after close().
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable

import websockets
from websockets.exceptions import ConnectionClosed

from credverify.core.events import EventBus, EventKind, Handler, LedgerEvent, Subscription
from credverify.cv_logging import get_logger, short_id
from credverify.utils.address_utils import parse_address

logger = get_logger(__name__)

DEFAULT_WS_PING_INTERVAL = 30.0
DEFAULT_WS_PING_TIMEOUT = 10.0
DEFAULT_RECONNECT_MIN_SEC = 1.0
DEFAULT_RECONNECT_MAX_SEC = 60.0
_WS_CLOSE_TIMEOUT = 5.0

ACCOUNT = "account"
LOGS = "logs"

# kind -> (subscribe method, unsubscribe method, notification method)
_METHODS = {
    ACCOUNT: ("accountSubscribe", "accountUnsubscribe", "accountNotification"),
    LOGS: ("logsSubscribe", "logsUnsubscribe", "logsNotification"),
}
_NOTIFICATION_KIND = {methods[2]: kind for kind, methods in _METHODS.items()}


@dataclass(eq=False)
class _Registration:
    kind: str
    target: str
    handlers: list[Handler] = field(default_factory=list)
    subscription_id: int | None = None
    closed: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind, self.target)


class LedgerSubscriptions:
    """Refcounted registry of websocket subscriptions with auto-reconnect."""

    def __init__(
        self,
        ws_url: str,
        events: EventBus | None = None,
        *,
        commitment: str = "confirmed",
        connect: Callable[..., Any] = websockets.connect,
        reconnect_min_sec: float = DEFAULT_RECONNECT_MIN_SEC,
        reconnect_max_sec: float = DEFAULT_RECONNECT_MAX_SEC,
    ) -> None:
        if not ws_url.strip():
            raise ValueError("ws_url must be non-empty")
        self._ws_url = ws_url
        self._events = events
        self._commitment = commitment
        self._connect = connect
        self._reconnect_min = reconnect_min_sec
        self._reconnect_max = reconnect_max_sec
        self._registrations: dict[tuple[str, str], _Registration] = {}
        self._by_subscription: dict[int, _Registration] = {}
        # request id -> registration awaiting its subscription id (None for unsubscribes)
        self._pending: dict[int, _Registration | None] = {}
        self._next_rpc_id = 0
        self._ws: Any = None
        self._connected = asyncio.Event()
        self._stop = asyncio.Event()
        self._run_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    def registration_count(self) -> int:
        return len(self._registrations)

    def handler_count(self, kind: str, target: str) -> int:
        reg = self._registrations.get((kind, target))
        return len(reg.handlers) if reg else 0

    async def listen_to_account_changes(self, address: str, handler: Handler) -> Subscription:
        """Call handler with an ACCOUNT_CHANGED LedgerEvent whenever address changes."""
        parse_address(address)
        return await self._register(ACCOUNT, address.strip(), handler)

    async def listen_to_program_logs(self, program_id: str, handler: Handler) -> Subscription:
        """Call handler with a PROGRAM_LOGS LedgerEvent for transactions mentioning program_id."""
        parse_address(program_id, field="program_id")
        return await self._register(LOGS, program_id.strip(), handler)

    async def _register(self, kind: str, target: str, handler: Handler) -> Subscription:
        if self._closed:
            raise RuntimeError("LedgerSubscriptions is closed")
        reg = self._registrations.get((kind, target))
        created = reg is None
        if reg is None:
            reg = _Registration(kind=kind, target=target)
            self._registrations[reg.key] = reg
        reg.handlers.append(handler)
        if created and self._ws is not None:
            try:
                await self._send_subscribe(self._ws, reg)
            except ConnectionClosed as e:
                # the run loop re-subscribes live registrations after reconnecting
                logger.info("ledger_subscribe_deferred", kind=kind, target=short_id(target), error=str(e))
            except Exception:
                self._release(reg, handler)
                raise
        self.start()

        def _release() -> None:
            self._release(reg, handler)

        return Subscription(_release)

    def _release(self, reg: _Registration, handler: Handler) -> None:
        if handler in reg.handlers:
            reg.handlers.remove(handler)
        if reg.handlers or reg.closed:
            return
        reg.closed = True
        if self._registrations.get(reg.key) is reg:
            del self._registrations[reg.key]
        if reg.subscription_id is not None:
            self._by_subscription.pop(reg.subscription_id, None)
            if self._ws is not None and not self._closed:
                self._spawn(self._send_unsubscribe(self._ws, reg.kind, reg.subscription_id))
        logger.info("ledger_subscription_released", kind=reg.kind, target=short_id(reg.target))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def start(self) -> None:
        """Start the connection loop if it is not running."""
        if self._closed or (self._run_task is not None and not self._run_task.done()):
            return
        self._stop.clear()
        self._run_task = asyncio.get_running_loop().create_task(self.run())

    async def wait_connected(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout=timeout)

    def _next_id(self) -> int:
        self._next_rpc_id += 1
        return self._next_rpc_id

    async def run(self) -> None:
        """Connect, subscribe every live registration, route notifications, reconnect on failure."""
        backoff = self._reconnect_min
        run_id = 0
        while not self._stop.is_set():
            run_id += 1
            try:
                logger.info("ledger_ws_connecting", run_id=run_id, url=short_id(self._ws_url, 32))
                async with self._connect(
                    self._ws_url,
                    ping_interval=DEFAULT_WS_PING_INTERVAL,
                    ping_timeout=DEFAULT_WS_PING_TIMEOUT,
                    close_timeout=_WS_CLOSE_TIMEOUT,
                ) as ws:
                    self._ws = ws
                    backoff = self._reconnect_min
                    for reg in list(self._registrations.values()):
                        await self._send_subscribe(ws, reg)
                    self._connected.set()
                    logger.info("ledger_ws_connected", run_id=run_id, subscriptions=len(self._registrations))
                    await self._receive_loop(ws)
            except asyncio.CancelledError:
                break
            except ConnectionClosed as e:
                logger.warning("ledger_ws_disconnected", run_id=run_id, code=e.code, reason=e.reason)
            except Exception as e:
                logger.exception("ledger_ws_error", run_id=run_id, error=str(e))
            finally:
                self._ws = None
                self._connected.clear()
                self._pending.clear()
                self._by_subscription.clear()
                for reg in self._registrations.values():
                    reg.subscription_id = None

            if self._stop.is_set():
                break
            logger.info("ledger_ws_reconnect", run_id=run_id, backoff_sec=round(backoff, 1))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=backoff)
            except asyncio.TimeoutError:
                pass
            backoff = min(backoff * 2, self._reconnect_max)
        logger.info("ledger_ws_stopped", run_id=run_id)

    def _subscribe_params(self, reg: _Registration) -> list[Any]:
        if reg.kind == ACCOUNT:
            return [reg.target, {"encoding": "base64", "commitment": self._commitment}]
        return [{"mentions": [reg.target]}, {"commitment": self._commitment}]

    async def _send_subscribe(self, ws: Any, reg: _Registration) -> None:
        req_id = self._next_id()
        self._pending[req_id] = reg
        req = {"jsonrpc": "2.0", "id": req_id, "method": _METHODS[reg.kind][0], "params": self._subscribe_params(reg)}
        try:
            await ws.send(json.dumps(req))
        except BaseException:
            self._pending.pop(req_id, None)
            raise

    async def _send_unsubscribe(self, ws: Any, kind: str, subscription_id: int) -> None:
        req_id = self._next_id()
        self._pending[req_id] = None
        req = {"jsonrpc": "2.0", "id": req_id, "method": _METHODS[kind][1], "params": [subscription_id]}
        try:
            await ws.send(json.dumps(req))
        except ConnectionClosed:
            logger.debug("ledger_unsubscribe_skipped_closed", subscription_id=subscription_id)

    async def _receive_loop(self, ws: Any) -> None:
        async for raw in ws:
            if self._stop.is_set():
                return
            try:
                msg = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                logger.warning("ledger_ws_malformed_message")
                continue
            if not isinstance(msg, dict):
                continue
            if "id" in msg and msg.get("id") in self._pending:
                await self._handle_response(ws, msg)
                continue
            kind = _NOTIFICATION_KIND.get(msg.get("method", ""))
            if kind is not None:
                await self._handle_notification(kind, msg.get("params") or {})

    async def _handle_response(self, ws: Any, msg: dict[str, Any]) -> None:
        reg = self._pending.pop(msg["id"])
        if reg is None:
            return
        if "error" in msg or not isinstance(msg.get("result"), int):
            logger.warning("ledger_subscribe_failed", kind=reg.kind, target=short_id(reg.target), error=msg.get("error"))
            return
        sub_id = msg["result"]
        if reg.closed:
            await self._send_unsubscribe(ws, reg.kind, sub_id)
            return
        reg.subscription_id = sub_id
        self._by_subscription[sub_id] = reg
        logger.info("ledger_subscribed", kind=reg.kind, target=short_id(reg.target), subscription_id=sub_id)

    async def _handle_notification(self, kind: str, params: dict[str, Any]) -> None:
        reg = self._by_subscription.get(params.get("subscription"))
        if reg is None or reg.kind != kind:
            return
        result = params.get("result") or {}
        slot = (result.get("context") or {}).get("slot")
        value = result.get("value") or {}
        if kind == ACCOUNT:
            event = LedgerEvent(
                kind=EventKind.ACCOUNT_CHANGED,
                data={
                    "address": reg.target,
                    "slot": slot,
                    "lamports": value.get("lamports"),
                    "owner": value.get("owner"),
                    "data": value.get("data"),
                    "source": "ledger",
                },
            )
        else:
            event = LedgerEvent(
                kind=EventKind.PROGRAM_LOGS,
                data={
                    "program_id": reg.target,
                    "slot": slot,
                    "signature": value.get("signature"),
                    "err": value.get("err"),
                    "logs": value.get("logs") or [],
                },
            )
        logger.debug("ledger_notification", kind=kind, target=short_id(reg.target), slot=slot)
        for handler in list(reg.handlers):
            await self._dispatch(handler, event)
        if self._events is not None:
            self._events.emit(event.kind, **event.data)

    async def _dispatch(self, handler: Handler, event: LedgerEvent) -> None:
        """Call handler; supports sync or async callbacks and never lets one break the loop."""
        try:
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.exception("ledger_subscription_handler_failed", kind=event.kind.value, error=str(e))

    async def close(self) -> None:
        """Stop the loop and drop every registration. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        for reg in self._registrations.values():
            reg.closed = True
            reg.handlers.clear()
        self._registrations.clear()
        task, self._run_task = self._run_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("ledger_subscriptions_closed")
