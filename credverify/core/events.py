"""
Lifecycle events and the subscription registry.

Handlers are registered per EventKind and receive a LedgerEvent. Registration
returns a Subscription handle; cancelling it is idempotent and safe after the
bus has been closed. Sync handlers run inline so events for one submission
are observed in emission order; async handlers are scheduled as tasks that
close() cancels.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from credverify.cv_logging import get_logger

logger = get_logger(__name__)


class EventKind(str, Enum):
    ATTEMPT = "attempt"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"
    ACCOUNT_CHANGED = "account_changed"
    PROGRAM_LOGS = "program_logs"
    SESSION_AUTHENTICATED = "session_authenticated"
    SESSION_AUTH_FAILED = "session_auth_failed"
    SESSION_REFRESHED = "session_refreshed"
    SESSION_EXPIRED = "session_expired"
    STREAM_CONNECTED = "stream_connected"
    STREAM_DISCONNECTED = "stream_disconnected"
    STREAM_MESSAGE = "stream_message"
    BATCH_COMPLETED = "batch_completed"


@dataclass(frozen=True)
class LedgerEvent:
    """One emitted event. data holds kind-specific context (signature, attempt, error...)."""

    kind: EventKind
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


Handler = Callable[[LedgerEvent], Any]


class Subscription:
    """Cleanup handle. cancel() runs the release callback at most once."""

    def __init__(self, release: Callable[[], None]) -> None:
        self._release: Callable[[], None] | None = release

    @property
    def active(self) -> bool:
        return self._release is not None

    def cancel(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.cancel()


class EventBus:
    """Registry of handlers keyed by EventKind."""

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[Handler]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    def on(self, kind: EventKind | str, handler: Handler) -> Subscription:
        """Register handler for kind; returns an idempotent cancellation handle."""
        ek = EventKind(kind)
        self._handlers.setdefault(ek, []).append(handler)

        def _release() -> None:
            handlers = self._handlers.get(ek)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return Subscription(_release)

    def handler_count(self, kind: EventKind | str | None = None) -> int:
        if kind is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(EventKind(kind), []))

    def emit(self, kind: EventKind, **data: Any) -> LedgerEvent:
        """Build the event and deliver it to every handler registered for kind."""
        event = LedgerEvent(kind=kind, data=data)
        if self._closed:
            return event
        for handler in list(self._handlers.get(kind, [])):
            try:
                result = handler(event)
            except Exception as e:
                logger.exception("event_handler_failed", kind=kind.value, error=str(e))
                continue
            if asyncio.iscoroutine(result):
                self._track(result, kind)
        return event

    def _track(self, coro: Any, kind: EventKind) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("event_async_handler_no_loop", kind=kind.value)
            return
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("event_handler_failed", kind=kind.value, error=str(t.exception()))

        task.add_done_callback(_done)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        """Drop every handler and cancel in-flight async handlers. Safe to call twice."""
        self._closed = True
        self._handlers.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
