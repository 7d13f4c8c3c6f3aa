"""
EventBus and Subscription handle tests.
"""

from __future__ import annotations

import asyncio

import pytest

from credverify.core.events import EventBus, EventKind, Subscription


def test_emit_reaches_handlers_in_order():
    bus = EventBus()
    seen: list[str] = []
    bus.on(EventKind.SENT, lambda e: seen.append(f"a:{e.get('signature')}"))
    bus.on("sent", lambda e: seen.append(f"b:{e.get('signature')}"))
    bus.emit(EventKind.SENT, signature="sig1")
    assert seen == ["a:sig1", "b:sig1"]


def test_cancel_is_idempotent():
    bus = EventBus()
    seen: list[object] = []
    handle = bus.on(EventKind.CONFIRMED, seen.append)
    assert handle.active
    handle.cancel()
    handle.cancel()
    assert not handle.active
    bus.emit(EventKind.CONFIRMED)
    assert seen == []
    assert bus.handler_count(EventKind.CONFIRMED) == 0


def test_failing_handler_does_not_block_others():
    bus = EventBus()
    seen: list[object] = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.on(EventKind.FAILED, broken)
    bus.on(EventKind.FAILED, seen.append)
    bus.emit(EventKind.FAILED, error="x")
    assert len(seen) == 1


def test_subscription_as_context_manager():
    released: list[bool] = []
    with Subscription(lambda: released.append(True)):
        pass
    assert released == [True]


@pytest.mark.asyncio
async def test_close_cancels_async_handlers_and_is_idempotent():
    bus = EventBus()
    started = asyncio.Event()

    async def slow(event):
        started.set()
        await asyncio.sleep(3600)

    handle = bus.on(EventKind.STREAM_MESSAGE, slow)
    bus.emit(EventKind.STREAM_MESSAGE, type="ping")
    await asyncio.wait_for(started.wait(), timeout=1)
    assert bus.pending_tasks == 1
    await bus.close()
    await bus.close()
    assert bus.pending_tasks == 0
    assert bus.handler_count() == 0
    # still safe after close
    handle.cancel()
