from __future__ import annotations

import asyncio

import pytest

from agentlink.engine.message_queue import MessageQueue


@pytest.mark.asyncio
async def test_drain_delivers_in_order_and_empties_queue() -> None:
    queue = MessageQueue()
    for payload in ("p1", "p2", "p3"):
        queue.enqueue(payload)
    seen: list[str] = []

    async def sink(payload: str) -> bool:
        seen.append(payload)
        return True

    assert await queue.drain(sink) == 3
    assert seen == ["p1", "p2", "p3"]
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_refused_payload_stays_at_head() -> None:
    queue = MessageQueue()
    queue.enqueue("p1")
    queue.enqueue("p2")
    calls: list[str] = []

    def refuse_second(payload: str) -> bool:
        calls.append(payload)
        return payload != "p2"

    assert await queue.drain(refuse_second) == 1
    assert queue.snapshot() == ["p2"]
    assert calls == ["p1", "p2"]


@pytest.mark.asyncio
async def test_sink_exception_keeps_remaining_payloads() -> None:
    queue = MessageQueue()
    queue.enqueue("p1")
    queue.enqueue("p2")

    async def broken(payload: str) -> bool:
        raise ConnectionResetError("gone")

    assert await queue.drain(broken) == 0
    assert queue.snapshot() == ["p1", "p2"]


@pytest.mark.asyncio
async def test_concurrent_drains_never_duplicate() -> None:
    queue = MessageQueue()
    for i in range(5):
        queue.enqueue(i)
    delivered: list[int] = []

    async def slow(payload: int) -> bool:
        await asyncio.sleep(0)
        delivered.append(payload)
        return True

    counts = await asyncio.gather(queue.drain(slow), queue.drain(slow))
    assert sum(counts) == 5
    assert delivered == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_enqueue_during_drain_is_delivered_after() -> None:
    queue = MessageQueue()
    queue.enqueue("first")
    delivered: list[str] = []

    async def sink(payload: str) -> bool:
        if payload == "first":
            queue.enqueue("second")
        delivered.append(payload)
        return True

    assert await queue.drain(sink) == 2
    assert delivered == ["first", "second"]


@pytest.mark.asyncio
async def test_wait_wakes_on_enqueue_and_times_out() -> None:
    queue = MessageQueue()
    assert await queue.wait(timeout=0.01) is False

    waiter = asyncio.create_task(queue.wait(timeout=1.0))
    await asyncio.sleep(0)
    queue.enqueue("x")
    assert await waiter is True


def test_clear_drops_pending() -> None:
    queue = MessageQueue()
    queue.enqueue("a")
    queue.clear()
    assert len(queue) == 0
    assert queue.snapshot() == []
