"""Outbound user-message queue.

Payloads are appended synchronously and delivered in FIFO order by
``drain``. A payload only leaves the queue once the sink confirms it,
so a transport swap in the middle of delivery never loses or reorders
a message.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Sink = Callable[[Any], "Awaitable[bool] | bool"]


class MessageQueue:
    """FIFO of opaque payloads with confirm-before-pop delivery."""

    def __init__(self) -> None:
        self._items: deque[Any] = deque()
        self._ready = asyncio.Event()
        self._drain_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, payload: Any) -> None:
        """Append a payload. Never blocks, never drops."""
        self._items.append(payload)
        self._ready.set()

    def snapshot(self) -> list[Any]:
        return list(self._items)

    def clear(self) -> None:
        dropped = len(self._items)
        self._items.clear()
        self._ready.clear()
        if dropped:
            logger.debug("MessageQueue cleared %d pending payload(s)", dropped)

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until something is queued. Returns False on timeout."""
        if self._items:
            return True
        self._ready.clear()
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return bool(self._items)

    async def settle(self) -> None:
        """Wait for an in-progress drain to finish."""
        async with self._drain_lock:
            pass

    async def drain(self, sink: Sink) -> int:
        """Deliver queued payloads to *sink* in order.

        Stops at the first payload the sink refuses (falsy return) or
        raises on; that payload and everything after it stay queued.
        Returns the number of payloads delivered.
        """
        delivered = 0
        async with self._drain_lock:
            while self._items:
                payload = self._items[0]
                try:
                    result = sink(payload)
                    if inspect.isawaitable(result):
                        result = await result
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.warning(
                        "MessageQueue sink raised; %d payload(s) kept",
                        len(self._items), exc_info=True,
                    )
                    break
                if not result:
                    logger.debug(
                        "MessageQueue sink refused payload; %d kept",
                        len(self._items),
                    )
                    break
                self._items.popleft()
                delivered += 1
            if not self._items:
                self._ready.clear()
        return delivered
