"""Async event bus bridging orchestrator callbacks to consumers.

The orchestrator fires canonical event dicts through its callback.
The EventBus parses them into typed events and queues them for a
consumer loop (CLI printer, UI, test harness).
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from agentlink.adapters.events import SessionEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue between an orchestrator's event callback and its consumer."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass as SessionOrchestrator(event_callback=...)."""
        if self._closed:
            return
        await self.emit(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for the orchestrator."""
        return self._callback

    async def emit(self, event: SessionEvent) -> None:
        """Queue an event, waiting for room instead of dropping."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout, event.event_type, self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[SessionEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drop leftover events and re-open the bus for a new session."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False
