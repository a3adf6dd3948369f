"""Remote hub transport.

Attaches a session to an agent running behind a hub service and
forwards the hub's notification stream. Transient disconnects are
retried with exponential backoff; the normalizer never sees them.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

from ..errors import HubError, TransportStartError
from .base import Transport, TransportContext, TransportHandle

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ConnectionError, aiohttp.ClientError, asyncio.TimeoutError)


@dataclass
class AttachResult:
    session_id: str
    # Hub replays the full history on this subscription.
    replay_history: bool = False


class HubClient(Protocol):
    """What RemoteTransport needs from a hub."""

    async def attach(self, session_id: str) -> AttachResult: ...

    async def create_session(self, cwd: str) -> str: ...

    async def send(self, session_id: str, payload: Any) -> bool: ...

    def subscribe(self, session_id: str) -> AsyncIterator[tuple[str, dict[str, Any]]]: ...

    async def fork(self, session_id: str) -> str: ...

    async def close(self) -> None: ...


@dataclass
class RemoteHandle(TransportHandle):
    task: asyncio.Task | None = field(default=None, repr=False)
    stopping: bool = False


class RemoteTransport(Transport):
    """Agent backend reached through a HubClient."""

    name = "remote"

    def __init__(
        self,
        client: HubClient,
        reconnect_attempts: int = 10,
        initial_backoff: float = 0.2,
        max_backoff: float = 2.0,
    ) -> None:
        self._client = client
        self._reconnect_attempts = reconnect_attempts
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff

    async def start(self, context: TransportContext) -> RemoteHandle:
        try:
            if context.session_id:
                result = await self._client.attach(context.session_id)
            else:
                result = AttachResult(
                    session_id=await self._client.create_session(context.cwd),
                )
        except (*TRANSIENT_ERRORS, HubError) as exc:
            raise TransportStartError(self.name, str(exc) or type(exc).__name__) from exc

        handle = RemoteHandle(
            transport=self.name,
            session_id=result.session_id,
            replay_history=result.replay_history,
        )
        logger.info(
            "Attached to hub session %s (replay=%s)",
            handle.session_id[:8], handle.replay_history,
        )
        handle.task = asyncio.create_task(self._subscribe_loop(handle, context))
        return handle

    async def send(self, handle: TransportHandle, payload: Any) -> bool:
        if handle.closed or getattr(handle, "stopping", False):
            return False
        try:
            return bool(await self._client.send(handle.session_id, payload))
        except (*TRANSIENT_ERRORS, HubError) as exc:
            logger.warning(
                "Hub send failed for %s: %s", handle.session_id[:8], exc,
            )
            return False

    async def stop(self, handle: TransportHandle) -> None:
        if not isinstance(handle, RemoteHandle):
            raise TypeError(f"RemoteTransport cannot stop {type(handle).__name__}")
        handle.reading = False
        if handle.stopping:
            return
        handle.stopping = True
        task = handle.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        handle.closed = True
        logger.info("Detached from hub session %s", handle.session_id[:8])

    async def fork(self, session_id: str) -> str | None:
        return await self._client.fork(session_id)

    async def _subscribe_loop(self, handle: RemoteHandle, context: TransportContext) -> None:
        attempt = 0
        delay = self._initial_backoff
        error: str | None = None

        while not handle.stopping:
            try:
                async for method, params in self._client.subscribe(handle.session_id):
                    attempt = 0
                    delay = self._initial_backoff
                    if handle.stopping:
                        return
                    try:
                        await context.on_notification(handle, method, params)
                    except Exception:
                        logger.exception(
                            "Notification handler failed for %s method=%s",
                            handle.session_id[:8], method,
                        )
                error = "hub closed the event stream"
            except TRANSIENT_ERRORS as exc:
                error = str(exc) or type(exc).__name__
            except HubError as exc:
                error = str(exc)
                break

            if handle.stopping:
                return
            attempt += 1
            if attempt > self._reconnect_attempts:
                break
            logger.warning(
                "Hub subscription %s lost (%s); reconnecting in %.1fs (%d/%d)",
                handle.session_id[:8], error, delay,
                attempt, self._reconnect_attempts,
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._max_backoff)

        if handle.stopping:
            return
        handle.closed = True
        logger.warning(
            "Hub subscription %s gave up: %s", handle.session_id[:8], error,
        )
        await context.on_closed(handle, error)
