"""Transport interface.

A transport connects a session to one running agent backend, either a
local subprocess or a remote hub, and reports notifications back
through the callbacks in its TransportContext. The orchestrator owns
exactly one active TransportHandle at a time.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

# async def on_notification(handle, method, params) -> None
NotificationCallback = Callable[["TransportHandle", str, Any], Awaitable[None]]
# async def on_closed(handle, error) -> None
ClosedCallback = Callable[["TransportHandle", "str | None"], Awaitable[None]]


@dataclass
class TransportContext:
    """Everything a transport needs to start one session."""
    on_notification: NotificationCallback
    on_closed: ClosedCallback
    # None asks the transport for a fresh id.
    session_id: str | None = None
    resume: bool = False
    cwd: str = "."
    hook_url: str | None = None


@dataclass
class TransportHandle:
    """A started transport instance.

    ``reading`` is cleared by the orchestrator when it stops consuming
    this handle; transports keep running but their frames are dropped.
    """
    transport: str
    session_id: str
    # Backend re-sends full history on attach; normalizer must reset.
    replay_history: bool = False
    reading: bool = True
    closed: bool = False


class Transport(ABC):
    """Launches and talks to an agent backend."""

    name: str = "transport"

    @abstractmethod
    async def start(self, context: TransportContext) -> TransportHandle:
        """Start (or attach to) the backend. Raises TransportStartError."""

    @abstractmethod
    async def send(self, handle: TransportHandle, payload: Any) -> bool:
        """Deliver one payload. False when the backend did not accept it."""

    @abstractmethod
    async def stop(self, handle: TransportHandle) -> None:
        """Release the backend. Safe to call more than once."""

    async def fork(self, session_id: str) -> str | None:
        """Ask the backend for a forked session id, if it supports forking."""
        return None
