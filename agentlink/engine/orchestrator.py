"""Session orchestrator.

Owns one session: its id, the active transport, the protocol
normalizer and the outbound message queue. Routes every notification
from the active transport through the normalizer to the event
callback, and pumps queued user messages into whichever transport is
active. A session can move between a local subprocess and a remote hub
without losing queued messages.

Usage:
    orchestrator = SessionOrchestrator(
        {SessionMode.LOCAL: LocalTransport(backend),
         SessionMode.REMOTE: RemoteTransport(hub)},
        config,
        event_callback=on_event,
    )
    await orchestrator.start(SessionMode.LOCAL)
    await orchestrator.send({"type": "user_message", "text": "hi"})
    await orchestrator.switch_mode(SessionMode.REMOTE)
    await orchestrator.close()

Event, mode-change and session-ready callbacks run while the dispatch
lock is held; they must not await orchestrator operations directly
(schedule a task instead).
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from .config import (
    ApprovalCallback,
    EventCallback,
    ModeChangeCallback,
    SessionConfig,
    SessionReadyCallback,
    fire_callback,
    fire_event,
)
from .errors import SessionStateError, TransportNotConfiguredError, TransportStartError
from .lifecycle import validate_transition
from .message_queue import MessageQueue
from .models import (
    TURN_TERMINAL_EVENTS,
    EventType,
    SessionMode,
    SessionState,
    state_for_mode,
)
from .normalizer import NotificationMethod, ProtocolNormalizer
from .notification import as_record, as_string
from .transports.base import Transport, TransportContext, TransportHandle

logger = logging.getLogger(__name__)

_RUNNING = frozenset({SessionState.LOCAL, SessionState.REMOTE})
_RESUMABLE = frozenset({SessionState.IDLE, SessionState.STOPPED, SessionState.FAILED})


def _event(event_type: EventType, **fields: Any) -> dict[str, Any]:
    return {"type": event_type.value, **{k: v for k, v in fields.items() if v is not None}}


class SessionOrchestrator:
    """One agent session that can run locally or through a hub."""

    def __init__(
        self,
        transports: dict[SessionMode, Transport],
        config: SessionConfig | None = None,
        *,
        event_callback: EventCallback | None = None,
        approval_callback: ApprovalCallback | None = None,
        mode_change_callback: ModeChangeCallback | None = None,
        session_ready_callback: SessionReadyCallback | None = None,
        hook_server: Any | None = None,
        cwd: str | None = None,
        session_id: str | None = None,
        forked_from: str | None = None,
        mode: SessionMode | None = None,
    ) -> None:
        self._transports = dict(transports)
        self._config = config or SessionConfig()
        self._event_callback = event_callback or self._config.event_callback
        self._approval_callback = approval_callback or self._config.approval_callback
        self._mode_change_callback = mode_change_callback
        self._session_ready_callback = session_ready_callback
        self._hook_server = hook_server

        self.session_id = session_id
        self.forked_from = forked_from
        self.cwd = cwd or self._config.default_cwd
        self.mode = mode
        self.state = SessionState.IDLE
        self.turn_id: str | None = None
        self.turn_in_flight = False

        self.normalizer = ProtocolNormalizer()
        self.queue = MessageQueue()

        self._handle: TransportHandle | None = None
        self._transport: Transport | None = None
        self._pump_task: asyncio.Task | None = None
        self._dispatch_lock = asyncio.Lock()
        self._switch_lock = asyncio.Lock()
        self._hook_key: str | None = None
        self._hook_url: str | None = None
        # Frames from the old transport while a switch is pending
        self._parked: list[tuple[str, Any]] | None = None

    @property
    def handle(self) -> TransportHandle | None:
        return self._handle

    @property
    def is_running(self) -> bool:
        return self.state in _RUNNING

    # ── Public API ─────────────────────────────────────────────

    async def start(self, mode: SessionMode | str | None = None) -> bool:
        """Launch a new session. Returns False if the transport failed to start."""
        async with self._switch_lock:
            if self.state is not SessionState.IDLE:
                raise SessionStateError(self.session_id, self.state.value, "start")
            target = self._resolve_mode(mode)
            return await self._launch(target, self.session_id, resume=False)

    async def resume(
        self,
        session_id: str,
        mode: SessionMode | str | None = None,
    ) -> bool:
        """Re-open an existing session; any history replay is normalized as usual."""
        async with self._switch_lock:
            if self.state not in _RESUMABLE:
                raise SessionStateError(session_id, self.state.value, "resume")
            target = self._resolve_mode(mode)
            self.session_id = session_id
            return await self._launch(target, session_id, resume=True)

    async def switch_mode(self, new_mode: SessionMode | str) -> bool:
        """Move the session to the other transport, keeping queued messages.

        Returns True once the new transport is attached. On failure the
        old transport is re-attached if it is still alive; otherwise the
        session is left FAILED with a task_failed event.
        """
        target = SessionMode(new_mode)
        async with self._switch_lock:
            if self.state in _RUNNING and self.mode is target:
                return True
            if self.state not in _RUNNING and self.state is not SessionState.FAILED:
                raise SessionStateError(self.session_id, self.state.value, "switch")
            new_transport = self._transport_for(target)

            old_state = self.state
            old_mode = self.mode
            old_handle, old_transport = self._handle, self._transport
            self._transition(SessionState.SWITCHING)

            if old_handle is not None:
                # Sends stop now; frames are held until the switch resolves
                old_handle.reading = False
                self._parked = []
            await self._stop_pump(graceful=True)

            context = self._context(self.session_id, resume=self.session_id is not None)
            try:
                handle = await new_transport.start(context)
            except asyncio.CancelledError:
                await self._rollback_switch(
                    old_state, old_handle, old_transport, target, "switch cancelled",
                )
                raise
            except Exception as exc:
                if not isinstance(exc, TransportStartError):
                    logger.exception("Unexpected error starting %s transport", target.value)
                return await self._rollback_switch(
                    old_state, old_handle, old_transport, target,
                    str(exc) or type(exc).__name__,
                )

            await self._attach(target, new_transport, handle)
            if old_handle is not None and old_transport is not None:
                await old_transport.stop(old_handle)
            self._start_pump()
            logger.info(
                "Session %s switched %s -> %s (%d queued)",
                self._short_id, old_mode.value if old_mode else "-",
                target.value, len(self.queue),
            )
            return True

    async def fork(self) -> SessionOrchestrator:
        """Return a new, un-started session branched from this one."""
        new_id: str | None = None
        transport = self._transports.get(self.mode) if self.mode else None
        if transport is not None and self.session_id:
            new_id = await transport.fork(self.session_id)
        new_id = new_id or str(uuid.uuid4())
        logger.info("Forked session %s -> %s", self._short_id, new_id[:8])
        return SessionOrchestrator(
            self._transports,
            self._config,
            event_callback=self._event_callback,
            approval_callback=self._approval_callback,
            mode_change_callback=self._mode_change_callback,
            session_ready_callback=self._session_ready_callback,
            hook_server=self._hook_server,
            cwd=self.cwd,
            session_id=new_id,
            forked_from=self.session_id,
            mode=self.mode,
        )

    async def send(self, payload: Any) -> None:
        """Queue a user message for the active (or next) transport."""
        if self.state is SessionState.CLOSED:
            raise SessionStateError(self.session_id, self.state.value, "send to")
        self.queue.enqueue(payload)
        if self.is_running:
            self._start_pump()

    async def abort(self) -> None:
        """Stop the running turn and the transport; the session stays resumable."""
        async with self._switch_lock:
            await self._abort_locked()

    async def close(self) -> None:
        async with self._switch_lock:
            if self.state is SessionState.CLOSED:
                return
            await self._abort_locked()
            handle, transport = self._handle, self._transport
            if handle is not None and transport is not None:
                # Left behind by an interrupted switch
                self._handle = None
                self._transport = None
                self._parked = None
                await self._stop_pump(graceful=False)
                await transport.stop(handle)
            if self._hook_key is not None and self._hook_server is not None:
                self._hook_server.deregister(self._hook_key)
            self._hook_key = None
            self._hook_url = None
            self.normalizer.reset()
            self.queue.clear()
            self._transition(SessionState.CLOSED)

    # ── Transport callbacks ────────────────────────────────────

    async def _on_notification(
        self, handle: TransportHandle, method: str, params: Any,
    ) -> None:
        async with self._dispatch_lock:
            if handle is self._handle and self._parked is not None:
                self._parked.append((method, params))
                return
            if handle is not self._handle or not handle.reading:
                logger.debug(
                    "Dropping %s from inactive %s transport", method, handle.transport,
                )
                return
            for event in self.normalizer.handle(method, params):
                await self._emit(event)

    async def _on_closed(self, handle: TransportHandle, error: str | None) -> None:
        async with self._dispatch_lock:
            if handle is not self._handle or not handle.reading:
                return
            handle.reading = False
            transport = self._transport
            if self.turn_in_flight:
                await self._emit(_event(EventType.TURN_ABORTED, turn_id=self.turn_id))
            else:
                await self._emit(_event(
                    EventType.TASK_FAILED, error=error or f"{handle.transport} transport closed",
                ))
            self._handle = None
            self._transport = None
            if self.state in _RUNNING:
                self._transition(SessionState.STOPPED)
        await self._stop_pump(graceful=False)
        if transport is not None:
            await transport.stop(handle)

    async def _handle_hook(self, request: dict[str, Any]) -> dict[str, Any]:
        """Hook-server entry point for approval requests from the backend."""
        method = (
            as_string(request.get("method"))
            or NotificationMethod.EXEC_COMMAND_APPROVAL.value
        )
        params = as_record(request.get("params")) or request
        async with self._dispatch_lock:
            for event in self.normalizer.handle(method, params):
                await self._emit(event)

        if self._approval_callback is None:
            logger.warning(
                "No approval callback for session %s; denying %s",
                self._short_id, method,
            )
            return {"decision": "deny"}
        return await self._approval_callback(self.session_id or "", params)

    # ── Internals ──────────────────────────────────────────────

    @property
    def _short_id(self) -> str:
        return (self.session_id or "<new>")[:8]

    def _resolve_mode(self, mode: SessionMode | str | None) -> SessionMode:
        return SessionMode(mode or self.mode or self._config.default_mode)

    def _transport_for(self, mode: SessionMode) -> Transport:
        transport = self._transports.get(mode)
        if transport is None:
            raise TransportNotConfiguredError(
                mode.value, [m.value for m in self._transports],
            )
        return transport

    def _transition(self, target: SessionState) -> None:
        validate_transition(self.state, target)
        logger.debug(
            "Session %s: %s -> %s", self._short_id, self.state.value, target.value,
        )
        self.state = target

    def _context(self, session_id: str | None, resume: bool) -> TransportContext:
        return TransportContext(
            on_notification=self._on_notification,
            on_closed=self._on_closed,
            session_id=session_id,
            resume=resume,
            cwd=self.cwd,
            hook_url=self._ensure_hook(),
        )

    def _ensure_hook(self) -> str | None:
        if self._hook_server is None:
            return None
        if self._hook_key is None:
            self._hook_key = uuid.uuid4().hex
            self._hook_url = self._hook_server.register(self._hook_key, self._handle_hook)
        return self._hook_url

    async def _launch(self, mode: SessionMode, session_id: str | None, resume: bool) -> bool:
        transport = self._transport_for(mode)
        self.normalizer = ProtocolNormalizer()
        self.turn_id = None
        self.turn_in_flight = False
        try:
            handle = await transport.start(self._context(session_id, resume))
        except Exception as exc:
            if isinstance(exc, TransportStartError):
                logger.warning("Session %s could not start: %s", self._short_id, exc)
            else:
                logger.exception("Unexpected error starting %s transport", mode.value)
            await self._emit(_event(
                EventType.TASK_FAILED, error=str(exc) or type(exc).__name__,
            ))
            return False
        await self._attach(mode, transport, handle)
        self._start_pump()
        logger.info(
            "Session %s %s on %s", self._short_id,
            "resumed" if resume else "started", mode.value,
        )
        return True

    async def _attach(
        self, mode: SessionMode, transport: Transport, handle: TransportHandle,
    ) -> None:
        # Under the dispatch lock so no frame from the new handle is
        # normalized before the reset and the swap.
        async with self._dispatch_lock:
            if self._parked:
                logger.debug(
                    "Session %s: discarding %d frame(s) from the previous transport",
                    self._short_id, len(self._parked),
                )
            self._parked = None
            if handle.replay_history:
                self.normalizer.reset()
            self._handle = handle
            self._transport = transport
            self.mode = mode
            self.session_id = handle.session_id
            self._transition(state_for_mode(mode))
            await fire_callback(self._mode_change_callback, mode)
            await fire_callback(self._session_ready_callback, handle.session_id)

    async def _rollback_switch(
        self,
        old_state: SessionState,
        old_handle: TransportHandle | None,
        old_transport: Transport | None,
        target: SessionMode,
        reason: str,
    ) -> bool:
        """Undo a switch whose new transport never came up. Always returns False."""
        if old_handle is not None and not old_handle.closed:
            logger.warning(
                "Switch to %s failed, staying on %s: %s",
                target.value, old_handle.transport, reason,
            )
            async with self._dispatch_lock:
                old_handle.reading = True
                self._transition(old_state)
                await self._replay_parked()
            self._start_pump()
            return False

        logger.error("Switch to %s failed with no transport left: %s", target.value, reason)
        async with self._dispatch_lock:
            await self._replay_parked()
            self._handle = None
            self._transport = None
            self._transition(SessionState.FAILED)
            await self._emit(_event(EventType.TASK_FAILED, error=reason))
        if old_handle is not None and old_transport is not None:
            await old_transport.stop(old_handle)
        return False

    async def _replay_parked(self) -> None:
        parked, self._parked = self._parked or [], None
        if parked:
            logger.debug(
                "Session %s: replaying %d held frame(s)", self._short_id, len(parked),
            )
        for method, params in parked:
            for event in self.normalizer.handle(method, params):
                await self._emit(event)

    async def _abort_locked(self) -> None:
        if self.state not in _RUNNING:
            return
        handle, transport = self._handle, self._transport
        if handle is not None:
            handle.reading = False
        await self._stop_pump(graceful=False)
        async with self._dispatch_lock:
            if self.turn_in_flight:
                await self._emit(_event(EventType.TURN_ABORTED, turn_id=self.turn_id))
            self._handle = None
            self._transport = None
            self._transition(SessionState.STOPPED)
        if handle is not None and transport is not None:
            await transport.stop(handle)
        logger.info("Session %s aborted", self._short_id)

    async def _emit(self, event: dict[str, Any]) -> None:
        adopted = self._track(event)
        await fire_event(self._event_callback, event)
        if adopted:
            await fire_callback(self._session_ready_callback, adopted)

    def _track(self, event: dict[str, Any]) -> str | None:
        """Update turn state from an outgoing event; returns an adopted thread id."""
        event_type = event.get("type")
        if event_type == EventType.TASK_STARTED.value:
            self.turn_in_flight = True
            self.turn_id = event.get("turn_id")
        elif event_type in TURN_TERMINAL_EVENTS:
            self.turn_in_flight = False
            self.turn_id = None
        elif event_type == EventType.THREAD_STARTED.value:
            thread_id = event.get("thread_id")
            if thread_id and thread_id != self.session_id:
                logger.info(
                    "Session %s adopting backend thread id %s",
                    self._short_id, thread_id[:8],
                )
                self.session_id = thread_id
                return thread_id
        return None

    # ── Queue pump ─────────────────────────────────────────────

    def _start_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _stop_pump(self, graceful: bool) -> None:
        task, self._pump_task = self._pump_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        if graceful:
            # Let an in-flight send finish; the sink refuses the rest.
            try:
                await asyncio.wait_for(
                    self.queue.settle(), timeout=self._config.stop_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("Session %s: send still in flight, cancelling", self._short_id)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _deliver(
        self, handle: TransportHandle, transport: Transport, payload: Any,
    ) -> bool:
        if handle is not self._handle or not handle.reading:
            return False
        return await transport.send(handle, payload)

    async def _pump(self) -> None:
        while True:
            await self.queue.wait()
            handle, transport = self._handle, self._transport
            if handle is None or transport is None:
                return
            delivered = await self.queue.drain(
                lambda payload: self._deliver(handle, transport, payload),
            )
            if delivered:
                logger.debug(
                    "Session %s: delivered %d message(s) via %s",
                    self._short_id, delivered, handle.transport,
                )
            if len(self.queue):
                await asyncio.sleep(self._config.queue_retry_seconds)
