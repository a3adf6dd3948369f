from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from agentlink.engine.config import SessionConfig
from agentlink.engine.errors import (
    SessionStateError,
    TransportNotConfiguredError,
    TransportStartError,
)
from agentlink.engine.models import SessionMode, SessionState
from agentlink.engine.orchestrator import SessionOrchestrator
from agentlink.engine.transports.base import Transport, TransportContext, TransportHandle


class _FakeTransport(Transport):
    def __init__(
        self,
        name: str,
        *,
        accept: bool = True,
        fail_start: bool = False,
        replay: bool = False,
        fork_id: str | None = None,
    ) -> None:
        self.name = name
        self.accept = accept
        self.fail_start = fail_start
        self.replay = replay
        self.fork_id = fork_id
        self.contexts: list[TransportContext] = []
        self.handles: list[TransportHandle] = []
        self.attempts: list[object] = []
        self.sent: list[object] = []
        self.stopped: list[TransportHandle] = []
        # Awaited at the top of start(); may raise to simulate odd failures
        self.on_start = None

    async def start(self, context: TransportContext) -> TransportHandle:
        self.contexts.append(context)
        if self.on_start is not None:
            await self.on_start()
        if self.fail_start:
            raise TransportStartError(self.name, "unreachable")
        handle = TransportHandle(
            transport=self.name,
            session_id=context.session_id or f"{self.name}-sid",
            replay_history=self.replay,
        )
        self.handles.append(handle)
        return handle

    async def send(self, handle: TransportHandle, payload) -> bool:
        self.attempts.append(payload)
        if not self.accept:
            return False
        self.sent.append(payload)
        return True

    async def stop(self, handle: TransportHandle) -> None:
        handle.reading = False
        handle.closed = True
        self.stopped.append(handle)

    async def fork(self, session_id: str) -> str | None:
        return self.fork_id

    async def notify(self, method: str, params: dict, handle: TransportHandle | None = None) -> None:
        handle = handle or self.handles[-1]
        await self.contexts[-1].on_notification(handle, method, params)

    async def crash(self, error: str) -> None:
        handle = self.handles[-1]
        handle.closed = True
        await self.contexts[-1].on_closed(handle, error)


class _FakeHookServer:
    def __init__(self) -> None:
        self.handlers: dict = {}

    def register(self, key, handler) -> str:
        self.handlers[key] = handler
        return f"http://127.0.0.1:9/hooks/{key}"

    def deregister(self, key) -> None:
        self.handlers.pop(key, None)


async def _until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _make(local=None, remote=None, **kwargs):
    local = local or _FakeTransport("local")
    remote = remote or _FakeTransport("remote")
    events: list[dict] = []

    async def collect(event: dict) -> None:
        events.append(event)

    config = SessionConfig(queue_retry_seconds=0.01, stop_timeout_seconds=0.5)
    orchestrator = SessionOrchestrator(
        {SessionMode.LOCAL: local, SessionMode.REMOTE: remote},
        config,
        event_callback=collect,
        **kwargs,
    )
    return orchestrator, local, remote, events


# ── Start / events ──


@pytest.mark.asyncio
async def test_start_attaches_transport_and_adopts_its_id() -> None:
    orchestrator, local, _, events = _make()
    assert await orchestrator.start(SessionMode.LOCAL) is True
    assert orchestrator.state is SessionState.LOCAL
    assert orchestrator.mode is SessionMode.LOCAL
    assert orchestrator.session_id == "local-sid"
    assert local.contexts[0].resume is False
    assert events == []
    await orchestrator.close()


@pytest.mark.asyncio
async def test_start_twice_is_rejected() -> None:
    orchestrator, *_ = _make()
    await orchestrator.start("local")
    with pytest.raises(SessionStateError):
        await orchestrator.start("local")
    await orchestrator.close()


@pytest.mark.asyncio
async def test_start_failure_emits_task_failed_and_stays_idle() -> None:
    orchestrator, _, _, events = _make(local=_FakeTransport("local", fail_start=True))
    assert await orchestrator.start(SessionMode.LOCAL) is False
    assert orchestrator.state is SessionState.IDLE
    assert events[0]["type"] == "task_failed"
    assert "unreachable" in events[0]["error"]


@pytest.mark.asyncio
async def test_unconfigured_mode_raises() -> None:
    orchestrator = SessionOrchestrator({SessionMode.LOCAL: _FakeTransport("local")})
    with pytest.raises(TransportNotConfiguredError):
        await orchestrator.start(SessionMode.REMOTE)


@pytest.mark.asyncio
async def test_command_scenario_flows_to_callback() -> None:
    orchestrator, local, _, events = _make()
    await orchestrator.start(SessionMode.LOCAL)

    await local.notify("codex/event/exec_command_begin",
                       {"msg": {"type": "exec_command_begin", "call_id": "c1", "command": "ls"}})
    for chunk in "abc":
        await local.notify("codex/event/exec_command_output_delta",
                           {"msg": {"type": "exec_command_output_delta", "call_id": "c1", "delta": chunk}})
    await local.notify("codex/event/exec_command_end",
                       {"msg": {"type": "exec_command_end", "call_id": "c1"}})

    assert events == [
        {"type": "exec_command_begin", "call_id": "c1", "command": "ls"},
        {"type": "exec_command_end", "call_id": "c1", "command": "ls", "output": "abc"},
    ]
    assert orchestrator.normalizer.is_idle
    await orchestrator.close()


@pytest.mark.asyncio
async def test_thread_started_id_is_adopted() -> None:
    orchestrator, local, _, _ = _make()
    await orchestrator.start(SessionMode.LOCAL)
    await local.notify("thread/started", {"thread": {"id": "thread-42"}})
    assert orchestrator.session_id == "thread-42"
    await orchestrator.close()


@pytest.mark.asyncio
async def test_turn_tracking() -> None:
    orchestrator, local, _, _ = _make()
    await orchestrator.start(SessionMode.LOCAL)
    await local.notify("turn/started", {"turn": {"id": "t1"}})
    assert orchestrator.turn_in_flight is True
    assert orchestrator.turn_id == "t1"
    await local.notify("turn/completed", {"turn": {"id": "t1", "status": "completed"}})
    assert orchestrator.turn_in_flight is False
    assert orchestrator.turn_id is None
    await orchestrator.close()


@pytest.mark.asyncio
async def test_broken_event_callback_does_not_break_session() -> None:
    local = _FakeTransport("local")
    callback = AsyncMock(side_effect=RuntimeError("subscriber bug"))
    orchestrator = SessionOrchestrator(
        {SessionMode.LOCAL: local}, SessionConfig(), event_callback=callback,
    )
    await orchestrator.start(SessionMode.LOCAL)
    await local.notify("turn/started", {"turn": {"id": "t1"}})
    assert callback.await_count == 1
    assert orchestrator.turn_in_flight is True
    await orchestrator.close()


# ── Queue ──


@pytest.mark.asyncio
async def test_messages_sent_before_start_are_delivered_after() -> None:
    orchestrator, local, _, _ = _make()
    await orchestrator.send({"text": "early"})
    await orchestrator.start(SessionMode.LOCAL)
    await _until(lambda: local.sent == [{"text": "early"}])
    await orchestrator.close()


@pytest.mark.asyncio
async def test_refused_message_is_retried() -> None:
    local = _FakeTransport("local", accept=False)
    orchestrator, *_ = _make(local=local)
    await orchestrator.start(SessionMode.LOCAL)
    await orchestrator.send("p1")
    await _until(lambda: len(local.attempts) >= 2)
    local.accept = True
    await _until(lambda: local.sent == ["p1"])
    assert len(orchestrator.queue) == 0
    await orchestrator.close()


# ── Mode switching ──


@pytest.mark.asyncio
async def test_switch_delivers_queued_messages_to_new_transport_exactly_once() -> None:
    local = _FakeTransport("local", accept=False)
    orchestrator, _, remote, _ = _make(local=local)
    await orchestrator.start(SessionMode.LOCAL)
    await orchestrator.send("P1")
    await orchestrator.send("P2")
    await _until(lambda: len(local.attempts) >= 1)

    assert await orchestrator.switch_mode(SessionMode.REMOTE) is True
    await _until(lambda: remote.sent == ["P1", "P2"])
    await asyncio.sleep(0.05)

    assert remote.sent == ["P1", "P2"]
    assert local.sent == []
    assert orchestrator.state is SessionState.REMOTE
    assert local.stopped == [local.handles[0]]
    assert remote.contexts[0].session_id == "local-sid"
    assert remote.contexts[0].resume is True
    await orchestrator.close()


@pytest.mark.asyncio
async def test_switch_to_current_mode_is_noop() -> None:
    orchestrator, local, remote, _ = _make()
    await orchestrator.start(SessionMode.LOCAL)
    assert await orchestrator.switch_mode("local") is True
    assert remote.contexts == []
    assert local.stopped == []
    await orchestrator.close()


@pytest.mark.asyncio
async def test_frames_from_old_transport_are_dropped_after_switch() -> None:
    orchestrator, local, remote, events = _make()
    await orchestrator.start(SessionMode.LOCAL)
    old_handle = local.handles[0]
    await orchestrator.switch_mode(SessionMode.REMOTE)

    await local.notify("turn/started", {"turn": {"id": "stale"}}, handle=old_handle)
    await remote.notify("turn/started", {"turn": {"id": "fresh"}})
    assert events == [{"type": "task_started", "turn_id": "fresh"}]
    await orchestrator.close()


@pytest.mark.asyncio
async def test_switch_keeps_buffers_unless_history_is_replayed() -> None:
    orchestrator, local, remote, events = _make()
    await orchestrator.start(SessionMode.LOCAL)
    await local.notify("item/agentMessage/delta", {"itemId": "m1", "delta": "Hel"})
    await orchestrator.switch_mode(SessionMode.REMOTE)
    await remote.notify("item/agentMessage/delta", {"itemId": "m1", "delta": "lo"})
    await remote.notify("item/completed", {"item": {"id": "m1", "type": "agentMessage"}})
    assert events == [{"type": "agent_message", "text": "Hello"}]
    await orchestrator.close()


@pytest.mark.asyncio
async def test_replaying_transport_resets_normalizer() -> None:
    remote = _FakeTransport("remote", replay=True)
    orchestrator, local, _, _ = _make(remote=remote)
    await orchestrator.start(SessionMode.LOCAL)
    await local.notify("item/agentMessage/delta", {"itemId": "m1", "delta": "partial"})
    await orchestrator.switch_mode(SessionMode.REMOTE)
    assert orchestrator.normalizer.agent_message_buffers == {}
    await orchestrator.close()


@pytest.mark.asyncio
async def test_switch_failure_rolls_back_to_live_transport() -> None:
    remote = _FakeTransport("remote", fail_start=True)
    orchestrator, local, _, events = _make(remote=remote)
    await orchestrator.start(SessionMode.LOCAL)

    assert await orchestrator.switch_mode(SessionMode.REMOTE) is False
    assert orchestrator.state is SessionState.LOCAL
    assert orchestrator.handle is local.handles[0]
    assert orchestrator.handle.reading is True
    assert local.stopped == []
    assert events == []

    await orchestrator.send("after")
    await _until(lambda: local.sent == ["after"])
    await orchestrator.close()


@pytest.mark.asyncio
async def test_switch_failure_with_dead_old_transport_enters_failed() -> None:
    remote = _FakeTransport("remote", fail_start=True)
    orchestrator, local, _, events = _make(remote=remote)
    await orchestrator.start(SessionMode.LOCAL)
    local.accept = False
    await orchestrator.send("kept")

    async def kill_local() -> None:
        local.handles[0].closed = True

    remote.on_start = kill_local
    assert await orchestrator.switch_mode(SessionMode.REMOTE) is False
    assert orchestrator.state is SessionState.FAILED
    assert events[-1]["type"] == "task_failed"

    # Queue survives; a later switch drains it
    remote.fail_start = False
    assert await orchestrator.switch_mode(SessionMode.REMOTE) is True
    await _until(lambda: remote.sent == ["kept"])
    assert local.sent == []
    await orchestrator.close()


@pytest.mark.asyncio
async def test_unexpected_start_error_rolls_back() -> None:
    remote = _FakeTransport("remote")
    orchestrator, local, _, events = _make(remote=remote)
    await orchestrator.start(SessionMode.LOCAL)

    async def garbled_reply() -> None:
        raise json.JSONDecodeError("Expecting value", "<html>maintenance</html>", 0)

    remote.on_start = garbled_reply
    assert await orchestrator.switch_mode(SessionMode.REMOTE) is False
    assert orchestrator.state is SessionState.LOCAL
    assert orchestrator.handle is local.handles[0]
    assert orchestrator.handle.reading is True
    assert events == []

    await orchestrator.send("after")
    await _until(lambda: local.sent == ["after"])
    await orchestrator.close()
    assert local.stopped == [local.handles[0]]


@pytest.mark.asyncio
async def test_unexpected_start_error_with_dead_old_transport_enters_failed() -> None:
    remote = _FakeTransport("remote")
    orchestrator, local, _, events = _make(remote=remote)
    await orchestrator.start(SessionMode.LOCAL)

    async def crash() -> None:
        local.handles[0].closed = True
        raise RuntimeError("hub exploded")

    remote.on_start = crash
    assert await orchestrator.switch_mode(SessionMode.REMOTE) is False
    assert orchestrator.state is SessionState.FAILED
    assert events[-1] == {"type": "task_failed", "error": "hub exploded"}
    assert local.stopped == [local.handles[0]]


@pytest.mark.asyncio
async def test_unexpected_launch_error_emits_task_failed() -> None:
    local = _FakeTransport("local")

    async def boom() -> None:
        raise OSError("exec format error")

    local.on_start = boom
    orchestrator, _, _, events = _make(local=local)
    assert await orchestrator.start(SessionMode.LOCAL) is False
    assert orchestrator.state is SessionState.IDLE
    assert events == [{"type": "task_failed", "error": "exec format error"}]


@pytest.mark.asyncio
async def test_cancelled_switch_restores_old_transport_and_close_stops_it() -> None:
    remote = _FakeTransport("remote")
    orchestrator, local, _, _ = _make(remote=remote)
    await orchestrator.start(SessionMode.LOCAL)
    never = asyncio.Event()

    async def hang() -> None:
        await never.wait()

    remote.on_start = hang
    switch = asyncio.create_task(orchestrator.switch_mode(SessionMode.REMOTE))
    await _until(lambda: len(remote.contexts) == 1)
    switch.cancel()
    await asyncio.gather(switch, return_exceptions=True)

    assert orchestrator.state is SessionState.LOCAL
    assert orchestrator.handle.reading is True
    await orchestrator.close()
    assert orchestrator.state is SessionState.CLOSED
    assert local.stopped == [local.handles[0]]


# ── Frames from the old transport during a switch ──


@pytest.mark.asyncio
async def test_frames_held_during_failed_switch_are_replayed() -> None:
    remote = _FakeTransport("remote", fail_start=True)
    orchestrator, local, _, events = _make(remote=remote)
    await orchestrator.start(SessionMode.LOCAL)
    await local.notify("turn/started", {"turn": {"id": "t1"}})
    await local.notify("item/agentMessage/delta", {"itemId": "m1", "delta": "Hel"})

    async def old_transport_keeps_talking() -> None:
        await local.notify("item/agentMessage/delta", {"itemId": "m1", "delta": "lo"})
        await local.notify("item/completed", {"item": {"id": "m1", "type": "agentMessage"}})
        await local.notify("turn/completed", {"turn": {"id": "t1", "status": "completed"}})

    remote.on_start = old_transport_keeps_talking
    assert await orchestrator.switch_mode(SessionMode.REMOTE) is False

    assert events == [
        {"type": "task_started", "turn_id": "t1"},
        {"type": "agent_message", "text": "Hello"},
        {"type": "task_complete", "turn_id": "t1"},
    ]
    assert orchestrator.turn_in_flight is False

    await local.notify("turn/started", {"turn": {"id": "t2"}})
    assert events[-1] == {"type": "task_started", "turn_id": "t2"}
    await orchestrator.close()


@pytest.mark.asyncio
async def test_frames_held_during_successful_switch_are_discarded() -> None:
    remote = _FakeTransport("remote")
    orchestrator, local, _, events = _make(remote=remote)
    await orchestrator.start(SessionMode.LOCAL)

    async def late_frame() -> None:
        await local.notify("turn/started", {"turn": {"id": "stale"}})

    remote.on_start = late_frame
    assert await orchestrator.switch_mode(SessionMode.REMOTE) is True
    assert events == []
    assert orchestrator.turn_in_flight is False

    await remote.notify("turn/started", {"turn": {"id": "fresh"}})
    assert events == [{"type": "task_started", "turn_id": "fresh"}]
    await orchestrator.close()


# ── Mode / session callbacks ──


@pytest.mark.asyncio
async def test_mode_change_and_session_ready_callbacks() -> None:
    on_mode = AsyncMock()
    on_ready = AsyncMock()
    orchestrator, _, remote, _ = _make(
        mode_change_callback=on_mode, session_ready_callback=on_ready,
    )
    await orchestrator.start(SessionMode.LOCAL)
    await orchestrator.switch_mode(SessionMode.REMOTE)
    await remote.notify("thread/started", {"thread": {"id": "thread-42"}})

    assert [c.args for c in on_mode.await_args_list] == [
        (SessionMode.LOCAL,), (SessionMode.REMOTE,),
    ]
    assert [c.args for c in on_ready.await_args_list] == [
        ("local-sid",), ("local-sid",), ("thread-42",),
    ]

    # Same id again is not a change
    await remote.notify("thread/started", {"thread": {"id": "thread-42"}})
    assert on_ready.await_count == 3

    child = await orchestrator.fork()
    await child.start()
    assert on_mode.await_args.args == (SessionMode.REMOTE,)
    assert on_ready.await_args.args == (child.session_id,)
    await child.close()
    await orchestrator.close()


@pytest.mark.asyncio
async def test_failing_mode_callback_does_not_break_start() -> None:
    on_mode = AsyncMock(side_effect=RuntimeError("ui gone"))
    orchestrator, local, _, _ = _make(mode_change_callback=on_mode)
    assert await orchestrator.start(SessionMode.LOCAL) is True
    assert orchestrator.state is SessionState.LOCAL
    on_mode.assert_awaited_once_with(SessionMode.LOCAL)
    await orchestrator.send("hi")
    await _until(lambda: local.sent == ["hi"])
    await orchestrator.close()


# ── Abort / crash / resume ──


@pytest.mark.asyncio
async def test_abort_emits_turn_aborted_and_stops_transport() -> None:
    orchestrator, local, _, events = _make()
    await orchestrator.start(SessionMode.LOCAL)
    await local.notify("turn/started", {"turn": {"id": "t1"}})

    await orchestrator.abort()
    assert events[-1] == {"type": "turn_aborted", "turn_id": "t1"}
    assert orchestrator.state is SessionState.STOPPED
    assert local.stopped == [local.handles[0]]
    assert orchestrator.turn_in_flight is False


@pytest.mark.asyncio
async def test_abort_without_turn_emits_nothing() -> None:
    orchestrator, _, _, events = _make()
    await orchestrator.start(SessionMode.LOCAL)
    await orchestrator.abort()
    assert events == []
    assert orchestrator.state is SessionState.STOPPED


@pytest.mark.asyncio
async def test_crash_mid_turn_emits_turn_aborted() -> None:
    orchestrator, local, _, events = _make()
    await orchestrator.start(SessionMode.LOCAL)
    await local.notify("turn/started", {"turn": {"id": "t1"}})
    await local.crash("codex exited with code 1")
    assert events[-1] == {"type": "turn_aborted", "turn_id": "t1"}
    assert orchestrator.state is SessionState.STOPPED


@pytest.mark.asyncio
async def test_crash_while_idle_emits_task_failed() -> None:
    orchestrator, local, _, events = _make()
    await orchestrator.start(SessionMode.LOCAL)
    await local.crash("codex exited with code 1")
    assert events == [{"type": "task_failed", "error": "codex exited with code 1"}]
    assert orchestrator.state is SessionState.STOPPED
    assert orchestrator.handle is None


@pytest.mark.asyncio
async def test_resume_after_stop_passes_prior_id() -> None:
    orchestrator, local, remote, _ = _make()
    await orchestrator.start(SessionMode.LOCAL)
    await orchestrator.abort()

    assert await orchestrator.resume("local-sid", SessionMode.REMOTE) is True
    assert orchestrator.state is SessionState.REMOTE
    assert remote.contexts[-1].session_id == "local-sid"
    assert remote.contexts[-1].resume is True
    await orchestrator.close()


@pytest.mark.asyncio
async def test_resume_while_running_is_rejected() -> None:
    orchestrator, *_ = _make()
    await orchestrator.start(SessionMode.LOCAL)
    with pytest.raises(SessionStateError):
        await orchestrator.resume("other")
    await orchestrator.close()


# ── Fork / close ──


@pytest.mark.asyncio
async def test_fork_uses_hub_id_when_available() -> None:
    remote = _FakeTransport("remote", fork_id="hub-fork-1")
    orchestrator, _, _, _ = _make(remote=remote, cwd="/repo")
    await orchestrator.start(SessionMode.REMOTE)
    await orchestrator.send("pending")

    child = await orchestrator.fork()
    assert child.session_id == "hub-fork-1"
    assert child.forked_from == "remote-sid"
    assert child.mode is SessionMode.REMOTE
    assert child.cwd == "/repo"
    assert child.state is SessionState.IDLE
    assert len(child.queue) == 0
    assert child.normalizer is not orchestrator.normalizer
    await orchestrator.close()


@pytest.mark.asyncio
async def test_fork_falls_back_to_fresh_uuid() -> None:
    orchestrator, *_ = _make()
    await orchestrator.start(SessionMode.LOCAL)
    child = await orchestrator.fork()
    assert child.session_id and child.session_id != orchestrator.session_id
    assert child.forked_from == "local-sid"

    assert await child.start() is True
    assert child.mode is SessionMode.LOCAL
    await child.close()
    await orchestrator.close()


@pytest.mark.asyncio
async def test_close_is_terminal() -> None:
    orchestrator, local, _, _ = _make()
    await orchestrator.start(SessionMode.LOCAL)
    await orchestrator.close()
    await orchestrator.close()
    assert orchestrator.state is SessionState.CLOSED
    assert local.stopped == [local.handles[0]]
    with pytest.raises(SessionStateError):
        await orchestrator.send("late")


# ── Approval hooks ──


@pytest.mark.asyncio
async def test_hook_request_emits_event_and_consults_callback() -> None:
    hooks = _FakeHookServer()
    approve = AsyncMock(return_value={"decision": "approved"})
    orchestrator, local, _, events = _make(hook_server=hooks, approval_callback=approve)
    await orchestrator.start(SessionMode.LOCAL)

    [key] = hooks.handlers
    assert local.contexts[0].hook_url.endswith(key)
    reply = await hooks.handlers[key]({
        "method": "execCommandApproval",
        "params": {"callId": "c5", "command": ["rm", "-rf", "build"]},
    })

    assert reply == {"decision": "approved"}
    approve.assert_awaited_once_with(
        "local-sid", {"callId": "c5", "command": ["rm", "-rf", "build"]},
    )
    assert events[-1]["type"] == "exec_approval_request"
    assert events[-1]["call_id"] == "c5"

    await orchestrator.close()
    assert hooks.handlers == {}


@pytest.mark.asyncio
async def test_hook_request_denied_without_callback() -> None:
    hooks = _FakeHookServer()
    orchestrator, *_ = _make(hook_server=hooks)
    await orchestrator.start(SessionMode.LOCAL)
    [handler] = hooks.handlers.values()
    assert await handler({"call_id": "c1"}) == {"decision": "deny"}
    await orchestrator.close()
