"""Core enums and small value types for the session engine.

Single source of truth to avoid circular imports.
"""
from __future__ import annotations

from enum import Enum


class SessionMode(str, Enum):
    """Where the agent backend runs."""
    LOCAL = "local"
    REMOTE = "remote"


class SessionState(str, Enum):
    """Orchestrator lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    LOCAL = "local"
    REMOTE = "remote"
    SWITCHING = "switching"
    STOPPED = "stopped"
    FAILED = "failed"
    CLOSED = "closed"


def state_for_mode(mode: SessionMode) -> SessionState:
    """Map a session mode onto its steady running state."""
    if mode is SessionMode.LOCAL:
        return SessionState.LOCAL
    return SessionState.REMOTE


class EventType(str, Enum):
    """Canonical event vocabulary emitted by the normalizer."""
    THREAD_STARTED = "thread_started"
    TASK_STARTED = "task_started"
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    TURN_ABORTED = "turn_aborted"
    AGENT_MESSAGE = "agent_message"
    AGENT_REASONING = "agent_reasoning"
    AGENT_REASONING_DELTA = "agent_reasoning_delta"
    AGENT_REASONING_SECTION_BREAK = "agent_reasoning_section_break"
    EXEC_COMMAND_BEGIN = "exec_command_begin"
    EXEC_COMMAND_END = "exec_command_end"
    PATCH_APPLY_BEGIN = "patch_apply_begin"
    PATCH_APPLY_END = "patch_apply_end"
    TURN_DIFF = "turn_diff"
    TOKEN_COUNT = "token_count"
    EXEC_APPROVAL_REQUEST = "exec_approval_request"


# Events that close the in-flight turn.
TURN_TERMINAL_EVENTS = frozenset({
    EventType.TASK_COMPLETE.value,
    EventType.TASK_FAILED.value,
    EventType.TURN_ABORTED.value,
})
