"""Typed views of the canonical session events.

The engine emits flat dicts like ``{"type": "agent_message", "text": ...}``.
These dataclasses give consumers attribute access and defaults;
``dict_to_event`` / ``event_to_dict`` convert in both directions.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any


@dataclass
class SessionEvent:
    """Base canonical event. Unknown types parse into this."""
    event_type: str = ""


@dataclass
class ThreadStarted(SessionEvent):
    event_type: str = "thread_started"
    thread_id: str = ""


@dataclass
class TaskStarted(SessionEvent):
    event_type: str = "task_started"
    turn_id: str | None = None
    context_window: int | float | None = None
    collab_mode: str | None = None


@dataclass
class TaskComplete(SessionEvent):
    event_type: str = "task_complete"
    turn_id: str | None = None


@dataclass
class TaskFailed(SessionEvent):
    event_type: str = "task_failed"
    turn_id: str | None = None
    error: str | None = None
    error_info: Any = None


@dataclass
class TurnAborted(SessionEvent):
    event_type: str = "turn_aborted"
    turn_id: str | None = None


@dataclass
class AgentMessage(SessionEvent):
    event_type: str = "agent_message"
    text: str = ""


@dataclass
class AgentReasoning(SessionEvent):
    event_type: str = "agent_reasoning"
    text: str = ""


@dataclass
class AgentReasoningDelta(SessionEvent):
    event_type: str = "agent_reasoning_delta"
    delta: str = ""


@dataclass
class AgentReasoningSectionBreak(SessionEvent):
    event_type: str = "agent_reasoning_section_break"


@dataclass
class ExecCommandBegin(SessionEvent):
    event_type: str = "exec_command_begin"
    call_id: str = ""
    command: str | None = None
    cwd: str | None = None
    auto_approved: bool | None = None


@dataclass
class ExecCommandEnd(SessionEvent):
    event_type: str = "exec_command_end"
    call_id: str = ""
    command: str | None = None
    cwd: str | None = None
    auto_approved: bool | None = None
    output: str | None = None
    stderr: str | None = None
    error: str | None = None
    exit_code: int | float | None = None
    status: str | None = None


@dataclass
class PatchApplyBegin(SessionEvent):
    event_type: str = "patch_apply_begin"
    call_id: str = ""
    changes: dict[str, Any] | None = None
    auto_approved: bool | None = None


@dataclass
class PatchApplyEnd(SessionEvent):
    event_type: str = "patch_apply_end"
    call_id: str = ""
    changes: dict[str, Any] | None = None
    auto_approved: bool | None = None
    stdout: str | None = None
    stderr: str | None = None
    success: bool = False


@dataclass
class TurnDiff(SessionEvent):
    event_type: str = "turn_diff"
    unified_diff: str = ""


@dataclass
class TokenCount(SessionEvent):
    event_type: str = "token_count"
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecApprovalRequest(SessionEvent):
    """Approval request; backend-specific fields are kept in ``request``."""
    event_type: str = "exec_approval_request"
    call_id: str = ""
    request: dict[str, Any] = field(default_factory=dict)


_EVENT_MAP: dict[str, type[SessionEvent]] = {
    "thread_started": ThreadStarted,
    "task_started": TaskStarted,
    "task_complete": TaskComplete,
    "task_failed": TaskFailed,
    "turn_aborted": TurnAborted,
    "agent_message": AgentMessage,
    "agent_reasoning": AgentReasoning,
    "agent_reasoning_delta": AgentReasoningDelta,
    "agent_reasoning_section_break": AgentReasoningSectionBreak,
    "exec_command_begin": ExecCommandBegin,
    "exec_command_end": ExecCommandEnd,
    "patch_apply_begin": PatchApplyBegin,
    "patch_apply_end": PatchApplyEnd,
    "turn_diff": TurnDiff,
    "token_count": TokenCount,
    "exec_approval_request": ExecApprovalRequest,
}


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Convert a typed event back to the engine's flat dict shape."""
    d: dict[str, Any] = {}
    for f in fields(event):
        val = getattr(event, f.name)
        if val is not None:
            d[f.name] = val
    d["type"] = d.pop("event_type")
    if isinstance(event, ExecApprovalRequest):
        extras = d.pop("request")
        d = {**extras, **d}
    return d


def dict_to_event(data: dict[str, Any]) -> SessionEvent:
    """Convert an engine event dict to its typed dataclass."""
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type, SessionEvent)
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    filtered["event_type"] = event_type
    if cls is ExecApprovalRequest:
        filtered["request"] = {
            k: v for k, v in data.items() if k not in ("type", "call_id")
        }
    return cls(**filtered)
