"""Protocol normalizer: backend notifications -> canonical events.

Agent backends report progress over two co-existing JSON notification
shapes:

  legacy      method ``codex/event/<type>``; the payload lives under
              ``params.msg`` with its own ``type`` discriminator
              (``exec_command_begin``, ``agent_reasoning_delta``, ...)
  structured  one method per notification (``turn/started``,
              ``item/completed``, ``item/agentMessage/delta``, ...)

Both map onto the same canonical event dicts, so a frontend never has
to know which protocol generation a backend speaks. Streaming deltas
are accumulated per item/call id and flushed into the terminal event
when the backend does not repeat the full text there.

One ProtocolNormalizer belongs to exactly one session and must not be
called concurrently; the orchestrator serializes dispatch.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from .models import EventType
from .notification import (
    as_record,
    as_string,
    extract_changes,
    extract_command,
    first_present,
    get_bool,
    get_number,
    get_record,
    get_string,
    normalize_item_type,
    unwrap,
    unwrap_error_detail,
)

logger = logging.getLogger(__name__)

Event = dict[str, Any]

LEGACY_METHOD = "codex/event"
LEGACY_PREFIX = "codex/event/"

# Buffer keys for deltas that arrive without an item id.
_REASONING_KEY = "reasoning"
_AGENT_MESSAGE_KEY = "agent_message"

_ABORTED_STATUSES = frozenset({"interrupted", "cancelled", "canceled"})
_FAILED_STATUSES = frozenset({"failed", "error"})


class NotificationMethod(str, Enum):
    """Structured-shape notification methods."""
    THREAD_STARTED = "thread/started"
    THREAD_RESUMED = "thread/resumed"
    TURN_STARTED = "turn/started"
    TURN_COMPLETED = "turn/completed"
    TURN_DIFF_UPDATED = "turn/diff/updated"
    TOKEN_USAGE_UPDATED = "thread/tokenUsage/updated"
    ITEM_STARTED = "item/started"
    ITEM_COMPLETED = "item/completed"
    AGENT_MESSAGE_DELTA = "item/agentMessage/delta"
    REASONING_TEXT_DELTA = "item/reasoning/textDelta"
    REASONING_SUMMARY_TEXT_DELTA = "item/reasoning/summaryTextDelta"
    REASONING_SUMMARY_PART_ADDED = "item/reasoning/summaryPartAdded"
    COMMAND_OUTPUT_DELTA = "item/commandExecution/outputDelta"
    COMMAND_APPROVAL_REQUEST = "item/commandExecution/requestApproval"
    EXEC_COMMAND_APPROVAL = "execCommandApproval"
    ERROR = "error"


class LegacyEventType(str, Enum):
    """Inner ``msg.type`` values of the legacy shape."""
    THREAD_STARTED = "thread_started"
    TASK_STARTED = "task_started"
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    TURN_ABORTED = "turn_aborted"
    ERROR = "error"
    STREAM_ERROR = "stream_error"
    AGENT_MESSAGE = "agent_message"
    AGENT_MESSAGE_DELTA = "agent_message_delta"
    AGENT_REASONING = "agent_reasoning"
    AGENT_REASONING_DELTA = "agent_reasoning_delta"
    AGENT_REASONING_SECTION_BREAK = "agent_reasoning_section_break"
    EXEC_COMMAND_BEGIN = "exec_command_begin"
    EXEC_COMMAND_OUTPUT_DELTA = "exec_command_output_delta"
    EXEC_COMMAND_END = "exec_command_end"
    EXEC_APPROVAL_REQUEST = "exec_approval_request"
    PATCH_APPLY_BEGIN = "patch_apply_begin"
    PATCH_APPLY_END = "patch_apply_end"
    TURN_DIFF = "turn_diff"
    TOKEN_COUNT = "token_count"
    # Informational; acknowledged without an event.
    USER_MESSAGE = "user_message"
    SESSION_CONFIGURED = "session_configured"
    MCP_STARTUP_UPDATE = "mcp_startup_update"
    MCP_STARTUP_COMPLETE = "mcp_startup_complete"
    ITEM_STARTED = "item_started"
    ITEM_COMPLETED = "item_completed"


_INFORMATIONAL = frozenset({
    LegacyEventType.USER_MESSAGE,
    LegacyEventType.SESSION_CONFIGURED,
    LegacyEventType.MCP_STARTUP_UPDATE,
    LegacyEventType.MCP_STARTUP_COMPLETE,
    LegacyEventType.ITEM_STARTED,
    LegacyEventType.ITEM_COMPLETED,
})


def _compact(event: Event) -> Event:
    """Drop absent optional fields."""
    return {k: v for k, v in event.items() if v is not None}


def _error_info(record: dict[str, Any] | None) -> Any:
    value = first_present(
        record, "codex_error_info", "codexErrorInfo", "error_info", "errorInfo",
    )
    return as_string(value) or as_record(value)


def _patch_success(record: dict[str, Any]) -> bool:
    success = get_bool(record, "success", "ok", "applied", within=())
    if success is not None:
        return success
    status = as_string(record.get("status"))
    if status is not None:
        return status.lower() == "completed"
    return False


def _extract_item_id(params: dict[str, Any]) -> str | None:
    return get_string(params, "itemId", "item_id", "id", within=("item",))


class ProtocolNormalizer:
    """Converts one session's notification stream into canonical events.

    Owns the per-session accumulation state: text buffers keyed by
    item/call id and the begin-time metadata merged into ``*_end``
    events. Every entry is removed once its terminal event is emitted.
    """

    def __init__(self) -> None:
        self.agent_message_buffers: dict[str, str] = {}
        self.reasoning_buffers: dict[str, str] = {}
        self.command_output_buffers: dict[str, str] = {}
        self.command_meta: dict[str, dict[str, Any]] = {}
        self.file_change_meta: dict[str, dict[str, Any]] = {}

        self._methods: dict[NotificationMethod, Callable[[dict[str, Any]], list[Event]]] = {
            NotificationMethod.THREAD_STARTED: self._on_thread_started,
            NotificationMethod.THREAD_RESUMED: self._on_thread_started,
            NotificationMethod.TURN_STARTED: self._on_turn_started,
            NotificationMethod.TURN_COMPLETED: self._on_turn_completed,
            NotificationMethod.TURN_DIFF_UPDATED: self._on_diff,
            NotificationMethod.TOKEN_USAGE_UPDATED: self._on_token_usage,
            NotificationMethod.ITEM_STARTED: self._on_item_started,
            NotificationMethod.ITEM_COMPLETED: self._on_item_completed,
            NotificationMethod.AGENT_MESSAGE_DELTA: self._on_agent_message_delta,
            NotificationMethod.REASONING_TEXT_DELTA: self._on_reasoning_delta,
            NotificationMethod.REASONING_SUMMARY_TEXT_DELTA: self._on_reasoning_delta,
            NotificationMethod.REASONING_SUMMARY_PART_ADDED: self._on_section_break,
            NotificationMethod.COMMAND_OUTPUT_DELTA: self._on_command_output_delta,
            NotificationMethod.COMMAND_APPROVAL_REQUEST: self._on_approval_request,
            NotificationMethod.EXEC_COMMAND_APPROVAL: self._on_approval_request,
            NotificationMethod.ERROR: self._on_error,
        }
        self._legacy: dict[LegacyEventType, Callable[[dict[str, Any]], list[Event]]] = {
            LegacyEventType.THREAD_STARTED: self._legacy_thread_started,
            LegacyEventType.TASK_STARTED: self._legacy_task_started,
            LegacyEventType.TASK_COMPLETE: self._legacy_task_complete,
            LegacyEventType.TASK_FAILED: self._legacy_task_failed,
            LegacyEventType.TURN_ABORTED: self._legacy_turn_aborted,
            LegacyEventType.ERROR: self._legacy_error,
            LegacyEventType.STREAM_ERROR: self._legacy_stream_error,
            LegacyEventType.AGENT_MESSAGE: self._legacy_agent_message,
            LegacyEventType.AGENT_MESSAGE_DELTA: self._legacy_agent_message_delta,
            LegacyEventType.AGENT_REASONING: self._legacy_reasoning,
            LegacyEventType.AGENT_REASONING_DELTA: self._legacy_reasoning_delta,
            LegacyEventType.AGENT_REASONING_SECTION_BREAK: self._on_section_break,
            LegacyEventType.EXEC_COMMAND_BEGIN: self._legacy_command_begin,
            LegacyEventType.EXEC_COMMAND_OUTPUT_DELTA: self._legacy_command_output_delta,
            LegacyEventType.EXEC_COMMAND_END: self._legacy_command_end,
            LegacyEventType.EXEC_APPROVAL_REQUEST: self._on_approval_request,
            LegacyEventType.PATCH_APPLY_BEGIN: self._legacy_patch_begin,
            LegacyEventType.PATCH_APPLY_END: self._legacy_patch_end,
            LegacyEventType.TURN_DIFF: self._on_diff,
            LegacyEventType.TOKEN_COUNT: self._legacy_token_count,
        }
        self._item_kinds: dict[str, Callable[[bool, str, dict[str, Any]], list[Event]]] = {
            "agentmessage": self._item_agent_message,
            "reasoning": self._item_reasoning,
            "commandexecution": self._item_command,
            "filechange": self._item_file_change,
        }

    # ── Public API ─────────────────────────────────────────────

    def handle(self, method: str, params: Any) -> list[Event]:
        """Convert one notification into zero or more canonical events."""
        record = as_record(params) or {}

        if method == LEGACY_METHOD or method.startswith(LEGACY_PREFIX):
            return self._handle_legacy(method, record)

        try:
            key = NotificationMethod(method)
        except ValueError:
            logger.debug("Unhandled notification method=%s", method)
            return []
        return self._methods[key](record)

    def reset(self) -> None:
        """Forget every buffer and pending begin-metadata."""
        self.agent_message_buffers.clear()
        self.reasoning_buffers.clear()
        self.command_output_buffers.clear()
        self.command_meta.clear()
        self.file_change_meta.clear()

    @property
    def is_idle(self) -> bool:
        """True when no item or call is mid-stream."""
        return not (
            self.agent_message_buffers
            or self.reasoning_buffers
            or self.command_output_buffers
            or self.command_meta
            or self.file_change_meta
        )

    # ── Shared builders (both shapes end up here) ──────────────

    def _handle_legacy(self, method: str, params: dict[str, Any]) -> list[Event]:
        msg = as_record(params.get("msg"))
        if msg is None:
            logger.debug("Legacy notification without msg method=%s", method)
            return []
        msg_type = as_string(msg.get("type"))
        if msg_type is None:
            logger.debug("Legacy notification without msg.type method=%s", method)
            return []
        try:
            key = LegacyEventType(msg_type)
        except ValueError:
            logger.debug("Unhandled legacy msg type=%s method=%s", msg_type, method)
            return []
        if key in _INFORMATIONAL:
            return []
        return self._legacy[key](msg)

    @staticmethod
    def _thread_started(thread_id: str | None) -> list[Event]:
        if not thread_id:
            return []
        return [{"type": EventType.THREAD_STARTED.value, "thread_id": thread_id}]

    @staticmethod
    def _task_started(
        turn_id: str | None,
        context_window: int | float | None,
        collab_mode: str | None,
    ) -> list[Event]:
        return [_compact({
            "type": EventType.TASK_STARTED.value,
            "turn_id": turn_id,
            "context_window": context_window,
            "collab_mode": collab_mode,
        })]

    @staticmethod
    def _turn_event(event_type: EventType, turn_id: str | None) -> list[Event]:
        return [_compact({"type": event_type.value, "turn_id": turn_id})]

    @staticmethod
    def _task_failed(
        turn_id: str | None,
        error: str | None,
        error_info: Any = None,
    ) -> list[Event]:
        return [_compact({
            "type": EventType.TASK_FAILED.value,
            "turn_id": turn_id,
            "error": unwrap_error_detail(error) if error else None,
            "error_info": error_info,
        })]

    @staticmethod
    def _append(buffers: dict[str, str], key: str, delta: str) -> None:
        buffers[key] = buffers.get(key, "") + delta

    def _command_begin(
        self,
        call_id: str,
        command: str | None,
        cwd: str | None,
        auto_approved: bool | None,
    ) -> list[Event]:
        meta = _compact({
            "command": command,
            "cwd": cwd,
            "auto_approved": auto_approved,
        })
        self.command_meta[call_id] = meta
        return [{"type": EventType.EXEC_COMMAND_BEGIN.value, "call_id": call_id, **meta}]

    def _command_end(self, call_id: str, record: dict[str, Any], *output_keys: str) -> list[Event]:
        meta = self.command_meta.pop(call_id, {})
        buffered = self.command_output_buffers.pop(call_id, None)
        output = get_string(record, *output_keys, within=()) or buffered
        exit_code = get_number(record, "exit_code", "exitCode", "exitcode", within=())
        return [_compact({
            "type": EventType.EXEC_COMMAND_END.value,
            "call_id": call_id,
            **meta,
            "output": output,
            "stderr": get_string(record, "stderr", within=()),
            "error": get_string(record, "error", within=()),
            "exit_code": exit_code,
            "status": get_string(record, "status", within=()),
        })]

    def _patch_begin(
        self,
        call_id: str,
        changes: dict[str, Any] | None,
        auto_approved: bool | None,
    ) -> list[Event]:
        meta = _compact({"changes": changes, "auto_approved": auto_approved})
        self.file_change_meta[call_id] = meta
        return [{"type": EventType.PATCH_APPLY_BEGIN.value, "call_id": call_id, **meta}]

    def _patch_end(self, call_id: str, record: dict[str, Any]) -> list[Event]:
        meta = self.file_change_meta.pop(call_id, {})
        event = _compact({
            "type": EventType.PATCH_APPLY_END.value,
            "call_id": call_id,
            **meta,
            "stdout": get_string(record, "stdout", "output", within=()),
            "stderr": get_string(record, "stderr", within=()),
        })
        event["success"] = _patch_success(record)
        return [event]

    def _agent_message_done(self, key: str, text: str | None) -> list[Event]:
        buffered = self.agent_message_buffers.pop(key, None)
        text = text or buffered
        if not text:
            return []
        return [{"type": EventType.AGENT_MESSAGE.value, "text": text}]

    def _reasoning_done(self, key: str, text: str | None) -> list[Event]:
        buffered = self.reasoning_buffers.pop(key, None)
        if not (text or buffered) and key != _REASONING_KEY:
            # Deltas that carried no item id were parked under the shared key
            buffered = self.reasoning_buffers.pop(_REASONING_KEY, None)
        text = text or buffered
        if not text:
            return []
        return [{"type": EventType.AGENT_REASONING.value, "text": text}]

    def _on_section_break(self, _record: dict[str, Any]) -> list[Event]:
        return [{"type": EventType.AGENT_REASONING_SECTION_BREAK.value}]

    def _on_diff(self, record: dict[str, Any]) -> list[Event]:
        diff = get_string(record, "unified_diff", "unifiedDiff", "diff", within=())
        if not diff:
            return []
        return [{"type": EventType.TURN_DIFF.value, "unified_diff": diff}]

    def _on_approval_request(self, record: dict[str, Any]) -> list[Event]:
        call_id = get_string(
            record, "call_id", "callId", "itemId", "item_id", within=(),
        )
        if not call_id:
            logger.debug("Approval request without call id: %s", sorted(record))
            return []
        return [{
            **record,
            "type": EventType.EXEC_APPROVAL_REQUEST.value,
            "call_id": call_id,
        }]

    # ── Structured shape ───────────────────────────────────────

    def _on_thread_started(self, params: dict[str, Any]) -> list[Event]:
        thread = unwrap(params, "thread")
        return self._thread_started(
            get_string(thread, "threadId", "thread_id", "id", within=()),
        )

    def _on_turn_started(self, params: dict[str, Any]) -> list[Event]:
        return self._task_started(
            get_string(params, "turnId", "turn_id", "id", within=("turn",)),
            get_number(
                params, "model_context_window", "modelContextWindow",
                within=("turn",),
            ),
            get_string(
                params, "collaboration_mode_kind", "collaborationModeKind",
                within=("turn",),
            ),
        )

    def _on_turn_completed(self, params: dict[str, Any]) -> list[Event]:
        turn_id = get_string(params, "turnId", "turn_id", "id", within=("turn",))
        status = (get_string(params, "status", within=("turn",)) or "").lower()

        if status in _ABORTED_STATUSES:
            return self._turn_event(EventType.TURN_ABORTED, turn_id)

        if status in _FAILED_STATUSES:
            error_record = get_record(params, "error", within=("turn",))
            message = (
                get_string(params, "error", "message", "reason", within=("turn",))
                or get_string(error_record, "message", within=())
            )
            return self._task_failed(turn_id, message, _error_info(error_record))

        return self._turn_event(EventType.TASK_COMPLETE, turn_id)

    def _on_token_usage(self, params: dict[str, Any]) -> list[Event]:
        info = as_record(first_present(params, "tokenUsage", "token_usage")) or params
        return [{"type": EventType.TOKEN_COUNT.value, "info": info}]

    def _on_error(self, params: dict[str, Any]) -> list[Event]:
        if get_bool(params, "will_retry", "willRetry", within=("error",)):
            # Retry already in flight on the backend side; best effort only.
            logger.debug("Suppressing retryable error: %s", params.get("message"))
            return []
        error_record = as_record(params.get("error"))
        message = (
            as_string(params.get("message"))
            or as_string(params.get("error"))
            or get_string(error_record, "message", within=())
        )
        if not message:
            return []
        return self._task_failed(
            get_string(params, "turnId", "turn_id", within=()),
            message,
            _error_info(error_record) or _error_info(params),
        )

    def _on_agent_message_delta(self, params: dict[str, Any]) -> list[Event]:
        item_id = _extract_item_id(params)
        delta = get_string(params, "delta", "text", "message", within=())
        if item_id and delta:
            self._append(self.agent_message_buffers, item_id, delta)
        return []

    def _on_reasoning_delta(self, params: dict[str, Any]) -> list[Event]:
        item_id = _extract_item_id(params) or _REASONING_KEY
        delta = get_string(params, "delta", "text", "message", within=())
        if not delta:
            return []
        self._append(self.reasoning_buffers, item_id, delta)
        return [{"type": EventType.AGENT_REASONING_DELTA.value, "delta": delta}]

    def _on_command_output_delta(self, params: dict[str, Any]) -> list[Event]:
        item_id = _extract_item_id(params)
        delta = get_string(params, "delta", "text", "output", "stdout", within=())
        if item_id and delta:
            self._append(self.command_output_buffers, item_id, delta)
        return []

    def _on_item_started(self, params: dict[str, Any]) -> list[Event]:
        return self._on_item(params, started=True)

    def _on_item_completed(self, params: dict[str, Any]) -> list[Event]:
        return self._on_item(params, started=False)

    def _on_item(self, params: dict[str, Any], *, started: bool) -> list[Event]:
        item = unwrap(params, "item")
        item_type = normalize_item_type(first_present(item, "type", "itemType", "kind"))
        item_id = _extract_item_id(params)
        if not item_type or not item_id:
            logger.debug("Item notification without type or id: %s", sorted(item))
            return []
        handler = self._item_kinds.get(item_type)
        if handler is None:
            logger.debug("Unhandled item type=%s id=%s", item_type, item_id)
            return []
        return handler(started, item_id, item)

    def _item_agent_message(self, started: bool, item_id: str, item: dict[str, Any]) -> list[Event]:
        if started:
            return []
        text = get_string(item, "text", "message", "content", within=())
        return self._agent_message_done(item_id, text)

    def _item_reasoning(self, started: bool, item_id: str, item: dict[str, Any]) -> list[Event]:
        if started:
            return []
        text = get_string(item, "text", "message", "content", within=())
        return self._reasoning_done(item_id, text)

    def _item_command(self, started: bool, item_id: str, item: dict[str, Any]) -> list[Event]:
        if started:
            return self._command_begin(
                item_id,
                extract_command(first_present(item, "command", "cmd", "args")),
                get_string(item, "cwd", "workingDirectory", "working_directory", within=()),
                get_bool(item, "autoApproved", "auto_approved", within=()),
            )
        return self._command_end(
            item_id, item, "output", "result", "stdout", "aggregatedOutput",
        )

    def _item_file_change(self, started: bool, item_id: str, item: dict[str, Any]) -> list[Event]:
        if started:
            return self._patch_begin(
                item_id,
                extract_changes(first_present(item, "changes", "change", "diff")),
                get_bool(item, "autoApproved", "auto_approved", within=()),
            )
        return self._patch_end(item_id, item)

    # ── Legacy shape ───────────────────────────────────────────

    def _legacy_thread_started(self, msg: dict[str, Any]) -> list[Event]:
        return self._thread_started(
            get_string(msg, "thread_id", "threadId", within=()),
        )

    def _legacy_task_started(self, msg: dict[str, Any]) -> list[Event]:
        return self._task_started(
            get_string(msg, "turn_id", "turnId", within=()),
            get_number(msg, "model_context_window", "modelContextWindow", within=()),
            get_string(msg, "collaboration_mode_kind", "collaborationModeKind", within=()),
        )

    def _legacy_task_complete(self, msg: dict[str, Any]) -> list[Event]:
        return self._turn_event(
            EventType.TASK_COMPLETE, get_string(msg, "turn_id", "turnId", within=()),
        )

    def _legacy_turn_aborted(self, msg: dict[str, Any]) -> list[Event]:
        return self._turn_event(
            EventType.TURN_ABORTED, get_string(msg, "turn_id", "turnId", within=()),
        )

    def _legacy_task_failed(self, msg: dict[str, Any]) -> list[Event]:
        return self._task_failed(
            get_string(msg, "turn_id", "turnId", within=()),
            get_string(msg, "error", "message", within=()),
            _error_info(msg),
        )

    def _legacy_error(self, msg: dict[str, Any]) -> list[Event]:
        if get_bool(msg, "will_retry", "willRetry", within=()):
            logger.debug("Suppressing retryable legacy error: %s", msg.get("message"))
            return []
        message = get_string(msg, "message", within=())
        if not message:
            return []
        return self._task_failed(
            get_string(msg, "turn_id", "turnId", within=()),
            message,
            _error_info(msg),
        )

    def _legacy_stream_error(self, msg: dict[str, Any]) -> list[Event]:
        logger.debug("Backend stream error, retrying: %s", msg.get("message"))
        return []

    def _legacy_agent_message(self, msg: dict[str, Any]) -> list[Event]:
        key = get_string(msg, "item_id", "itemId", within=()) or _AGENT_MESSAGE_KEY
        return self._agent_message_done(key, get_string(msg, "message", "text", within=()))

    def _legacy_agent_message_delta(self, msg: dict[str, Any]) -> list[Event]:
        key = get_string(msg, "item_id", "itemId", within=()) or _AGENT_MESSAGE_KEY
        delta = get_string(msg, "delta", "text", within=())
        if delta:
            self._append(self.agent_message_buffers, key, delta)
        return []

    def _legacy_reasoning(self, msg: dict[str, Any]) -> list[Event]:
        key = get_string(msg, "item_id", "itemId", within=()) or _REASONING_KEY
        return self._reasoning_done(key, get_string(msg, "text", within=()))

    def _legacy_reasoning_delta(self, msg: dict[str, Any]) -> list[Event]:
        key = get_string(msg, "item_id", "itemId", within=()) or _REASONING_KEY
        delta = get_string(msg, "delta", within=())
        if not delta:
            return []
        self._append(self.reasoning_buffers, key, delta)
        return [{"type": EventType.AGENT_REASONING_DELTA.value, "delta": delta}]

    def _legacy_command_begin(self, msg: dict[str, Any]) -> list[Event]:
        call_id = get_string(msg, "call_id", "callId", within=())
        if not call_id:
            return []
        return self._command_begin(
            call_id,
            extract_command(first_present(msg, "command", "cmd")),
            get_string(msg, "cwd", within=()),
            get_bool(msg, "auto_approved", "autoApproved", within=()),
        )

    def _legacy_command_output_delta(self, msg: dict[str, Any]) -> list[Event]:
        call_id = get_string(msg, "call_id", "callId", within=())
        delta = get_string(msg, "delta", "chunk", "text", "output", within=())
        if call_id and delta:
            self._append(self.command_output_buffers, call_id, delta)
        return []

    def _legacy_command_end(self, msg: dict[str, Any]) -> list[Event]:
        call_id = get_string(msg, "call_id", "callId", within=())
        if not call_id:
            return []
        return self._command_end(call_id, msg, "output", "stdout", "aggregated_output")

    def _legacy_patch_begin(self, msg: dict[str, Any]) -> list[Event]:
        call_id = get_string(msg, "call_id", "callId", within=())
        if not call_id:
            return []
        return self._patch_begin(
            call_id,
            extract_changes(msg.get("changes")),
            get_bool(msg, "auto_approved", "autoApproved", within=()),
        )

    def _legacy_patch_end(self, msg: dict[str, Any]) -> list[Event]:
        call_id = get_string(msg, "call_id", "callId", within=())
        if not call_id:
            return []
        return self._patch_end(call_id, msg)

    def _legacy_token_count(self, msg: dict[str, Any]) -> list[Event]:
        info = as_record(msg.get("info"))
        if info is None:
            info = {k: v for k, v in msg.items() if k != "type"}
        return [{"type": EventType.TOKEN_COUNT.value, "info": info}]
