"""Exception hierarchy for the session engine.

These are raised between engine components only. The orchestrator
turns them into canonical events (task_failed / turn_aborted) before
anything reaches a frontend.
"""
from __future__ import annotations


class AgentLinkError(Exception):
    """Base exception for all agentlink errors."""


class TransportStartError(AgentLinkError):
    """A transport could not be launched or attached."""
    def __init__(self, transport: str, reason: str):
        self.transport = transport
        self.reason = reason
        super().__init__(f"Failed to start {transport} transport: {reason}")


class TransportNotConfiguredError(AgentLinkError):
    """No transport is registered for the requested session mode."""
    def __init__(self, mode: str, available: list[str]):
        self.mode = mode
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"No transport configured for mode '{mode}'. "
            f"Available modes: {avail_str}"
        )


class SessionStateError(AgentLinkError):
    """Operation is not valid in the session's current state."""
    def __init__(self, session_id: str | None, state: str, operation: str):
        self.session_id = session_id
        self.state = state
        self.operation = operation
        super().__init__(
            f"Cannot {operation} session {session_id or '<new>'} "
            f"while it is {state}"
        )


class HubError(AgentLinkError):
    """The remote hub rejected a request."""
    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Hub request failed ({status}): {message}")
