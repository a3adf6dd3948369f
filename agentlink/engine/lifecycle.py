"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──┬──> LOCAL ──┐
           └──> REMOTE ─┤
                        ├──> SWITCHING ──> LOCAL | REMOTE | FAILED
                        │
                        └──> STOPPED ──> LOCAL | REMOTE  (resume)

    FAILED ──> SWITCHING | LOCAL | REMOTE  (retry / resume)

    Any state ──> CLOSED  (session ended by the user)
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {
        SessionState.LOCAL,
        SessionState.REMOTE,
        SessionState.CLOSED,
    },
    SessionState.LOCAL: {
        SessionState.SWITCHING,
        SessionState.STOPPED,
        SessionState.CLOSED,
    },
    SessionState.REMOTE: {
        SessionState.SWITCHING,
        SessionState.STOPPED,
        SessionState.CLOSED,
    },
    SessionState.SWITCHING: {
        SessionState.LOCAL,
        SessionState.REMOTE,
        SessionState.FAILED,
        SessionState.CLOSED,
    },
    SessionState.STOPPED: {
        SessionState.LOCAL,
        SessionState.REMOTE,
        SessionState.CLOSED,
    },
    SessionState.FAILED: {
        SessionState.SWITCHING,
        SessionState.LOCAL,
        SessionState.REMOTE,
        SessionState.CLOSED,
    },
    SessionState.CLOSED: set(),
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid session transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
