"""Session engine: protocol normalization and transport orchestration.

Usage:
    from agentlink.engine import SessionOrchestrator, SessionConfig, SessionMode
"""

from .config import BackendConfig, SessionConfig, fire_callback, fire_event
from .errors import (
    AgentLinkError,
    HubError,
    SessionStateError,
    TransportNotConfiguredError,
    TransportStartError,
)
from .message_queue import MessageQueue
from .models import EventType, SessionMode, SessionState
from .normalizer import LegacyEventType, NotificationMethod, ProtocolNormalizer
from .orchestrator import SessionOrchestrator

__all__ = [
    "AgentLinkError",
    "BackendConfig",
    "EventType",
    "HubError",
    "LegacyEventType",
    "MessageQueue",
    "NotificationMethod",
    "ProtocolNormalizer",
    "SessionConfig",
    "SessionMode",
    "SessionOrchestrator",
    "SessionState",
    "SessionStateError",
    "TransportNotConfiguredError",
    "TransportStartError",
    "fire_callback",
    "fire_event",
]
