"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTLINK_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .models import SessionMode

logger = logging.getLogger(__name__)


# Async callback receiving canonical events.
# Signature: async def callback(event: dict[str, Any]) -> None
# Events are flat dicts like {"type": "agent_message", "text": "..."}
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Async callback for approval/tool-call requests delivered by the hook server.
# Signature: async def callback(session_id, request) -> dict
# Returns the JSON reply for the backend, e.g. {"decision": "approved"}
ApprovalCallback = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]

# Async callback fired when a transport is attached.
# Signature: async def callback(mode: SessionMode) -> None
ModeChangeCallback = Callable[[SessionMode], Awaitable[None]]

# Async callback fired when the session id is known or changes
# (start, resume, switch, backend thread id adoption).
# Signature: async def callback(session_id: str) -> None
SessionReadyCallback = Callable[[str], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # A broken subscriber must never break the session
        logger.exception(
            "Event callback failed for %s", event.get("type", "<unknown>"),
        )


async def fire_callback(
    callback: Callable[..., Awaitable[None]] | None,
    *args: Any,
) -> None:
    """Fire a session callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(*args)
    except Exception:
        logger.exception(
            "Session callback %s failed",
            getattr(callback, "__qualname__", repr(callback)),
        )


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in {"1", "true", "yes"}


@dataclass
class BackendConfig:
    """How to launch one agent backend as a local subprocess."""
    name: str
    command: list[str] = field(default_factory=list)
    # Extra argv appended when resuming; "{session_id}" is substituted.
    resume_args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    # "jsonl": json.dumps(payload) + "\n"; "text": raw strings + "\n"
    wire_format: str = "jsonl"


@dataclass
class SessionConfig:
    """Session engine configuration."""

    default_mode: str = "local"
    default_cwd: str = "."
    default_backend: str = "codex"

    # Remote hub
    hub_url: str | None = None
    hub_token: str | None = None
    hub_timeout_seconds: float = 30.0
    # Subscription reconnects before the remote transport gives up.
    reconnect_attempts: int = 10

    # Hook server (approval callbacks from local backends)
    hook_enabled: bool = False
    hook_host: str = "127.0.0.1"
    hook_port: int = 0

    # Seconds the queue pump waits before retrying a refused delivery.
    queue_retry_seconds: float = 1.0
    # Grace period before a local backend is killed on stop.
    stop_timeout_seconds: float = 5.0

    # Logging
    log_level: str = "INFO"

    backends: dict[str, BackendConfig] = field(default_factory=dict)

    # Optional async callbacks; never serialized.
    event_callback: EventCallback | None = field(default=None, repr=False)
    approval_callback: ApprovalCallback | None = field(
        default=None, repr=False,
    )

    def backend(self, name: str | None = None) -> BackendConfig:
        """Return the named backend, falling back to a bare command."""
        key = name or self.default_backend
        configured = self.backends.get(key)
        if configured is not None:
            return configured
        logger.debug("No backend config for %s, using bare command", key)
        return BackendConfig(name=key, command=[key])

    @classmethod
    def from_env(cls) -> SessionConfig:
        """Load configuration from AGENTLINK_* environment variables."""
        link_vars = sorted(k for k in os.environ if k.startswith("AGENTLINK_"))
        if link_vars:
            # Names only; values may hold tokens
            logger.info(
                "SessionConfig.from_env: AGENTLINK_* overrides: %s",
                ", ".join(link_vars),
            )
        else:
            logger.debug("SessionConfig.from_env: no AGENTLINK_* vars set, using defaults")

        config = cls(
            default_mode=os.getenv("AGENTLINK_MODE", cls.default_mode),
            default_cwd=os.getenv("AGENTLINK_CWD", cls.default_cwd),
            default_backend=os.getenv(
                "AGENTLINK_BACKEND", cls.default_backend,
            ),
            hub_url=os.getenv("AGENTLINK_HUB_URL") or None,
            hub_token=os.getenv("AGENTLINK_HUB_TOKEN") or None,
            hub_timeout_seconds=float(os.getenv(
                "AGENTLINK_HUB_TIMEOUT", str(cls.hub_timeout_seconds),
            )),
            reconnect_attempts=int(os.getenv(
                "AGENTLINK_RECONNECT_ATTEMPTS", str(cls.reconnect_attempts),
            )),
            hook_enabled=_env_flag("AGENTLINK_HOOK_ENABLED"),
            hook_host=os.getenv("AGENTLINK_HOOK_HOST", cls.hook_host),
            hook_port=int(os.getenv(
                "AGENTLINK_HOOK_PORT", str(cls.hook_port),
            )),
            queue_retry_seconds=float(os.getenv(
                "AGENTLINK_QUEUE_RETRY", str(cls.queue_retry_seconds),
            )),
            stop_timeout_seconds=float(os.getenv(
                "AGENTLINK_STOP_TIMEOUT", str(cls.stop_timeout_seconds),
            )),
            log_level=os.getenv("AGENTLINK_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "SessionConfig.from_env: mode=%s backend=%s cwd=%s hub=%s",
            config.default_mode, config.default_backend,
            config.default_cwd, config.hub_url or "<none>",
        )
        return config
