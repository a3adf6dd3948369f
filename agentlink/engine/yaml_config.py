"""YAML configuration loader.

Loads a single YAML file on top of the AGENTLINK_* environment
defaults. Values in the file win over the environment.

Example YAML:
    session:
      default_mode: local
      default_backend: codex
      cwd: /path/to/project
      queue_retry_seconds: 1.0

    backends:
      codex:
        command: [codex, app-server]
        resume_args: [--resume, "{session_id}"]
        env:
          OPENAI_API_KEY: "${OPENAI_API_KEY}"
      opencode:
        command: [opencode, serve, --stdio]
        wire_format: jsonl

    hub:
      url: https://hub.example.com
      token_env: AGENTLINK_HUB_TOKEN
      timeout_seconds: 30
      reconnect_attempts: 10

    hooks:
      enabled: true
      host: 127.0.0.1
      port: 0
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

from .config import BackendConfig, SessionConfig

logger = logging.getLogger(__name__)

_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand_env(value: Any) -> Any:
    """Substitute ${VAR} references in strings, lists and dicts."""
    if isinstance(value, str):
        return _ENV_REF_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    return value


def _as_argv(value: Any) -> list[str]:
    """Accept a command as a list or a single whitespace-separated string."""
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        return [str(part) for part in value]
    return []


def _parse_backends(raw: dict[str, Any]) -> dict[str, BackendConfig]:
    backends: dict[str, BackendConfig] = {}
    for name, cfg in (raw or {}).items():
        if not isinstance(cfg, dict):
            logger.warning("Ignoring backend %s: expected a mapping", name)
            continue
        wire_format = str(cfg.get("wire_format", "jsonl"))
        if wire_format not in {"jsonl", "text"}:
            logger.warning(
                "Backend %s: unknown wire_format %r, using jsonl",
                name, wire_format,
            )
            wire_format = "jsonl"
        backends[name] = BackendConfig(
            name=name,
            command=_as_argv(cfg.get("command", name)),
            resume_args=_as_argv(cfg.get("resume_args", [])),
            env={str(k): str(v) for k, v in (cfg.get("env") or {}).items()},
            wire_format=wire_format,
        )
    return backends


def load_yaml_config(
    path: str | Path,
    base: SessionConfig | None = None,
) -> SessionConfig:
    """Load and parse a YAML config file into a SessionConfig.

    *base* supplies the defaults (typically ``SessionConfig.from_env()``);
    sections present in the file override it.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    raw = _expand_env(raw)
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) or "(empty)",
    )

    config = base if base is not None else SessionConfig()

    # ── Session ────────────────────────────────────────────────
    session_raw = raw.get("session", {}) or {}
    config.default_mode = str(session_raw.get("default_mode", config.default_mode))
    config.default_backend = str(
        session_raw.get("default_backend", config.default_backend)
    )
    config.default_cwd = str(session_raw.get("cwd", config.default_cwd))
    config.queue_retry_seconds = float(session_raw.get(
        "queue_retry_seconds", config.queue_retry_seconds,
    ))
    config.stop_timeout_seconds = float(session_raw.get(
        "stop_timeout_seconds", config.stop_timeout_seconds,
    ))
    config.log_level = str(session_raw.get("log_level", config.log_level))

    # ── Backends ───────────────────────────────────────────────
    config.backends.update(_parse_backends(raw.get("backends", {})))

    # ── Hub ────────────────────────────────────────────────────
    hub_raw = raw.get("hub", {}) or {}
    if hub_raw:
        config.hub_url = hub_raw.get("url", config.hub_url)
        token_env = hub_raw.get("token_env")
        if token_env:
            config.hub_token = os.environ.get(token_env) or config.hub_token
        config.hub_timeout_seconds = float(hub_raw.get(
            "timeout_seconds", config.hub_timeout_seconds,
        ))
        config.reconnect_attempts = int(hub_raw.get(
            "reconnect_attempts", config.reconnect_attempts,
        ))

    # ── Hooks ──────────────────────────────────────────────────
    hooks_raw = raw.get("hooks", {}) or {}
    if hooks_raw:
        config.hook_enabled = bool(hooks_raw.get("enabled", True))
        config.hook_host = str(hooks_raw.get("host", config.hook_host))
        config.hook_port = int(hooks_raw.get("port", config.hook_port))

    logger.info(
        "load_yaml_config: backends=%s hub=%s hooks=%s",
        ", ".join(sorted(config.backends)) or "(none)",
        config.hub_url or "<none>",
        "on" if config.hook_enabled else "off",
    )
    return config
