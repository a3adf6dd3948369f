"""CLI entry point: run one agent session on the terminal.

Usage:
    agentlink                          # default backend, local mode
    agentlink --mode remote --resume 3f2a...
    agentlink --config agentlink.yaml --backend opencode -v

Lines typed on stdin are sent to the agent. Commands:
    /local  /remote   move the session to the other transport
    /abort            stop the running turn (session stays resumable)
    /fork             branch into a new session and continue there
    /quit             close the session and exit
Canonical events are printed to stdout as JSON lines.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from ..adapters.event_bus import EventBus
from ..adapters.events import event_to_dict
from ..adapters.hook_server import HookServer
from ..adapters.hub_client import HttpHubClient
from .config import SessionConfig
from .models import SessionMode, SessionState
from .orchestrator import SessionOrchestrator
from .transports import LocalTransport, RemoteTransport, Transport
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="agentlink",
        description="Run a coding-agent session locally or through a hub",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in SessionMode],
        default=None,
        help="Where the agent runs (default: from config)",
    )
    parser.add_argument(
        "--backend",
        default=None,
        help="Backend name from the config's backends section",
    )
    parser.add_argument(
        "--resume",
        default=None,
        metavar="SESSION_ID",
        help="Resume an existing session instead of starting a new one",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for the agent (default: current dir)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    config = SessionConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    if args.backend is not None:
        config.default_backend = args.backend
    if args.cwd is not None:
        config.default_cwd = args.cwd

    level = logging.DEBUG if args.verbose else getattr(
        logging, config.log_level.upper(), logging.INFO,
    )
    # Logs go to stderr; stdout carries the event stream
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    mode = SessionMode(args.mode or config.default_mode)
    try:
        exit_code = asyncio.run(run_session(config, mode, resume_id=args.resume))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        exit_code = 130
    sys.exit(exit_code)


def build_transports(
    config: SessionConfig,
) -> tuple[dict[SessionMode, Transport], HttpHubClient | None]:
    """Local transport always; remote only when a hub URL is configured."""
    transports: dict[SessionMode, Transport] = {
        SessionMode.LOCAL: LocalTransport(
            config.backend(),
            cwd=config.default_cwd,
            stop_timeout=config.stop_timeout_seconds,
        ),
    }
    hub: HttpHubClient | None = None
    if config.hub_url:
        hub = HttpHubClient(
            config.hub_url,
            token=config.hub_token,
            timeout=config.hub_timeout_seconds,
        )
        transports[SessionMode.REMOTE] = RemoteTransport(
            hub, reconnect_attempts=config.reconnect_attempts,
        )
    return transports, hub


async def apply_line(
    orchestrator: SessionOrchestrator, line: str,
) -> SessionOrchestrator | None:
    """Act on one stdin line. Returns the session to continue with, None to quit."""
    text = line.strip()
    if not text:
        return orchestrator

    if text == "/quit":
        return None
    if text in ("/local", "/remote"):
        target = SessionMode(text[1:])
        if orchestrator.state is SessionState.STOPPED and orchestrator.session_id:
            await orchestrator.resume(orchestrator.session_id, target)
        elif not await orchestrator.switch_mode(target):
            print(f"Could not switch to {target.value}", file=sys.stderr)
        return orchestrator
    if text == "/abort":
        await orchestrator.abort()
        return orchestrator
    if text == "/fork":
        child = await orchestrator.fork()
        await orchestrator.close()
        await child.start()
        print(
            f"Forked {child.forked_from or '-'} -> {child.session_id}",
            file=sys.stderr,
        )
        return child

    await orchestrator.send({"type": "user_message", "text": text})
    return orchestrator


async def _print_events(bus: EventBus) -> None:
    async for event in bus.consume():
        sys.stdout.write(json.dumps(event_to_dict(event)) + "\n")
        sys.stdout.flush()


async def _read_stdin() -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, sys.stdin.readline)


async def run_session(
    config: SessionConfig,
    mode: SessionMode,
    resume_id: str | None = None,
) -> int:
    bus = EventBus()
    transports, hub = build_transports(config)
    hook_server: HookServer | None = None
    if config.hook_enabled:
        hook_server = HookServer(config.hook_host, config.hook_port)
        await hook_server.start()

    orchestrator: SessionOrchestrator | None = SessionOrchestrator(
        transports,
        config,
        event_callback=bus.make_callback(),
        hook_server=hook_server,
    )
    printer = asyncio.create_task(_print_events(bus))
    exit_code = 0
    try:
        if resume_id:
            started = await orchestrator.resume(resume_id, mode)
        else:
            started = await orchestrator.start(mode)
        if not started:
            exit_code = 1
        else:
            logger.info("Session %s ready (%s)", orchestrator.session_id, mode.value)
            while orchestrator is not None:
                line = await _read_stdin()
                if not line:
                    break
                current = orchestrator
                orchestrator = await apply_line(current, line)
                if orchestrator is None:
                    await current.close()
    finally:
        if orchestrator is not None:
            await orchestrator.close()
        # Let the printer flush what is already queued
        while bus.pending() and not printer.done():
            await asyncio.sleep(0.05)
        bus.close()
        await asyncio.gather(printer, return_exceptions=True)
        if hook_server is not None:
            await hook_server.stop()
        if hub is not None:
            await hub.close()
    return exit_code


if __name__ == "__main__":
    main()
