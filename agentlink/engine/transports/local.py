"""Local subprocess transport.

Runs the agent backend as a child process (argv exec, never a shell)
and speaks newline-delimited JSON over its stdio: notifications are
read from stdout, user payloads are written to stdin.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..config import BackendConfig
from ..errors import TransportStartError
from .base import Transport, TransportContext, TransportHandle

logger = logging.getLogger(__name__)

# Env vars handed to the backend so its hooks can call back in.
HOOK_URL_ENV = "AGENTLINK_HOOK_URL"
SESSION_ID_ENV = "AGENTLINK_SESSION_ID"


@dataclass
class LocalHandle(TransportHandle):
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    stopping: bool = False
    tasks: list[asyncio.Task] = field(default_factory=list, repr=False)


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    ``StreamReader.readline()`` raises once a line outgrows the reader
    limit (64 KiB by default); a single frame carrying a large command
    output easily does. Buffered bytes are drained and accumulated until
    the newline or EOF.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunks.append(await stream.read(exc.consumed))
        except asyncio.IncompleteReadError as exc:
            # EOF before newline
            chunks.append(exc.partial)
            return b"".join(chunks)


def parse_frame(text: str) -> tuple[str, Any] | None:
    """Return ``(method, params)`` for a notification line, else None."""
    try:
        frame = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON backend line: %s", text[:200])
        return None
    if not isinstance(frame, dict):
        logger.debug("Skipping non-object backend frame: %s", text[:200])
        return None
    method = frame.get("method")
    if isinstance(method, str) and method:
        return method, frame.get("params")
    if "id" in frame:
        logger.debug("Skipping JSON-RPC response id=%s", frame.get("id"))
    else:
        logger.debug("Skipping backend frame without method: %s", sorted(frame))
    return None


class LocalTransport(Transport):
    """Agent backend running as a local subprocess."""

    name = "local"

    def __init__(
        self,
        backend: BackendConfig,
        cwd: str | None = None,
        stop_timeout: float = 5.0,
    ) -> None:
        self._backend = backend
        self._cwd = cwd
        self._stop_timeout = stop_timeout

    def build_argv(self, session_id: str, resume: bool) -> list[str]:
        argv = list(self._backend.command)
        if resume:
            argv.extend(
                arg.replace("{session_id}", session_id)
                for arg in self._backend.resume_args
            )
        return argv

    def encode(self, payload: Any) -> bytes:
        """Encode one payload for the backend's stdin."""
        if self._backend.wire_format == "text":
            if isinstance(payload, str):
                text = payload
            elif isinstance(payload, dict) and isinstance(payload.get("text"), str):
                text = payload["text"]
            else:
                text = json.dumps(payload)
        else:
            text = json.dumps(payload)
        return (text + "\n").encode("utf-8")

    async def start(self, context: TransportContext) -> LocalHandle:
        session_id = context.session_id or str(uuid.uuid4())
        argv = self.build_argv(session_id, context.resume)
        if not argv:
            raise TransportStartError(
                self.name, f"no command configured for backend {self._backend.name}",
            )

        env = {**os.environ, **self._backend.env, SESSION_ID_ENV: session_id}
        if context.hook_url:
            env[HOOK_URL_ENV] = context.hook_url
        cwd = context.cwd or self._cwd

        logger.info(
            "Starting local backend %s session=%s resume=%s cmd=%s",
            self._backend.name, session_id[:8], context.resume, argv[0],
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=cwd,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            raise TransportStartError(self.name, f"{argv[0]}: {exc}") from exc

        handle = LocalHandle(
            transport=self.name,
            session_id=session_id,
            # A resumed backend replays its history from the start.
            replay_history=context.resume,
            process=proc,
        )
        handle.tasks = [
            asyncio.create_task(self._read_stdout(handle, context)),
            asyncio.create_task(self._read_stderr(handle)),
        ]
        return handle

    async def send(self, handle: TransportHandle, payload: Any) -> bool:
        proc = getattr(handle, "process", None)
        if (
            handle.closed
            or proc is None
            or proc.returncode is not None
            or proc.stdin is None
        ):
            return False
        try:
            proc.stdin.write(self.encode(payload))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning(
                "Local backend %s stdin closed: %s", handle.session_id[:8], exc,
            )
            return False
        return True

    async def stop(self, handle: TransportHandle) -> None:
        if not isinstance(handle, LocalHandle):
            raise TypeError(f"LocalTransport cannot stop {type(handle).__name__}")
        handle.reading = False
        if handle.stopping:
            return
        handle.stopping = True

        proc = handle.process
        if proc is not None and proc.returncode is None:
            if proc.stdin is not None:
                proc.stdin.close()
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Local backend %s ignored terminate; killing",
                    handle.session_id[:8],
                )
                proc.kill()
                await proc.wait()

        # stop() may run inside on_closed, i.e. on the reader task itself
        current = asyncio.current_task()
        pending = [t for t in handle.tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        handle.closed = True
        logger.info("Local backend %s stopped", handle.session_id[:8])

    async def _read_stdout(self, handle: LocalHandle, context: TransportContext) -> None:
        proc = handle.process
        assert proc is not None and proc.stdout is not None
        while True:
            line = await read_line_unbounded(proc.stdout)
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            frame = parse_frame(text)
            if frame is None:
                continue
            method, params = frame
            try:
                await context.on_notification(handle, method, params)
            except Exception:
                logger.exception(
                    "Notification handler failed for %s method=%s",
                    handle.session_id[:8], method,
                )

        returncode = await proc.wait()
        if handle.stopping:
            return
        handle.closed = True
        reason = f"{self._backend.name} exited with code {returncode}"
        logger.warning("Local backend %s: %s", handle.session_id[:8], reason)
        await context.on_closed(handle, reason)

    async def _read_stderr(self, handle: LocalHandle) -> None:
        proc = handle.process
        assert proc is not None
        if proc.stderr is None:
            return
        while True:
            line = await read_line_unbounded(proc.stderr)
            if not line:
                return
            logger.debug(
                "[%s stderr] %s",
                handle.session_id[:8],
                line.decode("utf-8", errors="replace").rstrip(),
            )
