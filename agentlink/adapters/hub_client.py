"""HTTP client for a remote session hub.

Routes (relative to the hub base URL):
    POST /sessions                    {"cwd"} -> {"session_id"}
    POST /sessions/{id}/attach        -> {"session_id", "replay_history"}
    POST /sessions/{id}/messages      payload -> {"accepted": bool}
    POST /sessions/{id}/fork          -> {"session_id"}
    GET  /sessions/{id}/events        Server-Sent Events stream; each
                                      ``data:`` line is JSON
                                      {"method": ..., "params": ...}
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from agentlink.engine.errors import HubError
from agentlink.engine.transports.remote import AttachResult

logger = logging.getLogger(__name__)


def parse_sse_data(data: str) -> tuple[str, dict[str, Any]] | None:
    """Decode one SSE ``data`` payload into ``(method, params)``."""
    try:
        frame = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON SSE data: %s", data[:200])
        return None
    if not isinstance(frame, dict):
        return None
    method = frame.get("method")
    if not isinstance(method, str) or not method:
        logger.debug("Skipping SSE frame without method: %s", sorted(frame))
        return None
    params = frame.get("params")
    return method, params if isinstance(params, dict) else {}


class HttpHubClient:
    """HubClient over aiohttp. One ClientSession per client."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _post(self, path: str, body: Any = None) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        async with self._http().post(
            url, json=body if body is not None else {},
            headers=self._headers(), timeout=self._timeout,
        ) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise HubError(resp.status, text[:500] or resp.reason or "")
            try:
                data = await resp.json(content_type=None)
            except (ValueError, aiohttp.ContentTypeError) as exc:
                raise HubError(resp.status, f"reply is not JSON ({exc})") from exc
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _session_id(data: dict[str, Any], fallback: str | None = None) -> str:
        session_id = data.get("session_id") or data.get("sessionId") or fallback
        if not isinstance(session_id, str) or not session_id:
            raise HubError(200, "hub response carried no session_id")
        return session_id

    async def create_session(self, cwd: str) -> str:
        data = await self._post("/sessions", {"cwd": cwd})
        session_id = self._session_id(data)
        logger.info("Hub created session %s", session_id[:8])
        return session_id

    async def attach(self, session_id: str) -> AttachResult:
        data = await self._post(f"/sessions/{session_id}/attach")
        return AttachResult(
            session_id=self._session_id(data, fallback=session_id),
            replay_history=bool(data.get("replay_history", False)),
        )

    async def send(self, session_id: str, payload: Any) -> bool:
        data = await self._post(f"/sessions/{session_id}/messages", payload)
        return bool(data.get("accepted", True))

    async def fork(self, session_id: str) -> str:
        data = await self._post(f"/sessions/{session_id}/fork")
        return self._session_id(data)

    async def subscribe(self, session_id: str) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        """Yield ``(method, params)`` from the session's event stream.

        Returns when the hub closes the stream; connection errors
        propagate to the caller, which owns reconnects.
        """
        url = f"{self._base_url}/sessions/{session_id}/events"
        headers = {**self._headers(), "Accept": "text/event-stream"}
        # No total timeout on a long-lived stream; keepalives bound the read gap.
        timeout = aiohttp.ClientTimeout(
            total=None, sock_read=self._timeout.total,
        )
        async with self._http().get(url, headers=headers, timeout=timeout) as resp:
            if resp.status >= 400:
                raise HubError(resp.status, (await resp.text())[:500])
            data_lines: list[str] = []
            while True:
                raw = await resp.content.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    # Blank line terminates one SSE event
                    if data_lines:
                        parsed = parse_sse_data("\n".join(data_lines))
                        data_lines = []
                        if parsed is not None:
                            yield parsed
                    continue
                if line.startswith(":"):
                    continue
                field_name, _, value = line.partition(":")
                if field_name == "data":
                    data_lines.append(value[1:] if value.startswith(" ") else value)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
