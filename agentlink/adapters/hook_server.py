"""Local HTTP server receiving approval hooks from agent backends.

Each session registers a handler under an opaque key and hands the
resulting URL to its backend (``AGENTLINK_HOOK_URL``). The backend
POSTs JSON requests to that URL and gets the handler's JSON reply.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

logger = logging.getLogger(__name__)

HookHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class HookServer:
    """aiohttp app routing ``POST /hooks/{key}`` to registered handlers."""

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self._host = host
        self._port = port
        self._handlers: dict[str, HookHandler] = {}
        self._runner: web.AppRunner | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.router.add_post("/hooks/{key}", self._handle_hook)
        self._app.router.add_get("/health", self._handle_health)

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    def url_for(self, key: str) -> str:
        return f"http://{self._host}:{self._port}/hooks/{key}"

    def register(self, key: str, handler: HookHandler) -> str:
        """Route requests for *key* to *handler*; returns the hook URL."""
        self._handlers[key] = handler
        logger.debug("Hook registered key=%s", key[:8])
        return self.url_for(key)

    def deregister(self, key: str) -> None:
        if self._handlers.pop(key, None) is not None:
            logger.debug("Hook deregistered key=%s", key[:8])

    # ── Lifecycle ──

    async def start(self) -> int:
        """Start listening and return the bound port."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            await runner.cleanup()
            raise RuntimeError("Hook server started but no listening socket was reported.")
        self._port = actual_port
        self._runner = runner
        logger.info("Hook server listening on %s:%d", self._host, actual_port)
        return actual_port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Hook server stopped")

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        try:
            response = await handler(request)
        except Exception:
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path, req_id,
                (time.monotonic() - start) * 1000,
            )
            raise
        logger.debug(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path, req_id,
            getattr(response, "status", "?"), (time.monotonic() - start) * 1000,
        )
        return response

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "hooks": len(self._handlers)})

    async def _handle_hook(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        handler = self._handlers.get(key)
        if handler is None:
            return web.json_response({"error": "unknown hook"}, status=404)
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "body must be a JSON object"}, status=400)

        try:
            reply = await handler(body)
        except Exception:
            logger.exception("Hook handler failed key=%s", key[:8])
            return web.json_response({"error": "hook handler failed"}, status=500)
        return web.json_response(reply if isinstance(reply, dict) else {"result": reply})
