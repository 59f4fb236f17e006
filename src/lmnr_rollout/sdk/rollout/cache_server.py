"""
Local HTTP cache service for rollout sessions.

The server stores:
- Cached spans indexed by call identity, "index:path" (e.g., "0:root.llm_call")
- Path-to-count mapping (e.g., {"root.llm_call": 2})
- Overrides per path (e.g., {"root.llm_call": {"system": "..."}})
- Sessions opened with a handshake; lookups from unknown sessions are misses
"""

import asyncio
from typing import Any

from aiohttp import web

from lmnr_rollout.sdk.log import get_default_logger
from lmnr_rollout.sdk.types import CachedSpan, CallSiteIdentity, RolloutPathOverride

logger = get_default_logger(__name__)


def _identity_from(data: dict[str, Any]) -> CallSiteIdentity:
    call_identity = data.get("call_identity") or {}
    return CallSiteIdentity(
        path=str(call_identity.get("path", "")),
        index=int(call_identity.get("index", 0)),
    )


class CacheServer:
    """
    HTTP server answering cache lookups from rollout workers.

    The server runs on a dynamically assigned port unless one is given.
    """

    def __init__(self, port: int = 0, host: str = "127.0.0.1"):
        """
        Initialize the cache server.

        Args:
            port: Port to bind to. Use 0 for automatic assignment (default).
            host: Interface to bind to.
        """
        self.host = host
        self.port = port
        self.actual_port: int | None = None
        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

        self._lock = asyncio.Lock()
        self._sessions: dict[str, str | None] = {}
        self._cached_spans: dict[str, CachedSpan] = {}
        self._path_to_count: dict[str, int] = {}
        self._overrides: dict[str, RolloutPathOverride] = {}

        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/health", self._health_handler)
        self.app.router.add_post("/handshake", self._handshake_handler)
        self.app.router.add_post("/cached", self._get_cached_handler)
        self.app.router.add_post("/spans", self._record_span_handler)
        self.app.router.add_get("/path_to_count", self._get_path_to_count_handler)
        self.app.router.add_post("/path_to_count", self._update_path_to_count_handler)
        self.app.router.add_get("/overrides", self._get_overrides_handler)
        self.app.router.add_post("/overrides", self._update_overrides_handler)

    async def start(self) -> int:
        """
        Start the cache server.

        Returns:
            int: The actual port the server is listening on
        """
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        # Get the actual port (important when port=0)
        if self.site._server and self.site._server.sockets:
            self.actual_port = self.site._server.sockets[0].getsockname()[1]
        else:
            self.actual_port = self.port

        logger.debug(f"Cache server started on {self.get_url()}")
        return self.actual_port

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        logger.debug("Cache server stopped")

    def get_url(self) -> str:
        if self.actual_port is None:
            raise RuntimeError("Server not started yet")
        return f"http://{self.host}:{self.actual_port}"

    def set_overrides(self, overrides: dict[str, RolloutPathOverride]) -> None:
        self._overrides = dict(overrides)

    def set_cached_span(self, identity: CallSiteIdentity, span: CachedSpan) -> None:
        """Seed a recorded span directly, e.g. from a previous run."""
        self._cached_spans[identity.key] = span
        self._path_to_count[identity.path] = max(
            self._path_to_count.get(identity.path, 0), identity.index + 1
        )

    # ========================================================================
    # HTTP Handlers
    # ========================================================================

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def _handshake_handler(self, request: web.Request) -> web.Response:
        """
        Open a session.

        Request body: {"session_id": "...", "project_id": "..." | null}
        """
        try:
            data = await request.json()
            session_id = data["session_id"]
        except (ValueError, KeyError, TypeError) as e:
            return web.json_response({"error": f"Invalid handshake: {e}"}, status=400)

        async with self._lock:
            self._sessions[session_id] = data.get("project_id")
        logger.debug(f"Opened cache session {session_id}")
        return web.json_response({"status": "ok"})

    async def _get_cached_handler(self, request: web.Request) -> web.Response:
        """
        Look up a call.

        Request body: {"session_id": "...", "call_identity": {"path": "root.llm_call",
            "index": 0}, "request_fingerprint": "..."}
        Response: {"pathToCount": {...}, "overrides": {...}, "span": {...} | null}
        """
        try:
            data = await request.json()
            identity = _identity_from(data)
        except (ValueError, TypeError) as e:
            return web.json_response({"error": f"Invalid lookup: {e}"}, status=400)

        async with self._lock:
            known_session = data.get("session_id") in self._sessions
            cached_span = self._cached_spans.get(identity.key) if known_session else None
            path_to_count = self._path_to_count.copy()
            overrides = self._overrides.copy() if known_session else {}

        logger.debug(
            f"Lookup {identity.key}: {'hit' if cached_span else 'no span'}"
            + ("" if known_session else " (unknown session)")
        )
        return web.json_response(
            {"pathToCount": path_to_count, "overrides": overrides, "span": cached_span}
        )

    async def _record_span_handler(self, request: web.Request) -> web.Response:
        """
        Record the span of a live call.

        Request body: {"session_id": "...", "call_identity": {...}, "span": {...}}
        """
        try:
            data = await request.json()
            identity = _identity_from(data)
            span = data["span"]
        except (ValueError, KeyError, TypeError) as e:
            return web.json_response({"error": f"Invalid span: {e}"}, status=400)

        async with self._lock:
            if data.get("session_id") not in self._sessions:
                return web.json_response({"error": "Unknown session"}, status=404)
            self.set_cached_span(identity, span)

        logger.debug(f"Recorded span {identity.key}")
        return web.json_response({"status": "ok"})

    async def _get_path_to_count_handler(self, request: web.Request) -> web.Response:
        async with self._lock:
            path_to_count = self._path_to_count.copy()
        return web.json_response(path_to_count)

    async def _update_path_to_count_handler(self, request: web.Request) -> web.Response:
        """
        Replace the path-to-count mapping.

        Request body: {"root.llm_call": 2, "root.other": 1}
        """
        try:
            data = await request.json()
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        async with self._lock:
            self._path_to_count = {str(k): int(v) for k, v in data.items()}

        logger.debug(f"Updated path_to_count with {len(data)} entries")
        return web.json_response({"status": "ok", "count": len(data)})

    async def _get_overrides_handler(self, request: web.Request) -> web.Response:
        async with self._lock:
            overrides = self._overrides.copy()
        return web.json_response(overrides)

    async def _update_overrides_handler(self, request: web.Request) -> web.Response:
        """
        Replace the overrides.

        Request body: {"root.llm_call": {"system": "...", "tools": [...]}}
        """
        try:
            data = await request.json()
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        async with self._lock:
            self.set_overrides(data)

        logger.debug(f"Updated overrides for {len(data)} paths")
        return web.json_response({"status": "ok", "count": len(data)})
