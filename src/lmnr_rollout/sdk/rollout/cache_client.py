"""
HTTP client for the rollout cache service.

Every intercepted provider call is given a call-site identity (span path plus
the number of earlier calls on that path in this process). The cache service
answers a lookup for that identity with a recorded span (Hit), prompt/tool
overrides for the path (Override), or nothing (Miss).
"""

import asyncio
import collections
import concurrent.futures
import hashlib
import json
import threading
import uuid
from typing import Any, Literal

import httpx
import orjson

from lmnr_rollout.sdk.errors import HandshakeFailed
from lmnr_rollout.sdk.log import get_default_logger
from lmnr_rollout.sdk.types import (
    CacheLookupResult,
    CacheServerResponse,
    CachedSpan,
    CallSiteIdentity,
    Hit,
    Miss,
    Override,
    WorkerConfig,
)
from lmnr_rollout.sdk.utils import serialize

logger = get_default_logger(__name__)

HandshakeState = Literal["pending", "ready", "failed"]


def request_fingerprint(request: Any) -> str:
    """sha256 of the canonical JSON form of a provider request.

    Sent along with lookups for diagnostics only; identities never depend on
    it.
    """
    try:
        canonical = orjson.dumps(request, default=serialize, option=orjson.OPT_SORT_KEYS)
    except TypeError:
        canonical = json.dumps(serialize(request), sort_keys=True).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


class CacheClient:
    """
    Client for the rollout cache service.

    Lookups are async and must run on the loop the client was started on.
    `lookup_sync`/`record_sync` let sync provider clients, running in worker
    threads, use the same session.
    """

    def __init__(
        self,
        cache_server_url: str,
        session_id: str | None = None,
        project_id: str | None = None,
        handshake_failure: Literal["miss", "abort"] = "miss",
        handshake_timeout: float = 5.0,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the cache client.

        Args:
            cache_server_url: Base URL of the cache service (e.g., "http://localhost:12345")
            session_id: Rollout session id, a fresh uuid4 if not given
            project_id: Project the session belongs to
            handshake_failure: "miss" to treat every lookup as a Miss when the\
                handshake fails, "abort" to raise HandshakeFailed instead
            handshake_timeout: Seconds to wait for the handshake
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport, for tests
        """
        self.base_url = cache_server_url.rstrip("/")
        self.session_id = session_id or str(uuid.uuid4())
        self.project_id = project_id
        self.handshake_failure = handshake_failure
        self.handshake_timeout = handshake_timeout
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        self._counter_lock = threading.Lock()
        self._path_to_index: dict[str, int] = {}

        self.state: HandshakeState = "pending"
        self._handshake_task: asyncio.Task | None = None
        self._handshake_ok: bool | None = None
        self._handshake_done: asyncio.Event | None = None
        self._queue: collections.deque[
            tuple[CallSiteIdentity, Any, asyncio.Future]
        ] = collections.deque()

        self.path_to_count: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: WorkerConfig) -> "CacheClient | None":
        if config.cache_server_url is None:
            return None
        return cls(
            config.cache_server_url,
            session_id=config.session_id,
            project_id=config.project_id,
            handshake_failure=config.handshake_failure,
            handshake_timeout=config.handshake_timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._handshake_task is not None and not self._handshake_task.done():
            self._handshake_task.cancel()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def next_identity(self, path: str) -> CallSiteIdentity:
        """Assign the identity of a call at the moment it is made.

        Counters are per path and start at 0. Every call takes a number,
        whatever its arguments and however long it takes to complete.
        """
        with self._counter_lock:
            index = self._path_to_index.get(path, 0)
            self._path_to_index[path] = index + 1
        return CallSiteIdentity(path, index)

    def start(self) -> None:
        """Begin the session handshake in the background. Idempotent."""
        if self._handshake_task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._handshake_done = asyncio.Event()
        self._handshake_task = self._loop.create_task(self._handshake())

    async def _handshake(self) -> None:
        try:
            response = await asyncio.wait_for(
                self._get_client().post(
                    "/handshake",
                    json={"session_id": self.session_id, "project_id": self.project_id},
                ),
                timeout=self.handshake_timeout,
            )
            response.raise_for_status()
            self._handshake_ok = True
            logger.debug(f"Cache session {self.session_id} ready")
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            self._handshake_ok = False
            logger.warning(
                f"Cache session handshake failed ({e!r}); "
                + (
                    "aborting lookups"
                    if self.handshake_failure == "abort"
                    else "every call will run live"
                )
            )

        # Lookups issued meanwhile go out in the order they were made. New
        # ones keep queueing until the backlog is empty.
        while self._queue:
            identity, request, future = self._queue.popleft()
            if future.done():
                continue
            try:
                future.set_result(await self._dispatch(identity, request))
            except HandshakeFailed as e:
                future.set_exception(e)
        self.state = "ready" if self._handshake_ok else "failed"
        self._handshake_done.set()

    async def _wait_handshake(self) -> None:
        if self._handshake_task is None:
            self.start()
        await self._handshake_done.wait()

    async def _dispatch(self, identity: CallSiteIdentity, request: Any):
        if not self._handshake_ok:
            if self.handshake_failure == "abort":
                raise HandshakeFailed(
                    f"Cache session {self.session_id} is not available"
                )
            return Miss()
        return await self._fetch(identity, request)

    async def _fetch(
        self, identity: CallSiteIdentity, request: Any
    ) -> CacheLookupResult:
        try:
            response = await self._get_client().post(
                "/cached",
                json={
                    "session_id": self.session_id,
                    "call_identity": identity.to_dict(),
                    "request_fingerprint": request_fingerprint(request),
                },
            )
            if response.status_code != 200:
                logger.warning(
                    f"Cache server returned status {response.status_code} "
                    f"for {identity.key}"
                )
                return Miss()
            data: CacheServerResponse = response.json()
        except httpx.TimeoutException:
            logger.warning(f"Timeout fetching cached span {identity.key}")
            return Miss()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Error fetching cached span {identity.key}: {e}")
            return Miss()

        self.path_to_count = data.get("pathToCount") or self.path_to_count
        if span := data.get("span"):
            logger.debug(f"Cache hit for {identity.key}")
            return Hit(span)
        override = (data.get("overrides") or {}).get(identity.path)
        if override:
            logger.debug(f"Overrides for {identity.key}")
            return Override(system=override.get("system"), tools=override.get("tools"))
        logger.debug(f"Cache miss for {identity.key}")
        return Miss()

    async def lookup(
        self, identity: CallSiteIdentity, request: Any = None
    ) -> CacheLookupResult:
        """
        Look up a call.

        Args:
            identity: Identity taken with `next_identity` when the call was made
            request: The provider request, used for the fingerprint

        Returns:
            Hit, Override or Miss. Service errors and timeouts are a Miss.

        Raises:
            HandshakeFailed: the handshake failed and the policy is "abort"
        """
        if self._handshake_task is None:
            self.start()
        if self.state == "pending":
            future = self._loop.create_future()
            self._queue.append((identity, request, future))
            return await future
        return await self._dispatch(identity, request)

    async def record(self, identity: CallSiteIdentity, span: CachedSpan) -> bool:
        """Store the span produced by a live call. Returns False if the
        service did not accept it."""
        await self._wait_handshake()
        if not self._handshake_ok:
            if self.handshake_failure == "abort":
                raise HandshakeFailed(
                    f"Cache session {self.session_id} is not available"
                )
            return False
        try:
            response = await self._get_client().post(
                "/spans",
                json={
                    "session_id": self.session_id,
                    "call_identity": identity.to_dict(),
                    "span": serialize(span),
                },
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Error recording span {identity.key}: {e}")
            return False

    def schedule_record(
        self, identity: CallSiteIdentity, span: CachedSpan
    ) -> concurrent.futures.Future | None:
        """Record from any thread without waiting for the service."""
        if self._loop is None or self._loop.is_closed():
            logger.debug(f"record {identity.key}: cache client is not started")
            return None
        return asyncio.run_coroutine_threadsafe(self.record(identity, span), self._loop)

    def _run_from_thread(self, coro, default: Any, what: str):
        loop = self._loop
        if loop is None or loop.is_closed():
            coro.close()
            logger.debug(f"{what}: cache client is not bound to a running loop")
            return default
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            # blocking here would deadlock the loop that serves the request
            coro.close()
            logger.debug(f"{what}: called from the event loop thread, skipping")
            return default
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return future.result(timeout=self.handshake_timeout + self.timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.warning(f"{what}: timed out")
            return default

    def lookup_sync(
        self, identity: CallSiteIdentity, request: Any = None
    ) -> CacheLookupResult:
        return self._run_from_thread(
            self.lookup(identity, request), Miss(), f"lookup {identity.key}"
        )

    def record_sync(self, identity: CallSiteIdentity, span: CachedSpan) -> bool:
        return self._run_from_thread(
            self.record(identity, span), False, f"record {identity.key}"
        )
