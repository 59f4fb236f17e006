"""
Split streamed results so that both the caller and the tracing layer see
every chunk.

`detect_stream` decides once what shape a value has, `tee_stream` returns a
passthrough object of the same shape plus a future that resolves with the
captured chunks once the stream ends. The capture future is a
`concurrent.futures.Future` so that it can be resolved from sync generators
running in worker threads as well as from the event loop.
"""

import asyncio
import codecs
import concurrent.futures
import enum
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterator

import httpx
import wrapt

from lmnr_rollout.sdk.log import get_default_logger
from lmnr_rollout.sdk.utils import is_async_iterator, is_iterator

logger = get_default_logger(__name__)

READ_CHUNK_SIZE = 64 * 1024
PENDING_CAPTURES_TIMEOUT = 5.0

_STRIPPED_RESPONSE_HEADERS = ("content-encoding", "content-length")


class StreamKind(str, enum.Enum):
    STREAMING_RESULT = "streaming_result"
    BYTE_STREAM = "byte_stream"
    ASYNC_SEQUENCE = "async_sequence"
    HTTP_RESPONSE = "http_response"
    PLAIN_VALUE = "plain_value"


@dataclass(frozen=True)
class StreamInfo:
    kind: StreamKind
    # only meaningful for ASYNC_SEQUENCE: False for plain generators/iterators
    is_async: bool = True


@dataclass
class StreamCapture:
    kind: StreamKind
    chunks: list[Any] = field(default_factory=list)
    error: BaseException | None = None


CaptureFuture = concurrent.futures.Future  # [StreamCapture]


def _is_byte_stream(value: Any) -> bool:
    return callable(getattr(value, "read", None)) and callable(
        getattr(value, "at_eof", None)
    )


def _is_http_response(value: Any) -> bool:
    return (
        callable(getattr(value, "aiter_bytes", None))
        and hasattr(value, "status_code")
        and hasattr(value, "headers")
    )


def detect_stream(value: Any) -> StreamInfo:
    if value is None or isinstance(value, (str, bytes, bytearray, type)):
        return StreamInfo(StreamKind.PLAIN_VALUE)
    if hasattr(value, "text_stream") or hasattr(value, "full_stream"):
        return StreamInfo(StreamKind.STREAMING_RESULT)
    if _is_byte_stream(value):
        return StreamInfo(StreamKind.BYTE_STREAM)
    if is_async_iterator(value):
        return StreamInfo(StreamKind.ASYNC_SEQUENCE)
    if is_iterator(value):
        return StreamInfo(StreamKind.ASYNC_SEQUENCE, is_async=False)
    if _is_http_response(value):
        return StreamInfo(StreamKind.HTTP_RESPONSE)
    return StreamInfo(StreamKind.PLAIN_VALUE)


def _resolve(future: CaptureFuture, capture: StreamCapture) -> None:
    # a capture resolves exactly once, even if iteration is re-entered
    if not future.done():
        future.set_result(capture)


# Background pump tasks, referenced until they finish.
_background_tasks: set[asyncio.Task] = set()


def _spawn(coro) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def _tee_async_iterator(
    source: AsyncIterator, future: CaptureFuture, kind: StreamKind
):
    capture = StreamCapture(kind)
    try:
        async for item in source:
            capture.chunks.append(item)
            yield item
    except Exception as e:
        capture.error = e
        raise
    finally:
        _resolve(future, capture)


def _tee_iterator(source: Iterator, future: CaptureFuture, kind: StreamKind):
    capture = StreamCapture(kind)
    try:
        for item in source:
            capture.chunks.append(item)
            yield item
    except Exception as e:
        capture.error = e
        raise
    finally:
        _resolve(future, capture)


def _split_bytes(read_chunks: AsyncIterator[bytes]):
    """Pump a byte source into two independent StreamReaders."""
    left = asyncio.StreamReader()
    right = asyncio.StreamReader()

    async def pump():
        try:
            async for chunk in read_chunks:
                if chunk:
                    left.feed_data(chunk)
                    right.feed_data(chunk)
        except Exception as e:
            left.set_exception(e)
            right.set_exception(e)
        else:
            left.feed_eof()
            right.feed_eof()

    _spawn(pump())
    return left, right


async def _read_chunks(reader) -> AsyncIterator[bytes]:
    while True:
        chunk = await reader.read(READ_CHUNK_SIZE)
        if not chunk:
            return
        yield chunk


async def _capture_reader(
    reader: asyncio.StreamReader,
    future: CaptureFuture,
    kind: StreamKind,
    encoding: str | None = None,
) -> None:
    capture = StreamCapture(kind)
    decoder = (
        codecs.getincrementaldecoder(encoding)(errors="replace") if encoding else None
    )
    try:
        async for chunk in _read_chunks(reader):
            if decoder is not None:
                text = decoder.decode(chunk)
                if text:
                    capture.chunks.append(text)
            else:
                capture.chunks.append(chunk)
        if decoder is not None and (tail := decoder.decode(b"", final=True)):
            capture.chunks.append(tail)
    except Exception as e:
        capture.error = e
    finally:
        _resolve(future, capture)


class _BranchByteStream(httpx.AsyncByteStream):
    def __init__(self, reader: asyncio.StreamReader, source: Any):
        self._reader = reader
        self._source = source

    async def __aiter__(self):
        async for chunk in _read_chunks(self._reader):
            yield chunk

    async def aclose(self) -> None:
        await self._source.aclose()


def _tee_http_response(response: Any, future: CaptureFuture):
    left, right = _split_bytes(response.aiter_bytes())
    headers = [
        (k, v)
        for k, v in response.headers.items()
        if k.lower() not in _STRIPPED_RESPONSE_HEADERS
    ]
    try:
        request = response.request
    except RuntimeError:
        request = None
    passthrough = httpx.Response(
        response.status_code,
        headers=headers,
        stream=_BranchByteStream(left, response),
        request=request,
    )
    encoding = getattr(response, "encoding", None) or "utf-8"
    _spawn(_capture_reader(right, future, StreamKind.HTTP_RESPONSE, encoding))
    return passthrough


class TeedStreamingResult(wrapt.ObjectProxy):
    """Proxy for result objects that expose their output as
    `text_stream`/`full_stream`. The first stream accessed is teed and
    resolves the capture; every other attribute goes to the wrapped object."""

    def __init__(self, wrapped: Any, future: CaptureFuture):
        super().__init__(wrapped)
        self._self_future = future
        self._self_streams: dict[str, Any] = {}

    def _self_tee(self, attr: str) -> Any:
        if attr not in self._self_streams:
            source = getattr(self.__wrapped__, attr)
            if self._self_streams:
                # only one stream feeds the capture
                self._self_streams[attr] = source
            else:
                passthrough, branch = tee_stream(source)
                branch.add_done_callback(self._self_on_branch_done)
                self._self_streams[attr] = passthrough
        return self._self_streams[attr]

    def _self_on_branch_done(self, branch: CaptureFuture) -> None:
        inner = branch.result()
        _resolve(
            self._self_future,
            StreamCapture(StreamKind.STREAMING_RESULT, inner.chunks, inner.error),
        )

    @property
    def text_stream(self):
        return self._self_tee("text_stream")

    @property
    def full_stream(self):
        return self._self_tee("full_stream")


def tee_stream(value: Any) -> tuple[Any, CaptureFuture]:
    """
    Split a (possibly) streamed value.

    Args:
        value: anything a traced function or provider call returned

    Returns:
        Tuple of (passthrough, capture). `passthrough` has the same shape as
        `value` and must be handed to the original consumer in its place.
        `capture` resolves with a StreamCapture once the stream is exhausted,
        fails, or is closed early.
    """
    future: CaptureFuture = concurrent.futures.Future()
    info = detect_stream(value)

    if info.kind == StreamKind.PLAIN_VALUE:
        _resolve(future, StreamCapture(StreamKind.PLAIN_VALUE, [value]))
        return value, future
    if info.kind == StreamKind.STREAMING_RESULT:
        return TeedStreamingResult(value, future), future
    if info.kind == StreamKind.ASYNC_SEQUENCE:
        if info.is_async:
            return _tee_async_iterator(value, future, info.kind), future
        return _tee_iterator(value, future, info.kind), future
    if info.kind == StreamKind.BYTE_STREAM:
        left, right = _split_bytes(_read_chunks(value))
        _spawn(_capture_reader(right, future, StreamKind.BYTE_STREAM))
        return left, future
    return _tee_http_response(value, future), future


async def consume_stream_result(value: Any) -> Any:
    """
    Drain a result completely.

    Plain values are returned as they are. Streams are read to the end and
    reported as {"type": kind, "chunks": [...]}. Errors raised while reading
    propagate to the caller.
    """
    info = detect_stream(value)
    chunks: list[Any] = []

    if info.kind == StreamKind.PLAIN_VALUE:
        return value
    if info.kind == StreamKind.STREAMING_RESULT:
        stream = getattr(value, "text_stream", None)
        if stream is None:
            stream = value.full_stream
        return {
            "type": info.kind.value,
            "chunks": (await consume_stream_result(stream))["chunks"],
        }
    if info.kind == StreamKind.ASYNC_SEQUENCE:
        if info.is_async:
            async for item in value:
                chunks.append(item)
        else:
            # a sync generator may block; keep the loop free for cache lookups
            chunks = await asyncio.to_thread(list, value)
    elif info.kind == StreamKind.BYTE_STREAM:
        async for chunk in _read_chunks(value):
            chunks.append(chunk)
    else:
        async for text in value.aiter_text():
            chunks.append(text)
    return {"type": info.kind.value, "chunks": chunks}


_pending_lock = threading.Lock()
_pending_captures: set[CaptureFuture] = set()


def track_capture(future: CaptureFuture) -> CaptureFuture:
    """Remember a capture that must complete before telemetry is flushed."""
    with _pending_lock:
        _pending_captures.add(future)

    def discard(f):
        with _pending_lock:
            _pending_captures.discard(f)

    future.add_done_callback(discard)
    return future


def pending_capture_count() -> int:
    with _pending_lock:
        return len(_pending_captures)


async def wait_for_pending_captures(
    timeout: float = PENDING_CAPTURES_TIMEOUT,
) -> bool:
    """Wait, bounded, for tracked captures. Returns False on timeout."""
    with _pending_lock:
        pending = list(_pending_captures)
    if not pending:
        return True
    _, not_done = await asyncio.wait(
        [asyncio.wrap_future(f) for f in pending], timeout=timeout
    )
    if not_done:
        logger.debug(
            f"{len(not_done)} stream captures did not complete within {timeout}s"
        )
    return not not_done
