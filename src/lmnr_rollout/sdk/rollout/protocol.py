"""
Line protocol between the rollout supervisor and its worker process.

The worker shares stdout with the user's own code, so protocol messages are
single lines starting with WORKER_MESSAGE_PREFIX followed by a JSON object.
Anything else on stdout is user output and is passed through untouched.
"""

import asyncio
import sys
import threading
from typing import Any, TextIO

import pydantic

from lmnr_rollout.sdk.errors import ProtocolParseFailure
from lmnr_rollout.sdk.types import (
    WORKER_MESSAGE_ADAPTER,
    ErrorMessage,
    LogMessage,
    ResultMessage,
    WorkerMessage,
)
from lmnr_rollout.sdk.utils import json_dumps

WORKER_MESSAGE_PREFIX = "__LMNR_WORKER__:"


def encode_message(message: WorkerMessage) -> str:
    """Render a message as one framed line, without the trailing newline."""
    return WORKER_MESSAGE_PREFIX + json_dumps(message.model_dump(exclude_none=True))


def is_framed(line: str) -> bool:
    return line.startswith(WORKER_MESSAGE_PREFIX)


def parse_framed_line(line: str) -> WorkerMessage | None:
    """
    Parse one stdout line.

    Returns None for lines that are not protocol messages. Raises
    ProtocolParseFailure when the marker is present but the payload is not a
    valid message; `raw` on the exception holds the text after the marker.
    """
    if not is_framed(line):
        return None
    payload = line[len(WORKER_MESSAGE_PREFIX) :].strip()
    try:
        return WORKER_MESSAGE_ADAPTER.validate_json(payload)
    except pydantic.ValidationError as e:
        raise ProtocolParseFailure(payload, str(e)) from e


class WorkerChannel:
    """Writes protocol messages to the worker's stdout.

    Log messages are fire-and-forget. The final result or error goes through
    `send_final`, which resolves only once the line has been handed to the
    pipe, so the process does not exit with the message still buffered.
    """

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream
        # sync entry functions run in a worker thread and may log concurrently
        self._lock = threading.Lock()

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def send(self, message: WorkerMessage) -> None:
        line = encode_message(message) + "\n"
        with self._lock:
            self.stream.write(line)
            self.stream.flush()

    async def send_final(self, message: WorkerMessage) -> None:
        await asyncio.to_thread(self.send, message)

    def log(self, level: str, message: str) -> None:
        self.send(LogMessage(level=level, message=message))

    async def send_result(self, data: Any) -> None:
        await self.send_final(ResultMessage(data=data))

    async def send_error(self, message: str, stack: str | None = None) -> None:
        await self.send_final(ErrorMessage(message=message, stack=stack))


class WorkerLogger:
    """Logger-shaped facade that reports through the protocol channel."""

    def __init__(self, channel: WorkerChannel):
        self.channel = channel

    def info(self, message: str) -> None:
        self.channel.log("info", message)

    def debug(self, message: str) -> None:
        self.channel.log("debug", message)

    def warning(self, message: str) -> None:
        self.channel.log("warn", message)

    warn = warning

    def error(self, message: str) -> None:
        self.channel.log("error", message)
