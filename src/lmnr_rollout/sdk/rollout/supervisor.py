"""
Subprocess supervisor for running rollout functions in isolation.

The supervisor spawns a worker process, hands it its configuration as one JSON
line on stdin, and follows its stdout. Protocol lines carry logs and the final
result or error; everything else is the user's own output and is passed
through, as is stderr.
"""

import asyncio
import codecs
import contextlib
import os
import signal
import sys
from dataclasses import dataclass
from typing import Any

from lmnr_rollout.sdk.errors import (
    ProtocolParseFailure,
    SpawnFailure,
    SupervisorBusy,
    WorkerExitAbnormal,
    WorkerOutputError,
    WorkerSignaled,
)
from lmnr_rollout.sdk.log import get_default_logger
from lmnr_rollout.sdk.rollout.protocol import parse_framed_line
from lmnr_rollout.sdk.types import (
    ErrorMessage,
    LogMessage,
    ResultMessage,
    WorkerConfig,
)

logger = get_default_logger(__name__)
worker_logger = get_default_logger("lmnr_rollout.worker", verbose=False)

KILL_GRACE_PERIOD = 5.0
# longer lines are read in pieces and reassembled
STDOUT_LINE_LIMIT = 16 * 1024 * 1024

_LOG_LEVELS = {
    "debug": worker_logger.debug,
    "info": worker_logger.info,
    "warn": worker_logger.warning,
    "error": worker_logger.error,
}


@dataclass
class _RunState:
    result: Any = None
    error: ErrorMessage | None = None


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


async def _read_lines(stream: asyncio.StreamReader):
    """Yield raw lines, newline included. Lines longer than the reader's limit
    are assembled from pieces instead of failing the read."""
    pending = bytearray()
    while True:
        try:
            chunk = await stream.readuntil(b"\n")
        except asyncio.LimitOverrunError as e:
            pending += await stream.read(e.consumed)
            continue
        except asyncio.IncompleteReadError as e:
            # EOF without a trailing newline
            if pending or e.partial:
                yield bytes(pending + e.partial)
            return
        yield bytes(pending + chunk) if pending else chunk
        pending.clear()


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
        await asyncio.wait_for(process.wait(), KILL_GRACE_PERIOD)
    except ProcessLookupError:
        return
    except asyncio.TimeoutError:
        logger.debug("Worker did not terminate, sending SIGKILL")
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


class SubprocessSupervisor:
    """
    Runs one worker process at a time.

    `execute` resolves with the worker's result, or raises WorkerSignaled /
    WorkerExitAbnormal. `kill` may be called from another task while
    `execute` is waiting.
    """

    def __init__(self):
        self.process: asyncio.subprocess.Process | None = None
        self._kill_handle: asyncio.TimerHandle | None = None
        # stays set until execute() returns, even after kill() untracks the process
        self._executing = False

    def is_running(self) -> bool:
        return self.process is not None

    async def execute(self, command: str, args: list[str], config: WorkerConfig) -> Any:
        """
        Run a worker to completion.

        Args:
            command: Executable to spawn, e.g. sys.executable
            args: Its arguments, e.g. ["-m", "lmnr_rollout.cli.worker"]
            config: Configuration sent to the worker on stdin. `config.env` is\
                added to the spawned process's environment only.

        Returns:
            The data of the worker's `result` message.
        """
        if self._executing or self.process is not None:
            raise SupervisorBusy("A worker process is already running")

        self._executing = True
        try:
            return await self._execute(command, args, config)
        finally:
            self._executing = False

    async def _execute(self, command: str, args: list[str], config: WorkerConfig) -> Any:
        env = {**os.environ, **config.env}
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STDOUT_LINE_LIMIT,
            )
        except OSError as e:
            raise SpawnFailure(f"Failed to start worker {command}: {e}") from e

        self.process = process
        state = _RunState()
        try:
            try:
                process.stdin.write(config.to_line().encode("utf-8"))
                await process.stdin.drain()
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                # the worker exited before reading; its exit code says why
                logger.debug("Worker closed stdin before reading its config")

            readers = [
                asyncio.create_task(self._stream_stdout(process, state)),
                asyncio.create_task(self._stream_stderr(process)),
            ]
            try:
                await asyncio.gather(*readers)
            except Exception as e:
                for task in readers:
                    task.cancel()
                await _terminate(process)
                raise WorkerOutputError(f"Failed to read worker output: {e}") from e
            await process.wait()
        finally:
            if self.process is process:
                self.process = None

        returncode = process.returncode
        if returncode < 0:
            raise WorkerSignaled(_signal_name(-returncode))
        if returncode == 0:
            return state.result
        if state.error is None:
            logger.error(f"Worker exited with code {returncode}")
        raise WorkerExitAbnormal(
            returncode, state.error.message if state.error else None
        )

    async def _stream_stdout(
        self, process: asyncio.subprocess.Process, state: _RunState
    ) -> None:
        async for raw in _read_lines(process.stdout):
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            try:
                message = parse_framed_line(line)
            except ProtocolParseFailure as e:
                logger.debug(f"{e}")
                print(e.raw, flush=True)
                continue
            if message is None:
                print(line, flush=True)
            elif isinstance(message, LogMessage):
                _LOG_LEVELS[message.level](message.message)
            elif isinstance(message, ResultMessage):
                state.result = message.data
            elif isinstance(message, ErrorMessage):
                state.error = message
                worker_logger.error(f"Error: {message.message}")
                if message.stack:
                    worker_logger.error(message.stack)

    async def _stream_stderr(self, process: asyncio.subprocess.Process) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while chunk := await process.stderr.read(4096):
            sys.stderr.write(decoder.decode(chunk))
            sys.stderr.flush()
        if tail := decoder.decode(b"", final=True):
            sys.stderr.write(tail)

    def kill(self) -> bool:
        """
        Stop the running worker.

        Sends SIGTERM now and SIGKILL after KILL_GRACE_PERIOD seconds if the
        process is still alive. The process is untracked immediately.

        Returns:
            bool: False if there was nothing to kill
        """
        process = self.process
        if process is None:
            return False
        self.process = None

        logger.debug(f"Terminating worker {process.pid}")
        try:
            process.terminate()
        except ProcessLookupError:
            logger.debug("Worker already exited")
            return True

        def force_kill():
            if process.returncode is None:
                logger.debug("Worker did not terminate, sending SIGKILL")
                try:
                    process.kill()
                except ProcessLookupError:
                    logger.debug("Worker exited before SIGKILL")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("kill() called outside an event loop, no SIGKILL fallback")
            return True
        self._kill_handle = loop.call_later(KILL_GRACE_PERIOD, force_kill)
        return True
