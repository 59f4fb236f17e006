"""
Tests for the subprocess supervisor, with a mocked process and with real
worker processes.
"""

import asyncio
import json
import os
import sys
from unittest.mock import AsyncMock, Mock, patch

import pytest

import lmnr_rollout
from lmnr_rollout.sdk.errors import (
    SpawnFailure,
    SupervisorBusy,
    WorkerExitAbnormal,
    WorkerOutputError,
    WorkerSignaled,
)
from lmnr_rollout.sdk.rollout.protocol import WORKER_MESSAGE_PREFIX
from lmnr_rollout.sdk.rollout.supervisor import SubprocessSupervisor
from lmnr_rollout.sdk.types import WorkerConfig

WORKER_ARGS = ["-m", "lmnr_rollout.cli.worker"]
SRC_DIR = os.path.dirname(os.path.dirname(os.path.abspath(lmnr_rollout.__file__)))


def _framed(payload: dict) -> bytes:
    return (WORKER_MESSAGE_PREFIX + json.dumps(payload) + "\n").encode()


def _fake_process(
    stdout: bytes, stderr: bytes = b"", returncode: int = 0, limit: int = 2**16
):
    process = Mock()
    process.pid = 12345
    process.returncode = returncode

    process.stdin = Mock()
    process.stdin.drain = AsyncMock()

    process.stdout = asyncio.StreamReader(limit=limit)
    process.stdout.feed_data(stdout)
    process.stdout.feed_eof()
    process.stderr = asyncio.StreamReader()
    process.stderr.feed_data(stderr)
    process.stderr.feed_eof()

    process.wait = AsyncMock(return_value=returncode)
    return process


def _worker_config(**kwargs) -> WorkerConfig:
    env = {"PYTHONPATH": SRC_DIR, "LMNR_PROJECT_API_KEY": ""}
    return WorkerConfig(env=env, **kwargs)


@pytest.mark.asyncio
async def test_execute_returns_result_and_passes_config(capsys):
    supervisor = SubprocessSupervisor()
    process = _fake_process(
        b"plain user output\n"
        + _framed({"type": "log", "level": "info", "message": "Running run"})
        + _framed({"type": "result", "data": {"answer": 42}}),
        stderr=b"user stderr\n",
    )
    config = WorkerConfig(
        filePath="/tmp/agent.py", env={"LMNR_ROLLOUT_CHILD_FLAG": "1"}
    )

    with patch(
        "asyncio.create_subprocess_exec", new_callable=AsyncMock
    ) as mock_create:
        mock_create.return_value = process
        result = await supervisor.execute(sys.executable, WORKER_ARGS, config)

    assert result == {"answer": 42}
    assert not supervisor.is_running()

    call_args = mock_create.call_args
    assert call_args.args == (sys.executable, *WORKER_ARGS)
    assert call_args.kwargs["env"]["LMNR_ROLLOUT_CHILD_FLAG"] == "1"
    # overrides go to the child only
    assert "LMNR_ROLLOUT_CHILD_FLAG" not in os.environ

    written = process.stdin.write.call_args.args[0].decode()
    assert written.endswith("\n")
    assert json.loads(written)["filePath"] == "/tmp/agent.py"
    process.stdin.close.assert_called_once()

    captured = capsys.readouterr()
    assert "plain user output" in captured.out.splitlines()
    assert WORKER_MESSAGE_PREFIX not in captured.out
    assert "user stderr" in captured.err


@pytest.mark.asyncio
async def test_unparseable_framed_line_is_passed_through(capsys):
    supervisor = SubprocessSupervisor()
    process = _fake_process(
        (WORKER_MESSAGE_PREFIX + "{broken\n").encode()
        + _framed({"type": "result", "data": "ok"})
    )

    with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as create:
        create.return_value = process
        result = await supervisor.execute("python", [], WorkerConfig())

    assert result == "ok"
    assert "{broken" in capsys.readouterr().out.splitlines()


@pytest.mark.asyncio
async def test_execute_raises_on_worker_error():
    supervisor = SubprocessSupervisor()
    process = _fake_process(
        _framed({"type": "error", "message": "boom", "stack": "Traceback ..."}),
        returncode=1,
    )

    with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as create:
        create.return_value = process
        with pytest.raises(WorkerExitAbnormal) as exc_info:
            await supervisor.execute("python", [], WorkerConfig())

    assert exc_info.value.exit_code == 1
    assert exc_info.value.worker_error == "boom"
    assert str(exc_info.value) == "Worker exited with code 1"


@pytest.mark.asyncio
async def test_execute_reports_signal_termination():
    supervisor = SubprocessSupervisor()
    process = _fake_process(b"", returncode=-9)

    with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as create:
        create.return_value = process
        with pytest.raises(WorkerSignaled, match="SIGKILL"):
            await supervisor.execute("python", [], WorkerConfig())


@pytest.mark.asyncio
async def test_spawn_failure():
    supervisor = SubprocessSupervisor()

    with patch(
        "asyncio.create_subprocess_exec",
        new_callable=AsyncMock,
        side_effect=FileNotFoundError("no such file"),
    ):
        with pytest.raises(SpawnFailure):
            await supervisor.execute("/nonexistent/python", [], WorkerConfig())

    assert not supervisor.is_running()


@pytest.mark.asyncio
async def test_execute_while_running_is_rejected():
    supervisor = SubprocessSupervisor()
    supervisor.process = Mock()

    with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as create:
        with pytest.raises(SupervisorBusy):
            await supervisor.execute("python", [], WorkerConfig())
        create.assert_not_called()


def test_kill_without_process_returns_false():
    assert SubprocessSupervisor().kill() is False


@pytest.mark.asyncio
async def test_lines_longer_than_the_read_limit_are_reassembled(capsys):
    supervisor = SubprocessSupervisor()
    long_text = "x" * 100
    process = _fake_process(
        long_text.encode()
        + b"\n"
        + _framed({"type": "result", "data": {"text": long_text}})
        + b"tail without newline",
        limit=16,
    )

    with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as create:
        create.return_value = process
        result = await supervisor.execute("python", [], WorkerConfig())

    assert result == {"text": long_text}
    assert capsys.readouterr().out.splitlines() == [long_text, "tail without newline"]


@pytest.mark.asyncio
async def test_output_read_failure_terminates_worker():
    supervisor = SubprocessSupervisor()
    process = _fake_process(b"", returncode=None)
    process.stdout = Mock()
    process.stdout.readuntil = AsyncMock(side_effect=RuntimeError("pipe broke"))

    def exited(*_):
        process.returncode = -15

    process.terminate = Mock(side_effect=exited)

    with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as create:
        create.return_value = process
        with pytest.raises(WorkerOutputError, match="pipe broke"):
            await supervisor.execute("python", [], WorkerConfig())

    process.terminate.assert_called_once()
    process.wait.assert_awaited()
    assert not supervisor.is_running()


@pytest.mark.asyncio
async def test_execute_after_kill_is_rejected_until_first_run_returns():
    supervisor = SubprocessSupervisor()
    process = _fake_process(b"", returncode=None)
    # stdout stays open until the test closes it
    process.stdout = asyncio.StreamReader()
    process.stderr = asyncio.StreamReader()
    process.wait = AsyncMock(return_value=-15)

    with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as create:
        create.return_value = process
        first = asyncio.create_task(supervisor.execute("python", [], WorkerConfig()))
        while not supervisor.is_running():
            await asyncio.sleep(0.01)

        assert supervisor.kill() is True
        assert not supervisor.is_running()
        with pytest.raises(SupervisorBusy):
            await supervisor.execute("python", [], WorkerConfig())
        assert create.await_count == 1

        process.returncode = -15
        process.stdout.feed_eof()
        process.stderr.feed_eof()
        with pytest.raises(WorkerSignaled, match="SIGTERM"):
            await asyncio.wait_for(first, timeout=5)

    # the supervisor accepts work again
    with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as create:
        create.return_value = _fake_process(_framed({"type": "result", "data": 1}))
        assert await supervisor.execute("python", [], WorkerConfig()) == 1


# ---------------------------------------------------------------------------
# Real worker processes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_real_worker_returns_ok(write_module):
    path = write_module(
        """
        from lmnr_rollout import observe

        @observe(rollout_entrypoint=True)
        def run():
            return "ok"
        """
    )
    supervisor = SubprocessSupervisor()

    result = await supervisor.execute(
        sys.executable, WORKER_ARGS, _worker_config(filePath=path, args=[])
    )

    assert result == "ok"


@pytest.mark.asyncio
async def test_real_worker_error_rejects(write_module):
    path = write_module(
        """
        from lmnr_rollout import observe

        @observe(rollout_entrypoint=True)
        def run():
            raise RuntimeError("boom")
        """
    )
    supervisor = SubprocessSupervisor()

    with pytest.raises(WorkerExitAbnormal) as exc_info:
        await supervisor.execute(
            sys.executable, WORKER_ARGS, _worker_config(filePath=path)
        )

    assert exc_info.value.exit_code == 1
    assert exc_info.value.worker_error == "boom"


@pytest.mark.asyncio
async def test_real_worker_without_config_exits_1():
    process = await asyncio.create_subprocess_exec(
        sys.executable,
        *WORKER_ARGS,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env={**os.environ, "PYTHONPATH": SRC_DIR},
    )

    stdout, _ = await process.communicate(b"")

    assert process.returncode == 1
    (line,) = [
        line
        for line in stdout.decode().splitlines()
        if line.startswith(WORKER_MESSAGE_PREFIX)
    ]
    message = json.loads(line[len(WORKER_MESSAGE_PREFIX) :])
    assert message["type"] == "error"
    assert "No configuration" in message["message"]


@pytest.mark.asyncio
async def test_kill_twice_returns_true_then_false(write_module):
    path = write_module(
        """
        import time
        from lmnr_rollout import observe

        @observe(rollout_entrypoint=True)
        def run():
            time.sleep(30)
        """
    )
    supervisor = SubprocessSupervisor()
    task = asyncio.create_task(
        supervisor.execute(sys.executable, WORKER_ARGS, _worker_config(filePath=path))
    )
    while not supervisor.is_running():
        await asyncio.sleep(0.01)

    assert supervisor.kill() is True
    assert supervisor.kill() is False

    with pytest.raises(WorkerSignaled):
        await asyncio.wait_for(task, timeout=20)
    assert not supervisor.is_running()
