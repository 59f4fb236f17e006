"""
Exceptions raised by the rollout toolkit.

Everything derives from RolloutError so callers can catch the whole family.
None of these are retried automatically; retry policy belongs to the caller.
"""


class RolloutError(Exception):
    """Base class for all rollout errors."""


class SpawnFailure(RolloutError):
    """The worker process could not be started."""


class ConfigParseFailure(RolloutError):
    """The worker configuration line could not be parsed or validated."""


class ProtocolParseFailure(RolloutError):
    """A framed worker message could not be parsed.

    Recoverable: the supervisor logs it and surfaces the raw line.
    """

    def __init__(self, raw: str, reason: str):
        super().__init__(f"Failed to parse worker message: {reason}")
        self.raw = raw


class DiscoveryParseError(RolloutError):
    """The source file given to the entry point discoverer is not valid Python."""

    def __init__(self, filename: str, lineno: int | None, reason: str):
        location = f"{filename}:{lineno}" if lineno else filename
        super().__init__(f"Failed to parse {location}: {reason}")
        self.filename = filename
        self.lineno = lineno


class EntryPointNotFound(RolloutError):
    """No entry point matches the requested name."""


class DiscoveryEmpty(EntryPointNotFound):
    """The source declares no rollout entry points at all."""


class AmbiguousEntryPoint(RolloutError):
    """Several entry points exist and none was selected explicitly."""


class UserFunctionError(RolloutError):
    """The entry function raised, directly or while its stream was drained."""

    def __init__(self, original: BaseException):
        super().__init__(str(original))
        self.original = original


class WorkerExitAbnormal(RolloutError):
    def __init__(self, exit_code: int, worker_error: str | None = None):
        super().__init__(f"Worker exited with code {exit_code}")
        self.exit_code = exit_code
        # message of the `error` the worker reported before exiting, if any
        self.worker_error = worker_error


class WorkerSignaled(RolloutError):
    def __init__(self, signal_name: str):
        super().__init__(f"Worker terminated by signal: {signal_name}")
        self.signal_name = signal_name


class WorkerOutputError(RolloutError):
    """Reading the worker's stdout or stderr failed. The worker is terminated."""


class SupervisorBusy(RolloutError):
    """execute() was called while a previous worker is still tracked."""


class HandshakeFailed(RolloutError):
    """The cache session handshake failed and the session is set to abort."""
