"""
Worker entry point for rollout execution.

Spawned by the rollout supervisor as:
    python -m lmnr_rollout.cli.worker

It reads its configuration from the first line of stdin, runs the selected
rollout entry point, and reports back on stdout through the worker protocol.
"""

import ast
import asyncio
import contextlib
import dataclasses
import importlib
import importlib.util
import inspect
import os
import signal
import sys
import traceback
import types
import typing
from typing import Any, Callable

import pydantic

from lmnr_rollout.sdk import tracing
from lmnr_rollout.sdk.errors import ConfigParseFailure, UserFunctionError
from lmnr_rollout.sdk.rollout.cache_client import CacheClient
from lmnr_rollout.sdk.rollout.discovery import (
    discover_entrypoints_in_file,
    select_entrypoint,
)
from lmnr_rollout.sdk.rollout.instrumentation import (
    RolloutInstrumentationWrapper,
    instrument_known_providers,
)
from lmnr_rollout.sdk.rollout.protocol import WorkerChannel, WorkerLogger
from lmnr_rollout.sdk.stream_tee import consume_stream_result
from lmnr_rollout.sdk.types import EntryPointFunction, ParameterSpec, WorkerConfig
from lmnr_rollout.sdk.utils import from_env, is_async, scoped_environ, try_parse_json


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


# value for a parameter the caller did not provide
MISSING: Any = _Missing()


# ---------------------------------------------------------------------------
# Module loading
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def blocked_imports(module_names: list[str]):
    """Make the given modules unimportable for the duration of the block.

    A None entry in sys.modules makes `import name` raise ImportError, so user
    code guarded by try/except ImportError takes its fallback path.
    """
    blocked = [name for name in module_names if name not in sys.modules]
    for name in blocked:
        sys.modules[name] = None  # type: ignore[assignment]
    try:
        yield
    finally:
        for name in blocked:
            if sys.modules.get(name, MISSING) is None:
                del sys.modules[name]


def resolve_source_path(config: WorkerConfig) -> str:
    """Find the source file of the target without executing it."""
    if config.file_path:
        return os.path.abspath(config.file_path)
    if config.module_path:
        spec = importlib.util.find_spec(config.module_path)
        if spec is None or not spec.origin or not os.path.isfile(spec.origin):
            raise ImportError(f"Could not find module {config.module_path}")
        return spec.origin
    raise ValueError("Either filePath or modulePath must be provided")


def load_module_from_file(file_path: str) -> types.ModuleType:
    """Load a Python module from a file path (script mode)."""
    file_abs_path = os.path.abspath(file_path)
    file_dir = os.path.dirname(file_abs_path)
    if file_dir not in sys.path:
        sys.path.insert(0, file_dir)

    module_name = (
        f"__lmnr_worker_{os.path.splitext(os.path.basename(file_abs_path))[0]}"
    )
    spec = importlib.util.spec_from_file_location(module_name, file_abs_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Could not load module from {file_path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


def load_module_from_path(module_path: str) -> types.ModuleType:
    """Load a Python module by its dotted path (module mode)."""
    cwd = os.getcwd()
    if cwd not in sys.path:
        sys.path.insert(0, cwd)
    return importlib.import_module(module_path)


def load_target_module(config: WorkerConfig) -> EntryPointFunction:
    """
    Discover, load and bind the entry point named by the configuration.

    Entry points are discovered from the source before the module runs, so
    a missing or ambiguous entry point is reported without executing user
    code.

    Returns:
        The selected entry point with its callable bound.
    """
    for root in reversed(config.external_packages):
        root = os.path.abspath(root)
        if root not in sys.path:
            sys.path.insert(0, root)

    if config.module_path and not config.file_path:
        # find_spec may need the working directory on the path
        cwd = os.getcwd()
        if cwd not in sys.path:
            sys.path.insert(0, cwd)

    source_path = resolve_source_path(config)
    entrypoint = select_entrypoint(
        discover_entrypoints_in_file(source_path), config.function_name
    )

    with blocked_imports(config.dynamic_imports_to_skip):
        if config.file_path:
            module = load_module_from_file(config.file_path)
        else:
            module = load_module_from_path(config.module_path)

    fn = getattr(module, entrypoint.export_name, None)
    if not callable(fn):
        raise AttributeError(
            f"'{entrypoint.export_name}' in {source_path} is not callable"
        )
    return entrypoint.bind(fn)


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------


def _literal_default(spec: ParameterSpec) -> Any:
    if spec.default is None:
        return None
    try:
        return ast.literal_eval(spec.default)
    except (ValueError, SyntaxError):
        return None


def _is_destructured(spec: ParameterSpec) -> bool:
    return bool(spec.nested) and spec.kind in ("positional", "var_keyword")


def _nested_source(spec: ParameterSpec, raw_args: dict[str, Any]) -> dict | None:
    """Where the fields of a record parameter come from: its own entry when
    that is a mapping, otherwise the top level of the arguments."""
    own = try_parse_json(raw_args.get(spec.name))
    if isinstance(own, dict):
        return own
    if _is_destructured(spec) or any(n.name in raw_args for n in spec.nested):
        return raw_args
    # a named record parameter nobody supplied keeps its Python default
    return None


def reconstruct_args(
    params: tuple[ParameterSpec, ...] | list[ParameterSpec],
    raw_args: dict[str, Any] | list[Any],
) -> list[Any]:
    """
    Build one value per parameter from the caller's arguments.

    A list is positional and returned unchanged, with JSON strings decoded.
    For a mapping, parameters with nested fields get a fresh dict holding
    exactly their nested names (absent keys take their literal default or
    None) and simple parameters get their value by name, or MISSING.
    """
    if isinstance(raw_args, list):
        return [try_parse_json(value) for value in raw_args]

    values = []
    for spec in params:
        if spec.nested:
            source = _nested_source(spec, raw_args)
            if source is None:
                values.append(MISSING)
                continue
            values.append(
                {
                    nested.name: (
                        try_parse_json(source[nested.name])
                        if nested.name in source
                        else _literal_default(nested)
                    )
                    for nested in spec.nested
                }
            )
        elif spec.name in raw_args:
            values.append(try_parse_json(raw_args[spec.name]))
        else:
            values.append(MISSING)
    return values


def _unwrap_optional(annotation: Any) -> Any:
    if typing.get_origin(annotation) in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _convert_record(annotation: Any, value: Any) -> Any:
    """Turn a dict into the pydantic model or dataclass the parameter is
    annotated with."""
    annotation = _unwrap_optional(annotation)
    if not isinstance(value, dict) or not isinstance(annotation, type):
        return value
    if issubclass(annotation, pydantic.BaseModel):
        return annotation.model_validate(value)
    if dataclasses.is_dataclass(annotation):
        return annotation(**value)
    return value


def _real_parameters(fn: Callable) -> list[inspect.Parameter]:
    params = list(inspect.signature(fn).parameters.values())
    if params and params[0].name in ("self", "cls"):
        params = params[1:]
    return params


def _type_hints(fn: Callable) -> dict[str, Any]:
    try:
        return typing.get_type_hints(inspect.unwrap(fn))
    except (NameError, TypeError):
        return {}


def bind_arguments(
    fn: Callable,
    params: tuple[ParameterSpec, ...],
    raw_args: dict[str, Any] | list[Any],
) -> tuple[list[Any], dict[str, Any]]:
    """
    Turn the caller's arguments into (args, kwargs) for the entry function.

    Positional parameters are passed positionally, keyword parameters by name
    (absent ones are left out so that Python defaults apply), *args and
    **kwargs are spread.
    """
    values = reconstruct_args(params, raw_args)
    if isinstance(raw_args, list):
        return values, {}

    real = _real_parameters(fn)
    if len(real) != len(params):
        real = [None] * len(params)
    hints = _type_hints(fn)

    # parameters before a non-empty *args cannot be passed by keyword
    spread_at = next(
        (
            i
            for i, (spec, value) in enumerate(zip(params, values))
            if spec.kind == "var_positional" and isinstance(value, list) and value
        ),
        -1,
    )

    args: list[Any] = []
    kwargs: dict[str, Any] = {}
    for i, (spec, param, value) in enumerate(zip(params, real, values)):
        if param is not None and value is not MISSING:
            value = _convert_record(hints.get(param.name, param.annotation), value)

        if spec.kind == "var_positional":
            if isinstance(value, list):
                args.extend(value)
        elif spec.kind == "var_keyword":
            if isinstance(value, dict):
                kwargs.update(value)
        elif spec.kind == "positional" or i < spread_at:
            if value is MISSING:
                has_default = param is not None and param.default is not param.empty
                value = param.default if has_default else None
            args.append(value)
        elif value is not MISSING:
            kwargs[spec.name] = value
    return args, kwargs


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


def _initialize_tracing(config: WorkerConfig, log: WorkerLogger) -> None:
    if tracing.is_initialized():
        return
    api_key = config.project_api_key or from_env("LMNR_PROJECT_API_KEY")
    if not api_key:
        log.debug("No project API key, tracing disabled")
        return
    tracing.initialize(
        base_url=config.base_url,
        project_api_key=api_key,
        port=config.grpc_port,
        http_port=config.http_port,
        disable_batch=True,
        session_id=config.session_id,
    )


async def invoke(fn: Callable, args: list[Any], kwargs: dict[str, Any]) -> Any:
    """Call the entry function and drain whatever it returns."""
    try:
        if is_async(fn):
            result = await fn(*args, **kwargs)
        else:
            # keep the loop free to serve cache lookups made from the thread
            result = await asyncio.to_thread(fn, *args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return await consume_stream_result(result)
    except Exception as e:
        raise UserFunctionError(e) from e


async def run_worker(config: WorkerConfig, log: WorkerLogger) -> Any:
    """
    Execute the configured entry point.

    Returns:
        The result, drained if it was a stream.
    """
    with scoped_environ(config.env):
        _initialize_tracing(config, log)

        cache_client = CacheClient.from_config(config)
        wrapper = RolloutInstrumentationWrapper(cache_client)
        if cache_client is not None:
            cache_client.start()
            instrumented = instrument_known_providers(wrapper)
            log.debug(f"Instrumented providers: {', '.join(instrumented) or 'none'}")

        try:
            entrypoint = load_target_module(config)
            log.info(f"Running {entrypoint.name}")
            args, kwargs = bind_arguments(
                entrypoint.fn, entrypoint.params, config.args
            )
            return await invoke(entrypoint.fn, args, kwargs)
        finally:
            # recordings and spans of a failed run are flushed as well
            await tracing.aflush()
            wrapper.unwrap_all()
            if cache_client is not None:
                await cache_client.close()


def install_shutdown_hook(
    loop: asyncio.AbstractEventLoop,
    hook: Callable[[], Any],
    signals: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGINT),
) -> None:
    """Run `hook` on the given signals, then die of the same signal so the
    supervisor sees a signal-terminated worker."""

    def handle(signum: signal.Signals) -> None:
        try:
            hook()
        finally:
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    for signum in signals:
        try:
            loop.add_signal_handler(signum, handle, signum)
        except (NotImplementedError, RuntimeError):
            # no loop signal handlers on this platform
            pass


def _shutdown_tracing() -> None:
    if tracing.is_initialized():
        tracing.shutdown(tracing.SHUTDOWN_TIMEOUT)


async def _main() -> int:
    channel = WorkerChannel()
    log = WorkerLogger(channel)

    line = await asyncio.to_thread(sys.stdin.readline)
    if not line.strip():
        await channel.send_error("No configuration received on stdin")
        return 1
    try:
        config = WorkerConfig.from_line(line)
    except ConfigParseFailure as e:
        await channel.send_error(str(e))
        return 1

    install_shutdown_hook(asyncio.get_running_loop(), _shutdown_tracing)

    try:
        data = await run_worker(config, log)
    except Exception as e:
        original = e.original if isinstance(e, UserFunctionError) else e
        stack = "".join(traceback.format_exception(original))
        await channel.send_error(str(original), stack)
        print(stack, file=sys.stderr, flush=True)
        return 1

    await channel.send_result(data)
    return 0


def main() -> None:
    # Force line buffering so messages reach the supervisor immediately
    if sys.stdout is not None:
        sys.stdout.reconfigure(line_buffering=True)
    if sys.stderr is not None:
        sys.stderr.reconfigure(line_buffering=True)
    sys.exit(asyncio.run(_main()))


if __name__ == "__main__":
    main()
