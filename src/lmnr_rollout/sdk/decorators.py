from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Coroutine, Literal, TypeVar, overload

from opentelemetry import context as context_api
from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode
from typing_extensions import ParamSpec

from lmnr_rollout.sdk import tracing
from lmnr_rollout.sdk.log import get_default_logger
from lmnr_rollout.sdk.stream_tee import StreamCapture, tee_stream, track_capture
from lmnr_rollout.sdk.utils import (
    get_input_from_func_args,
    is_async,
    is_method,
    is_otel_attribute_value_type,
    json_dumps,
)

logger = get_default_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

ROLLOUT_ENTRYPOINT = "lmnr.rollout.entrypoint"
ENTRYPOINT_MARKER = "__lmnr_rollout_entrypoint__"

# Names of the observed functions currently executing, outermost first.
# Maintained whether or not tracing is initialized, since cache identities
# are derived from it.
SPAN_PATH_CONTEXT: ContextVar[tuple[str, ...]] = ContextVar(
    "__lmnr_rollout_span_path", default=()
)


def current_span_path() -> tuple[str, ...]:
    return SPAN_PATH_CONTEXT.get()


@contextmanager
def span_path_scope(name: str):
    token = SPAN_PATH_CONTEXT.set((*SPAN_PATH_CONTEXT.get(), name))
    try:
        yield
    finally:
        SPAN_PATH_CONTEXT.reset(token)


def _start_span(
    span_name: str,
    span_type: str,
    rollout_entrypoint: bool,
    metadata: dict[str, Any] | None,
) -> Span:
    attributes: dict[str, Any] = {tracing.SPAN_TYPE: span_type}
    if rollout_entrypoint:
        attributes[ROLLOUT_ENTRYPOINT] = True
    for key, value in (metadata or {}).items():
        attributes[f"lmnr.association.properties.metadata.{key}"] = (
            value if is_otel_attribute_value_type(value) else json_dumps(value)
        )
    return tracing.get_tracer().start_span(span_name, attributes=attributes)


def _process_input(
    span: Span,
    fn: Callable,
    args: tuple,
    kwargs: dict,
    ignore_inputs: list[str] | None,
):
    try:
        inp = get_input_from_func_args(
            fn,
            is_method=is_method(fn),
            func_args=list(args),
            func_kwargs=kwargs,
            ignore_inputs=ignore_inputs,
        )
        span.set_attribute(tracing.SPAN_INPUT, json_dumps(inp))
    except Exception:
        logger.debug("Failed to process input, ignoring", exc_info=True)


def _set_output(span: Span, output: Any, ignore_output: bool):
    if ignore_output:
        return
    try:
        span.set_attribute(tracing.SPAN_OUTPUT, json_dumps(output))
    except Exception:
        logger.debug("Failed to process output, ignoring", exc_info=True)


def _process_exception(span: Span, e: BaseException):
    span.record_exception(e, escaped=True)
    span.set_status(Status(StatusCode.ERROR, str(e)))


def _finish(span: Span, result: Any, ignore_output: bool) -> Any:
    """End the span now for plain values, or once a streamed result has been
    fully consumed. Returns what the caller should receive instead of
    `result`."""
    passthrough, capture = tee_stream(result)
    if capture.done():
        _set_output(span, result, ignore_output)
        span.end()
        return passthrough

    def on_captured(future):
        captured: StreamCapture = future.result()
        _set_output(span, captured.chunks, ignore_output)
        if captured.error is not None:
            _process_exception(span, captured.error)
        span.end()

    track_capture(capture).add_done_callback(on_captured)
    return passthrough


@dataclass(frozen=True)
class _ObserveOptions:
    span_name: str
    span_type: str
    ignore_input: bool
    ignore_inputs: list[str] | None
    ignore_output: bool
    rollout_entrypoint: bool
    metadata: dict[str, Any] | None


@contextmanager
def _observed_call(options: _ObserveOptions, fn: Callable, args: tuple, kwargs: dict):
    """Enter the span path of `fn` and, when tracing is on, a current span.

    Yields the span, or None when tracing is not initialized. Exceptions end
    the span; on success the caller hands the result to `_finish`.
    """
    with span_path_scope(options.span_name):
        if not tracing.is_initialized():
            yield None
            return

        span = _start_span(
            options.span_name,
            options.span_type,
            options.rollout_entrypoint,
            options.metadata,
        )
        ctx_token = context_api.attach(trace.set_span_in_context(span))
        if not options.ignore_input:
            _process_input(span, fn, args, kwargs, options.ignore_inputs)
        try:
            yield span
        except Exception as e:
            _process_exception(span, e)
            span.end()
            raise
        finally:
            context_api.detach(ctx_token)


def _observe_base(fn: Callable, options: _ObserveOptions) -> Callable:
    if is_async(fn):

        @wraps(fn)
        async def async_wrap(*args, **kwargs):
            with _observed_call(options, fn, args, kwargs) as span:
                res = await fn(*args, **kwargs)
            if span is None:
                return res
            return _finish(span, res, options.ignore_output)

        return async_wrap

    @wraps(fn)
    def wrap(*args, **kwargs):
        with _observed_call(options, fn, args, kwargs) as span:
            res = fn(*args, **kwargs)
        if span is None:
            return res
        return _finish(span, res, options.ignore_output)

    return wrap


@overload
def observe(
    *,
    name: str | None = None,
    ignore_input: bool = False,
    ignore_output: bool = False,
    span_type: Literal["DEFAULT", "LLM", "TOOL"] = "DEFAULT",
    ignore_inputs: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
    rollout_entrypoint: bool = False,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


@overload
def observe(
    *,
    name: str | None = None,
    ignore_input: bool = False,
    ignore_output: bool = False,
    span_type: Literal["DEFAULT", "LLM", "TOOL"] = "DEFAULT",
    ignore_inputs: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
    rollout_entrypoint: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]: ...


def observe(
    *,
    name: str | None = None,
    ignore_input: bool = False,
    ignore_output: bool = False,
    span_type: Literal["DEFAULT", "LLM", "TOOL"] = "DEFAULT",
    ignore_inputs: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
    rollout_entrypoint: bool = False,
):
    """Wrap a function or method in a span.

    Args:
        name (str | None, optional): Name of the span. Function name is used if\
            not specified. Also the segment this call contributes to the call\
            path of any provider call made inside it. Defaults to None.
        ignore_input (bool, optional): Whether to ignore ALL input of the\
            wrapped function. Defaults to False.
        ignore_output (bool, optional): Whether to ignore ALL output of the\
            wrapped function. Defaults to False.
        span_type (Literal["DEFAULT", "LLM", "TOOL"], optional): Type of the span.
            Defaults to "DEFAULT".
        ignore_inputs (list[str] | None, optional): List of argument names to\
            leave out of the recorded input. Defaults to None.
        metadata (dict[str, Any] | None, optional): Metadata to associate with\
            the span. Must be JSON serializable. Defaults to None.
        rollout_entrypoint (bool, optional): Mark the function as a rollout\
            entry point. Entry points are found by reading the module source,\
            so the marker must be written literally, as a decorator or a\
            wrapping call assigned to a module-level name. Defaults to False.

    Raises:
        Exception: re-raises the exception if the wrapped function raises an\
            exception

    Returns:
        R: Returns the result of the wrapped function. Streamed results are\
            returned as an equivalent stream; the span ends once it has been\
            consumed.
    """

    def decorator(
        func: Callable[P, R] | Callable[P, Coroutine[Any, Any, R]],
    ) -> Callable[P, R] | Callable[P, Coroutine[Any, Any, R]]:
        options = _ObserveOptions(
            span_name=name or func.__name__,
            span_type=span_type,
            ignore_input=ignore_input,
            ignore_inputs=ignore_inputs,
            ignore_output=ignore_output,
            rollout_entrypoint=rollout_entrypoint,
            metadata=metadata,
        )
        wrapped = _observe_base(func, options)
        if rollout_entrypoint:
            setattr(wrapped, ENTRYPOINT_MARKER, name or func.__name__)
        return wrapped

    return decorator
