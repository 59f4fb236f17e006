import contextlib
import dataclasses
import datetime
import enum
import inspect
import json
import os
import queue
import typing
import urllib.parse
import uuid

import dotenv
import orjson
import pydantic


def is_method(func: typing.Callable) -> bool:
    # decorators see the plain function, so bound-ness can only be guessed
    # from the name of the first parameter
    names = list(inspect.signature(func).parameters)
    return bool(names) and names[0] in ("self", "cls")


def is_async(func: typing.Callable) -> bool:
    """True for coroutine functions, looking through `functools.wraps`
    wrappers. Bound methods and other callables return False."""
    func = inspect.unwrap(func)
    if not inspect.isfunction(func):
        return False
    if inspect.iscoroutinefunction(func):
        return True
    # decorators that forgot functools.wraps still keep the code flags
    return bool(func.__code__.co_flags & inspect.CO_COROUTINE)


def is_async_iterator(o: typing.Any) -> bool:
    return hasattr(o, "__aiter__") and hasattr(o, "__anext__")


def is_iterator(o: typing.Any) -> bool:
    return hasattr(o, "__iter__") and hasattr(o, "__next__")


def serialize(obj: typing.Any) -> typing.Any:
    """Convert `obj` into something json/orjson can write.

    Containers are converted recursively, records (dataclasses, pydantic
    models) become dicts, and anything unknown falls back to `str()`.
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, (datetime.datetime, datetime.date)):
        return obj.strftime("%Y-%m-%dT%H:%M:%S.%f%z")
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    if isinstance(obj, pydantic.BaseModel):
        return serialize(obj.model_dump())
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return serialize(dataclasses.asdict(obj))
    if isinstance(obj, dict):
        return {_serialize_key(k): serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [serialize(item) for item in obj]
    if isinstance(obj, queue.Queue):
        return type(obj).__name__
    # uuid.UUID and everything else
    return str(obj)


def _serialize_key(key: typing.Any) -> str:
    if isinstance(key, str):
        return key
    value = serialize(key)
    return value if isinstance(value, str) else json.dumps(value)


def json_dumps(data: typing.Any) -> str:
    try:
        return orjson.dumps(data, default=serialize).decode("utf-8")
    except TypeError:
        # orjson refuses e.g. non-str dict keys and integers above 64 bits
        return json.dumps(serialize(data))


def try_parse_json(value: typing.Any) -> typing.Any:
    """Decode `value` if it is a JSON string, otherwise return it as is."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def get_input_from_func_args(
    func: typing.Callable,
    is_method: bool = False,
    func_args: list[typing.Any] | None = None,
    func_kwargs: dict[str, typing.Any] | None = None,
    ignore_inputs: list[str] | None = None,
) -> dict[str, typing.Any]:
    """
    Map the arguments of a call to parameter names, for span inputs.

    Positional arguments are matched against the signature in order; `self`
    and `cls` are left out for methods.
    """
    ignored = set(ignore_inputs or ())
    res = {k: v for k, v in (func_kwargs or {}).items() if k not in ignored}
    func_args = func_args or []
    names = list(inspect.signature(func).parameters)
    for name, value in zip(names, func_args):
        if is_method and name in ("self", "cls"):
            continue
        if name not in ignored:
            res[name] = value
    return res


def from_env(key: str) -> str | None:
    """Read `key` from the environment, falling back to the nearest .env."""
    if val := os.getenv(key):
        return val
    dotenv_path = dotenv.find_dotenv(usecwd=True)
    return dotenv.main.DotEnv(dotenv_path, verbose=False, encoding="utf-8").get(key)


@contextlib.contextmanager
def scoped_environ(overrides: dict[str, str]) -> typing.Iterator[None]:
    """Set environment variables for the duration of the block and restore
    the previous values (or absence) afterwards."""
    previous = {key: os.environ.get(key) for key in overrides}
    os.environ.update(overrides)
    try:
        yield
    finally:
        for key, value in previous.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


def is_otel_attribute_value_type(value: typing.Any) -> bool:
    """OpenTelemetry attributes are primitives or homogeneous sequences of
    primitives."""
    primitives = (int, float, str, bool)
    if isinstance(value, primitives):
        return True
    if not isinstance(value, typing.Sequence):
        return False
    if not value:
        return True
    first = type(value[0])
    return isinstance(value[0], primitives) and all(
        isinstance(v, first) for v in value
    )


def get_otel_env_var(var_name: str) -> str | None:
    """Look up an OTLP exporter setting, most specific variable first:
    OTEL_EXPORTER_OTLP_TRACES_<NAME>, OTEL_EXPORTER_OTLP_<NAME>, OTEL_<NAME>.
    """
    for prefix in ("OTEL_EXPORTER_OTLP_TRACES_", "OTEL_EXPORTER_OTLP_", "OTEL_"):
        if value := from_env(prefix + var_name):
            return value
    return None


def parse_otel_headers(headers_str: str | None) -> dict[str, str]:
    """Parse `key1=value1,key2=value2` with URL-encoded values. Pairs
    without `=` are skipped."""
    if not headers_str:
        return {}
    headers = {}
    for pair in headers_str.split(","):
        key, sep, value = pair.partition("=")
        if sep:
            headers[key.strip()] = urllib.parse.unquote(value.strip())
    return headers
