import atexit
import logging
import re
import threading
from dataclasses import dataclass
from urllib.parse import urlparse, urlunparse

import grpc
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.http import Compression as HTTPCompression
from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
    OTLPSpanExporter as HTTPOTLPSpanExporter,
)
from opentelemetry.context import Context
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, Span, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
    SpanExportResult,
    SpanProcessor,
)

from lmnr_rollout.sdk.log import get_default_logger
from lmnr_rollout.sdk.stream_tee import (
    PENDING_CAPTURES_TIMEOUT,
    wait_for_pending_captures,
)
from lmnr_rollout.sdk.utils import from_env, get_otel_env_var, parse_otel_headers
from lmnr_rollout.version import PYTHON_VERSION, __version__

logger = get_default_logger(__name__)

TRACER_NAME = "lmnr_rollout.tracer"
SHUTDOWN_TIMEOUT = 5.0

SPAN_INPUT = "lmnr.span.input"
SPAN_OUTPUT = "lmnr.span.output"
SPAN_TYPE = "lmnr.span.type"
SPAN_PATH = "lmnr.span.path"
SPAN_INSTRUMENTATION_SOURCE = "lmnr.span.instrumentation_source"
SPAN_SDK_VERSION = "lmnr.span.sdk_version"
SPAN_LANGUAGE_VERSION = "lmnr.span.language_version"
ROLLOUT_SESSION_ID = "lmnr.rollout.session_id"
ROLLOUT_CALL_INDEX = "lmnr.rollout.call_index"
ROLLOUT_CACHE_STATUS = "lmnr.rollout.cache_status"


DEFAULT_BASE_URL = "https://api.lmnr.ai"
DEFAULT_GRPC_PORT = 8443
DEFAULT_HTTP_PORT = 443


@dataclass
class ExporterTarget:
    endpoint: str
    headers: dict[str, str]
    use_http: bool


def resolve_exporter_target(
    base_url: str | None = None,
    grpc_port: int | None = None,
    http_port: int | None = None,
    api_key: str | None = None,
    force_http: bool = False,
) -> ExporterTarget:
    """
    Work out where spans go and how to authenticate.

    A port embedded in the base URL wins over the explicit ports. Without a
    base URL, a standard OTEL_EXPORTER_OTLP_* endpoint is honoured, along with
    its protocol and headers.
    """
    api_key = api_key or from_env("LMNR_PROJECT_API_KEY")
    otel_endpoint = get_otel_env_var("ENDPOINT")
    if otel_endpoint and not base_url:
        protocol = get_otel_env_var("PROTOCOL") or "grpc/protobuf"
        headers = (
            {"authorization": f"Bearer {api_key}"}
            if api_key
            else parse_otel_headers(get_otel_env_var("HEADERS"))
        )
        return ExporterTarget(
            endpoint=otel_endpoint,
            headers=headers,
            use_http=force_http or protocol in ("http/protobuf", "http/json"),
        )
    if otel_endpoint:
        logger.warning(
            "OTEL_EXPORTER_OTLP_ENDPOINT is ignored because a base URL is set"
        )

    url = (base_url or from_env("LMNR_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
    port = http_port if force_http else grpc_port
    if match := re.search(r":(\d{1,5})$", url):
        url = url[: match.start()]
        port = int(match.group(1))
    if port is None:
        port = DEFAULT_HTTP_PORT if force_http else DEFAULT_GRPC_PORT

    headers = {}
    if api_key:
        # grpc metadata keys must be lowercase
        headers["Authorization" if force_http else "authorization"] = (
            f"Bearer {api_key}"
        )
    return ExporterTarget(endpoint=f"{url}:{port}", headers=headers, use_http=force_http)


def _with_traces_path(endpoint: str) -> str:
    parsed = urlparse(endpoint)
    if parsed.path in ("", "/"):
        return urlunparse(parsed._replace(path="/v1/traces"))
    return endpoint


class RolloutSpanExporter(SpanExporter):
    """OTLP exporter over gRPC, or HTTP when the target asks for it."""

    def __init__(self, target: ExporterTarget, timeout_seconds: int = 30):
        self.target = target
        if target.use_http:
            self.instance = HTTPOTLPSpanExporter(
                endpoint=_with_traces_path(target.endpoint),
                headers=target.headers,
                compression=HTTPCompression.Gzip,
                timeout=timeout_seconds,
            )
        else:
            self.instance = OTLPSpanExporter(
                endpoint=target.endpoint,
                headers=target.headers,
                compression=grpc.Compression.Gzip,
                timeout=timeout_seconds,
            )

    def export(self, spans) -> SpanExportResult:
        return self.instance.export(spans)

    def shutdown(self) -> None:
        self.instance.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self.instance.force_flush(timeout_millis)


class RolloutSpanProcessor(SpanProcessor):
    """Stamps span path and SDK attributes, then delegates to a simple or
    batch processor."""

    instance: BatchSpanProcessor | SimpleSpanProcessor

    def __init__(
        self,
        exporter: SpanExporter,
        disable_batch: bool = False,
        session_id: str | None = None,
    ):
        self.exporter = exporter
        self.session_id = session_id
        self._paths_lock = threading.Lock()
        self._span_id_to_path: dict[int, list[str]] = {}
        self.instance = (
            SimpleSpanProcessor(exporter)
            if disable_batch
            else BatchSpanProcessor(exporter)
        )

    def on_start(self, span: Span, parent_context: Context | None = None):
        with self._paths_lock:
            parent_path = (
                self._span_id_to_path.get(span.parent.span_id) if span.parent else None
            )
            span_path = [*(parent_path or []), span.name]
            self._span_id_to_path[span.get_span_context().span_id] = span_path
        span.set_attribute(SPAN_PATH, span_path)
        span.set_attribute(SPAN_INSTRUMENTATION_SOURCE, "python")
        span.set_attribute(SPAN_SDK_VERSION, __version__)
        span.set_attribute(SPAN_LANGUAGE_VERSION, f"python@{PYTHON_VERSION}")
        if self.session_id:
            span.set_attribute(ROLLOUT_SESSION_ID, self.session_id)
        self.instance.on_start(span, parent_context)

    def on_end(self, span: ReadableSpan):
        with self._paths_lock:
            self._span_id_to_path.pop(span.get_span_context().span_id, None)
        self.instance.on_end(span)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self.instance.force_flush(timeout_millis)

    def shutdown(self) -> None:
        self.instance.shutdown()


class TracerWrapper(object):
    _lock = threading.Lock()
    _tracer_provider: TracerProvider | None = None
    _span_processor: RolloutSpanProcessor

    def __new__(
        cls,
        disable_batch: bool = False,
        exporter: SpanExporter | None = None,
        base_url: str | None = None,
        port: int | None = None,
        http_port: int | None = None,
        project_api_key: str | None = None,
        force_http: bool = False,
        timeout_seconds: int = 30,
        session_id: str | None = None,
        set_global_tracer_provider: bool = True,
        otel_logger_level: int = logging.ERROR,
    ) -> "TracerWrapper":
        # Silence some opentelemetry warnings
        logging.getLogger("opentelemetry.trace").setLevel(otel_logger_level)

        with cls._lock:
            if not hasattr(cls, "instance"):
                obj = super(TracerWrapper, cls).__new__(cls)
                if exporter is None:
                    target = resolve_exporter_target(
                        base_url=base_url,
                        grpc_port=port,
                        http_port=http_port,
                        api_key=project_api_key,
                        force_http=force_http,
                    )
                    exporter = RolloutSpanExporter(target, timeout_seconds)
                obj._span_processor = RolloutSpanProcessor(
                    exporter, disable_batch=disable_batch, session_id=session_id
                )
                provider = TracerProvider(resource=Resource(attributes={}))
                if set_global_tracer_provider and isinstance(
                    trace.get_tracer_provider(), trace.ProxyTracerProvider
                ):
                    trace.set_tracer_provider(provider)
                provider.add_span_processor(obj._span_processor)
                obj._tracer_provider = provider

                cls.instance = obj
                atexit.register(obj.flush)

            return cls.instance

    @classmethod
    def verify_initialized(cls) -> bool:
        return hasattr(cls, "instance") and hasattr(cls.instance, "_span_processor")

    @classmethod
    def clear(cls):
        """Forget the current instance. Used between tests."""
        with cls._lock:
            if hasattr(cls, "instance"):
                del cls.instance

    def get_tracer(self) -> trace.Tracer:
        if self._tracer_provider is None:
            return trace.get_tracer_provider().get_tracer(TRACER_NAME)
        return self._tracer_provider.get_tracer(TRACER_NAME)

    def flush(self, timeout_millis: int = 30000) -> bool:
        return self._span_processor.force_flush(timeout_millis)

    def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT) -> bool:
        """Shut the provider down, giving up after `timeout` seconds.

        Returns False if the exporter did not finish in time.
        """
        if self._tracer_provider is None:
            return True
        provider = self._tracer_provider
        thread = threading.Thread(target=provider.shutdown, daemon=True)
        thread.start()
        thread.join(timeout)
        if thread.is_alive():
            logger.debug(f"Tracing shutdown did not complete within {timeout}s")
            return False
        return True


def initialize(**kwargs) -> TracerWrapper:
    """Initialize tracing once per process; later calls return the existing
    wrapper and ignore their arguments."""
    if TracerWrapper.verify_initialized():
        return TracerWrapper.instance
    return TracerWrapper(**kwargs)


def is_initialized() -> bool:
    return TracerWrapper.verify_initialized()


def get_tracer() -> trace.Tracer:
    if TracerWrapper.verify_initialized():
        return TracerWrapper.instance.get_tracer()
    return trace.get_tracer(TRACER_NAME)


def flush() -> bool:
    if not TracerWrapper.verify_initialized():
        return True
    return TracerWrapper.instance.flush()


async def aflush(capture_timeout: float | None = None) -> bool:
    """Wait (bounded) for streamed outputs still being captured, then flush."""
    await wait_for_pending_captures(
        PENDING_CAPTURES_TIMEOUT if capture_timeout is None else capture_timeout
    )
    return flush()


def shutdown(timeout: float = SHUTDOWN_TIMEOUT) -> bool:
    if not TracerWrapper.verify_initialized():
        return True
    return TracerWrapper.instance.shutdown(timeout)
