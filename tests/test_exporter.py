import pytest

from lmnr_rollout.sdk.tracing import (
    RolloutSpanExporter,
    _with_traces_path,
    resolve_exporter_target,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "LMNR_BASE_URL",
        "LMNR_PROJECT_API_KEY",
        "OTEL_EXPORTER_OTLP_TRACES_ENDPOINT",
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "OTEL_ENDPOINT",
        "OTEL_EXPORTER_OTLP_TRACES_PROTOCOL",
        "OTEL_EXPORTER_OTLP_PROTOCOL",
        "OTEL_PROTOCOL",
        "OTEL_EXPORTER_OTLP_TRACES_HEADERS",
        "OTEL_EXPORTER_OTLP_HEADERS",
        "OTEL_HEADERS",
    ):
        monkeypatch.delenv(key, raising=False)


def test_grpc_target_defaults():
    target = resolve_exporter_target(base_url="https://api.example.com", api_key="k")

    assert target.endpoint == "https://api.example.com:8443"
    assert target.headers == {"authorization": "Bearer k"}
    assert target.use_http is False


def test_http_target_uses_http_port():
    target = resolve_exporter_target(
        base_url="https://api.example.com/",
        http_port=8000,
        grpc_port=9000,
        api_key="k",
        force_http=True,
    )

    assert target.endpoint == "https://api.example.com:8000"
    assert target.headers == {"Authorization": "Bearer k"}
    assert target.use_http is True


def test_port_in_base_url_wins():
    target = resolve_exporter_target(
        base_url="http://localhost:8001", grpc_port=9000, api_key="k"
    )

    assert target.endpoint == "http://localhost:8001"


def test_base_url_from_env(monkeypatch):
    monkeypatch.setenv("LMNR_BASE_URL", "http://collector")
    monkeypatch.setenv("LMNR_PROJECT_API_KEY", "env-key")

    target = resolve_exporter_target(grpc_port=4317)

    assert target.endpoint == "http://collector:4317"
    assert target.headers == {"authorization": "Bearer env-key"}


def test_otel_endpoint_is_used_without_base_url(monkeypatch):
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://otel:4318")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_PROTOCOL", "http/protobuf")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_HEADERS", "x-api-key=abc%20def")

    target = resolve_exporter_target()

    assert target.endpoint == "http://otel:4318"
    assert target.headers == {"x-api-key": "abc def"}
    assert target.use_http is True


def test_otel_endpoint_is_ignored_with_base_url(monkeypatch):
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://otel:4318")

    target = resolve_exporter_target(base_url="http://localhost", grpc_port=8443)

    assert target.endpoint == "http://localhost:8443"


def test_http_exporter_gets_traces_path():
    assert _with_traces_path("http://otel:4318") == "http://otel:4318/v1/traces"
    assert _with_traces_path("http://otel:4318/custom") == "http://otel:4318/custom"

    exporter = RolloutSpanExporter(
        resolve_exporter_target(base_url="http://localhost:8000", force_http=True)
    )
    assert exporter.instance._endpoint == "http://localhost:8000/v1/traces"
