import textwrap
from typing import Generator

import pytest
from opentelemetry import context as context_api
from opentelemetry.context import Context
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from lmnr_rollout.sdk import tracing
from lmnr_rollout.sdk.tracing import TracerWrapper

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(scope="function")
def span_exporter() -> Generator[InMemorySpanExporter, None, None]:
    exporter = InMemorySpanExporter()
    TracerWrapper.clear()
    tracing.initialize(
        exporter=exporter,
        disable_batch=True,
        set_global_tracer_provider=False,
    )

    yield exporter

    TracerWrapper.clear()
    exporter.clear()


@pytest.fixture(scope="function", autouse=True)
def clean_context():
    # Spans from one test must not become parents of spans in another test
    token = context_api.attach(Context())
    yield
    context_api.detach(token)


@pytest.fixture
def write_module(tmp_path):
    """Write a dedented Python module into tmp_path and return its path."""

    def write(source: str, name: str = "agent.py") -> str:
        path = tmp_path / name
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return str(path)

    return write
