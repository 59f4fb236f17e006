"""
Tests for provider call interception: replay, overrides and recording.
"""

import asyncio
import json
import types
from unittest.mock import AsyncMock, Mock, patch

import pydantic
import pytest

from lmnr_rollout import observe
from lmnr_rollout.sdk.rollout.cache_client import CacheClient
from lmnr_rollout.sdk.rollout.cache_server import CacheServer
from lmnr_rollout.sdk.rollout.instrumentation import (
    ANTHROPIC_MESSAGES,
    OPENAI_CHAT,
    ProviderProfile,
    RolloutInstrumentationWrapper,
    instrument_known_providers,
    merge_tool_overrides,
    normalize_system_override,
    provider_type,
)
from lmnr_rollout.sdk.stream_tee import wait_for_pending_captures
from lmnr_rollout.sdk.types import CallSiteIdentity, Hit, Miss, Override

SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": "search",
        "description": "old description",
        "parameters": {"type": "object", "properties": {}},
    },
}


def _provider():
    """A provider SDK shaped namespace with sync and async clients."""

    class Completions:
        def create(self, **kwargs):
            return {"live": kwargs}

    class AsyncCompletions:
        async def create(self, **kwargs):
            await asyncio.sleep(kwargs.pop("delay", 0))
            if kwargs.get("stream"):
                return _chunks(["a", "b", "c"])
            return {"live": kwargs}

    return types.SimpleNamespace(
        Completions=Completions, AsyncCompletions=AsyncCompletions
    )


async def _chunks(items):
    for item in items:
        yield item


def _cache_client(lookup_result=None):
    client = CacheClient("http://cache.test")
    client.lookup = AsyncMock(return_value=lookup_result or Miss())
    client.lookup_sync = Mock(return_value=lookup_result or Miss())
    client.schedule_record = Mock(return_value=None)
    return client


@pytest.fixture
def provider():
    return _provider()


def _wrap(provider, cache_client):
    wrapper = RolloutInstrumentationWrapper(cache_client)
    wrapper.wrap_methods(provider, "Completions", ["create"], OPENAI_CHAT)
    wrapper.wrap_methods(provider, "AsyncCompletions", ["create"], OPENAI_CHAT)
    return wrapper


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


def test_normalize_system_override():
    assert normalize_system_override(None) is None
    assert normalize_system_override("") is None
    assert normalize_system_override("plain") == "plain"
    assert (
        normalize_system_override(
            [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}]
        )
        == "one\ntwo"
    )


def test_merge_tool_overrides_without_overrides_keeps_tools():
    tools = [{"name": "a"}]

    assert merge_tool_overrides(tools, None, Mock(), Mock(), Mock()) is tools


def test_openai_overrides_replace_system_and_merge_tools():
    kwargs = {
        "model": "gpt-4o",
        "messages": [
            {"role": "system", "content": "old"},
            {"role": "user", "content": "hi"},
            {"role": "system", "content": "older"},
        ],
        "tools": [SEARCH_TOOL],
    }
    override = Override(
        system=[{"type": "text", "text": "new system"}],
        tools=[
            {"name": "search", "description": "better description"},
            {"name": "fetch", "parameters": {"type": "object"}},
            {"name": "no_schema", "description": "ignored"},
        ],
    )

    updated = OPENAI_CHAT.apply_overrides(kwargs, override)

    assert updated["messages"] == [
        {"role": "system", "content": "new system"},
        {"role": "user", "content": "hi"},
    ]
    assert updated["tools"] == [
        {
            "type": "function",
            "function": {
                "name": "search",
                "description": "better description",
                "parameters": {"type": "object", "properties": {}},
            },
        },
        {
            "type": "function",
            "function": {"name": "fetch", "parameters": {"type": "object"}},
        },
    ]
    # the caller's request is left untouched
    assert kwargs["messages"][0]["content"] == "old"
    assert kwargs["tools"] == [SEARCH_TOOL]


def test_anthropic_overrides_set_system_and_input_schema():
    kwargs = {
        "model": "claude",
        "system": "old",
        "tools": [{"name": "search", "input_schema": {"type": "object"}}],
    }
    override = Override(
        system="new",
        tools=[
            {"name": "search", "parameters": {"type": "object", "required": ["q"]}},
            {"name": "calc", "description": "math", "parameters": {"type": "object"}},
        ],
    )

    updated = ANTHROPIC_MESSAGES.apply_overrides(kwargs, override)

    assert updated["system"] == "new"
    assert updated["tools"] == [
        {"name": "search", "input_schema": {"type": "object", "required": ["q"]}},
        {"name": "calc", "input_schema": {"type": "object"}, "description": "math"},
    ]


# ---------------------------------------------------------------------------
# Wrapper
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_without_cache_client_calls_through(provider):
    wrapper = _wrap(provider, None)

    result = await provider.AsyncCompletions().create(model="m")

    assert result == {"live": {"model": "m"}}
    wrapper.unwrap_all()


def test_unwrap_all_restores_originals(provider):
    original = provider.Completions.__dict__["create"]
    wrapper = _wrap(provider, _cache_client())
    assert provider.Completions.__dict__["create"] is not original

    wrapper.unwrap_all()

    assert provider.Completions.__dict__["create"] is original


@pytest.mark.asyncio
async def test_hit_is_replayed_without_calling_provider(provider):
    span = {
        "name": "openai.chat",
        "input": {},
        "output": '{"id": "cached"}',
        "attributes": {},
    }
    cache_client = _cache_client(Hit(span))
    _wrap(provider, cache_client)

    result = await provider.AsyncCompletions().create(model="m")

    # recorded output is JSON text; the live response would be {"live": ...}
    assert result == {"id": "cached"}
    cache_client.schedule_record.assert_not_called()


@pytest.mark.asyncio
async def test_streamed_hit_is_replayed_as_stream(provider):
    span = {"name": "openai.chat", "input": {}, "output": ["x", "y"], "attributes": {}}
    _wrap(provider, _cache_client(Hit(span)))

    stream = await provider.AsyncCompletions().create(model="m", stream=True)

    assert [chunk async for chunk in stream] == ["x", "y"]


def test_sync_hit_uses_lookup_sync(provider):
    span = {"name": "openai.chat", "input": {}, "output": "cached", "attributes": {}}
    cache_client = _cache_client(Hit(span))
    _wrap(provider, cache_client)

    result = provider.Completions().create(model="m")

    assert result == "cached"
    cache_client.lookup_sync.assert_called_once()
    identity, request = cache_client.lookup_sync.call_args.args
    assert identity == CallSiteIdentity("openai.chat", 0)
    assert request == {"model": "m"}


class CachedMessage(pydantic.BaseModel):
    role: str
    content: str


class CachedChoice(pydantic.BaseModel):
    index: int
    message: CachedMessage


class CachedCompletion(pydantic.BaseModel):
    id: str
    choices: list[CachedChoice]


class CachedChunk(pydantic.BaseModel):
    id: str
    delta: str


TYPED_CHAT = ProviderProfile(
    span_name="openai.chat",
    apply_overrides=OPENAI_CHAT.apply_overrides,
    response_type=provider_type(__name__, "CachedCompletion"),
    chunk_type=provider_type(__name__, "CachedChunk"),
)

COMPLETION = {
    "id": "cmpl-1",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "hello"}}],
}


def _typed(provider, cache_client):
    wrapper = RolloutInstrumentationWrapper(cache_client)
    wrapper.wrap_methods(provider, "Completions", ["create"], TYPED_CHAT)
    wrapper.wrap_methods(provider, "AsyncCompletions", ["create"], TYPED_CHAT)
    return wrapper


@pytest.mark.asyncio
async def test_hit_is_replayed_as_response_type(provider):
    span = {
        "name": "openai.chat",
        "input": {},
        "output": json.dumps(COMPLETION),
        "attributes": {},
    }
    _typed(provider, _cache_client(Hit(span)))

    result = await provider.AsyncCompletions().create(model="m")

    assert isinstance(result, CachedCompletion)
    assert result.choices[0].message.content == "hello"


def test_sync_hit_is_replayed_as_response_type(provider):
    span = {"name": "openai.chat", "input": {}, "output": COMPLETION, "attributes": {}}
    _typed(provider, _cache_client(Hit(span)))

    result = provider.Completions().create(model="m")

    assert result.choices[0].message.content == "hello"
    # the recorded span is left untouched
    assert span["output"] == COMPLETION


@pytest.mark.asyncio
async def test_streamed_hit_is_replayed_as_chunk_type(provider):
    chunks = [{"id": "c", "delta": "hel"}, {"id": "c", "delta": "lo"}]
    span = {"name": "openai.chat", "input": {}, "output": chunks, "attributes": {}}
    _typed(provider, _cache_client(Hit(span)))

    stream = await provider.AsyncCompletions().create(model="m", stream=True)
    replayed = [chunk async for chunk in stream]

    assert all(isinstance(chunk, CachedChunk) for chunk in replayed)
    assert "".join(chunk.delta for chunk in replayed) == "hello"


@pytest.mark.asyncio
async def test_output_that_does_not_validate_is_replayed_as_recorded(provider):
    span = {
        "name": "openai.chat",
        "input": {},
        "output": {"unexpected": 1},
        "attributes": {},
    }
    _typed(provider, _cache_client(Hit(span)))

    result = await provider.AsyncCompletions().create(model="m")

    assert result == {"unexpected": 1}


def test_provider_type_without_the_sdk_returns_data():
    validate = provider_type("lmnr_rollout_missing_sdk.types", "Completion")

    assert validate({"id": "x"}) == {"id": "x"}


def test_openai_outputs_validate_as_openai_types():
    chat = pytest.importorskip("openai.types.chat")

    completion = OPENAI_CHAT.response_type(
        {
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "created": 1,
            "model": "gpt-4o",
            "choices": [
                {
                    "index": 0,
                    "finish_reason": "stop",
                    "message": {"role": "assistant", "content": "hi"},
                }
            ],
        }
    )
    chunk = OPENAI_CHAT.chunk_type(
        {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 1,
            "model": "gpt-4o",
            "choices": [{"index": 0, "delta": {"content": "h"}, "finish_reason": None}],
        }
    )

    assert isinstance(completion, chat.ChatCompletion)
    assert completion.choices[0].message.content == "hi"
    assert isinstance(chunk, chat.ChatCompletionChunk)
    assert chunk.choices[0].delta.content == "h"


def test_anthropic_outputs_validate_as_anthropic_types():
    anthropic_types = pytest.importorskip("anthropic.types")

    message = ANTHROPIC_MESSAGES.response_type(
        {
            "id": "msg_1",
            "type": "message",
            "role": "assistant",
            "model": "claude",
            "content": [{"type": "text", "text": "hi"}],
            "stop_reason": "end_turn",
            "stop_sequence": None,
            "usage": {"input_tokens": 1, "output_tokens": 1},
        }
    )
    event = ANTHROPIC_MESSAGES.chunk_type(
        {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": "h"},
        }
    )

    assert isinstance(message, anthropic_types.Message)
    assert message.content[0].text == "hi"
    assert event.type == "content_block_delta"
    assert event.delta.text == "h"


@pytest.mark.asyncio
async def test_miss_runs_live_and_records(provider):
    cache_client = _cache_client(Miss())
    _wrap(provider, cache_client)

    result = await provider.AsyncCompletions().create(model="m")

    assert result == {"live": {"model": "m"}}
    identity, span = cache_client.schedule_record.call_args.args
    assert identity == CallSiteIdentity("openai.chat", 0)
    assert span == {
        "name": "openai.chat",
        "input": {"model": "m"},
        "output": {"live": {"model": "m"}},
        "attributes": {"lmnr.rollout.streamed": False},
    }


@pytest.mark.asyncio
async def test_override_is_applied_to_live_request(provider):
    cache_client = _cache_client(Override(system="be brief"))
    _wrap(provider, cache_client)

    result = await provider.AsyncCompletions().create(
        model="m", messages=[{"role": "user", "content": "hi"}]
    )

    assert result["live"]["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]
    _, span = cache_client.schedule_record.call_args.args
    assert span["input"]["messages"][0]["content"] == "be brief"


@pytest.mark.asyncio
async def test_streamed_miss_is_recorded_once_consumed(provider):
    cache_client = _cache_client(Miss())
    _wrap(provider, cache_client)

    stream = await provider.AsyncCompletions().create(model="m", stream=True)
    cache_client.schedule_record.assert_not_called()

    chunks = [chunk async for chunk in stream]
    await wait_for_pending_captures(timeout=1.0)

    assert chunks == ["a", "b", "c"]
    _, span = cache_client.schedule_record.call_args.args
    assert span["output"] == ["a", "b", "c"]
    assert span["attributes"] == {"lmnr.rollout.streamed": True}


@pytest.mark.asyncio
async def test_call_path_follows_observed_functions(provider):
    cache_client = _cache_client(Miss())
    _wrap(provider, cache_client)

    @observe(name="agent")
    async def agent():
        return await plan()

    @observe(name="plan")
    async def plan():
        return await provider.AsyncCompletions().create(model="m")

    await agent()

    identity, _ = cache_client.lookup.call_args.args
    assert identity == CallSiteIdentity("agent.plan.openai.chat", 0)


@pytest.mark.asyncio
async def test_concurrent_calls_get_indices_in_call_order(provider):
    cache_client = _cache_client(Miss())
    _wrap(provider, cache_client)

    # the first call finishes last
    await asyncio.gather(
        provider.AsyncCompletions().create(model="first", delay=0.05),
        provider.AsyncCompletions().create(model="second", delay=0),
    )

    recorded = {
        identity.index: span["input"]["model"]
        for (identity, span), _ in cache_client.schedule_record.call_args_list
    }
    assert recorded == {0: "first", 1: "second"}


def test_instrument_known_providers_skips_missing_packages():
    wrapper = RolloutInstrumentationWrapper(_cache_client())

    with patch(
        "lmnr_rollout.sdk.rollout.instrumentation.importlib.util.find_spec",
        return_value=None,
    ):
        assert instrument_known_providers(wrapper) == []
    assert wrapper._originals == []


# ---------------------------------------------------------------------------
# Recording and replay against a cache server
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_recorded_run_is_replayed_in_order_by_a_fresh_session():
    live_calls = []

    class AsyncCompletions:
        async def create(self, **kwargs):
            live_calls.append(kwargs["model"])
            return {"answer": f"live {kwargs['model']}"}

    provider = types.SimpleNamespace(AsyncCompletions=AsyncCompletions)
    server = CacheServer(port=0)
    await server.start()
    try:
        # first run: every call misses, runs live and is recorded
        async with CacheClient(server.get_url(), session_id="first") as client:
            wrapper = RolloutInstrumentationWrapper(client)
            wrapper.wrap_methods(provider, "AsyncCompletions", ["create"], OPENAI_CHAT)
            first = [
                await provider.AsyncCompletions().create(model=f"m{i}")
                for i in range(3)
            ]
            assert await wait_for_pending_captures(timeout=5.0)
            wrapper.unwrap_all()

        assert live_calls == ["m0", "m1", "m2"]

        # second run: fresh session and counters, the same calls hit in order
        async with CacheClient(server.get_url(), session_id="second") as client:
            wrapper = RolloutInstrumentationWrapper(client)
            wrapper.wrap_methods(provider, "AsyncCompletions", ["create"], OPENAI_CHAT)
            second = [
                await provider.AsyncCompletions().create(model=f"m{i}")
                for i in range(3)
            ]
            beyond = await provider.AsyncCompletions().create(model="m3")
            assert await wait_for_pending_captures(timeout=5.0)
            wrapper.unwrap_all()
    finally:
        await server.stop()

    assert second == first == [{"answer": f"live m{i}"} for i in range(3)]
    assert live_calls == ["m0", "m1", "m2", "m3"]
    assert beyond == {"answer": "live m3"}
