"""
Interception of language-model provider calls during a rollout.

Wrapped methods ask the cache client what to do with each call: replay the
recorded response (Hit), run live with the path's system prompt and tool
overrides merged into the request (Override), or run live and record the
response for later runs (Miss).
"""

import copy
import functools
import importlib
import importlib.util
from dataclasses import dataclass
from typing import Any, Callable

import pydantic
import wrapt

from lmnr_rollout.sdk.decorators import current_span_path
from lmnr_rollout.sdk.log import get_default_logger
from lmnr_rollout.sdk.rollout.cache_client import CacheClient
from lmnr_rollout.sdk.stream_tee import tee_stream, track_capture
from lmnr_rollout.sdk.types import (
    CachedSpan,
    CallSiteIdentity,
    Hit,
    LanguageModelTextBlock,
    LanguageModelToolDefinitionOverride,
    Override,
)
from lmnr_rollout.sdk.utils import is_async, serialize, try_parse_json

logger = get_default_logger(__name__)

STREAMED_ATTRIBUTE = "lmnr.rollout.streamed"


def normalize_system_override(
    system: str | list[LanguageModelTextBlock] | None,
) -> str | None:
    if not system:
        return None
    if isinstance(system, str):
        return system
    return "\n".join(block.get("text", "") for block in system)


def merge_tool_overrides(
    tools: list[dict[str, Any]] | None,
    overrides: list[LanguageModelToolDefinitionOverride] | None,
    get_name: Callable[[dict[str, Any]], str | None],
    build: Callable[[LanguageModelToolDefinitionOverride], dict[str, Any]],
    merge: Callable[[dict[str, Any], LanguageModelToolDefinitionOverride], dict],
) -> list[dict[str, Any]] | None:
    """Merge tool overrides into a provider's tool list.

    Overrides for tools that already exist take priority field by field. New
    tools are added only when the override carries a parameter schema.
    """
    if not overrides:
        return tools
    updated = list(tools or [])
    for override in overrides:
        index = next(
            (i for i, tool in enumerate(updated) if get_name(tool) == override["name"]),
            None,
        )
        if index is not None:
            updated[index] = merge(updated[index], override)
        elif override.get("parameters"):
            updated.append(build(override))
    return updated or None


@dataclass(frozen=True)
class ProviderProfile:
    """How to intercept one provider call shape."""

    span_name: str
    apply_overrides: Callable[[dict[str, Any], Override], dict[str, Any]]
    is_streaming: Callable[[dict[str, Any]], bool] = lambda kwargs: bool(
        kwargs.get("stream")
    )
    # optional: turn a recorded output back into the provider's response type
    response_type: Callable[[Any], Any] | None = None
    # same for each recorded chunk of a streamed response
    chunk_type: Callable[[Any], Any] | None = None


@functools.lru_cache(maxsize=None)
def _resolve_validator(module: str, name: str) -> Callable[[Any], Any] | None:
    try:
        target = getattr(importlib.import_module(module), name)
    except (ImportError, AttributeError) as e:
        logger.debug(f"Replayed outputs stay dicts, {module}.{name} is unavailable: {e}")
        return None
    if hasattr(target, "model_validate"):
        return target.model_validate
    # unions of event models
    try:
        return pydantic.TypeAdapter(target).validate_python
    except pydantic.PydanticUserError as e:
        logger.debug(f"Replayed outputs stay dicts, cannot validate {name}: {e}")
        return None


def provider_type(module: str, name: str) -> Callable[[Any], Any]:
    """
    Validator that rebuilds a recorded output as `module.name`.

    The type is imported on first use, so profiles can name provider SDK types
    whether or not the SDK is installed. Outputs that do not validate are
    returned unchanged.
    """

    def validate(data: Any) -> Any:
        validator = _resolve_validator(module, name)
        if validator is None:
            return data
        try:
            return validator(data)
        except pydantic.ValidationError as e:
            logger.debug(f"Failed to validate {name}, returning dict: {e}")
            return data

    return validate


# ---------------------------------------------------------------------------
# OpenAI chat completions
# ---------------------------------------------------------------------------


def _openai_tool_name(tool: dict[str, Any]) -> str | None:
    if tool.get("type") != "function":
        return None
    return (tool.get("function") or {}).get("name")


def _openai_build_tool(override: LanguageModelToolDefinitionOverride) -> dict:
    function = {"name": override["name"], "parameters": override["parameters"]}
    if override.get("description") is not None:
        function["description"] = override["description"]
    return {"type": "function", "function": function}


def _openai_merge_tool(tool: dict, override: LanguageModelToolDefinitionOverride):
    function = dict(tool.get("function") or {})
    if override.get("description") is not None:
        function["description"] = override["description"]
    if override.get("parameters"):
        function["parameters"] = override["parameters"]
    return {**tool, "function": function}


def _openai_chat_overrides(kwargs: dict[str, Any], override: Override) -> dict:
    kwargs = dict(kwargs)
    if system := normalize_system_override(override.system):
        messages = [
            m for m in kwargs.get("messages") or [] if m.get("role") != "system"
        ]
        kwargs["messages"] = [{"role": "system", "content": system}, *messages]
    if override.tools:
        tools = merge_tool_overrides(
            kwargs.get("tools"),
            override.tools,
            _openai_tool_name,
            _openai_build_tool,
            _openai_merge_tool,
        )
        if tools is not None:
            kwargs["tools"] = tools
    return kwargs


OPENAI_CHAT = ProviderProfile(
    span_name="openai.chat",
    apply_overrides=_openai_chat_overrides,
    response_type=provider_type("openai.types.chat", "ChatCompletion"),
    chunk_type=provider_type("openai.types.chat", "ChatCompletionChunk"),
)


# ---------------------------------------------------------------------------
# Anthropic messages
# ---------------------------------------------------------------------------


def _anthropic_build_tool(override: LanguageModelToolDefinitionOverride) -> dict:
    tool = {"name": override["name"], "input_schema": override["parameters"]}
    if override.get("description") is not None:
        tool["description"] = override["description"]
    return tool


def _anthropic_merge_tool(tool: dict, override: LanguageModelToolDefinitionOverride):
    tool = dict(tool)
    if override.get("description") is not None:
        tool["description"] = override["description"]
    if override.get("parameters"):
        tool["input_schema"] = override["parameters"]
    return tool


def _anthropic_messages_overrides(kwargs: dict[str, Any], override: Override) -> dict:
    kwargs = dict(kwargs)
    if system := normalize_system_override(override.system):
        kwargs["system"] = system
    if override.tools:
        tools = merge_tool_overrides(
            kwargs.get("tools"),
            override.tools,
            lambda tool: tool.get("name"),
            _anthropic_build_tool,
            _anthropic_merge_tool,
        )
        if tools is not None:
            kwargs["tools"] = tools
    return kwargs


ANTHROPIC_MESSAGES = ProviderProfile(
    span_name="anthropic.chat",
    apply_overrides=_anthropic_messages_overrides,
    response_type=provider_type("anthropic.types", "Message"),
    chunk_type=provider_type("anthropic.types", "RawMessageStreamEvent"),
)


# ---------------------------------------------------------------------------
# Wrapper
# ---------------------------------------------------------------------------


async def _replay_async(chunks: list[Any]):
    for chunk in chunks:
        yield chunk


def _replay_sync(chunks: list[Any]):
    yield from chunks


class RolloutInstrumentationWrapper:
    """
    Wraps provider methods so that every call goes through the cache client.

    Without a cache client the wrapped methods call straight through.
    """

    def __init__(self, cache_client: CacheClient | None = None):
        self.cache_client = cache_client
        self._originals: list[tuple[Any, str, Any]] = []

    def get_span_path(self, profile: ProviderProfile) -> str:
        """Dot-separated path of the call, e.g. "agent.plan.openai.chat"."""
        return ".".join((*current_span_path(), profile.span_name))

    def wrap_methods(
        self,
        module: str | Any,
        object_name: str,
        method_names: list[str],
        profile: ProviderProfile,
    ) -> None:
        """Wrap `object_name.method` for every method name in `module`."""
        for method_name in method_names:
            name = f"{object_name}.{method_name}"
            parent, attribute, original = wrapt.resolve_path(module, name)
            self._originals.append((parent, attribute, original))
            wrapt.wrap_function_wrapper(module, name, self._make_wrapper(profile))
            logger.debug(f"Wrapped {name} as {profile.span_name}")

    def unwrap_all(self) -> None:
        while self._originals:
            parent, attribute, original = self._originals.pop()
            setattr(parent, attribute, original)

    def _make_wrapper(self, profile: ProviderProfile):
        def wrapper(wrapped, instance, args, kwargs):
            if self.cache_client is None:
                return wrapped(*args, **kwargs)
            # wrapt hands over bound methods; is_async looks at plain functions
            if is_async(getattr(wrapped, "__func__", wrapped)):
                return self._acall(profile, wrapped, args, kwargs)
            return self._call(profile, wrapped, args, kwargs)

        return wrapper

    def _replay(
        self,
        profile: ProviderProfile,
        span: CachedSpan,
        streaming: bool,
        asynchronous: bool,
    ):
        output = try_parse_json(span.get("output"))
        if streaming:
            chunks = output if isinstance(output, list) else [output]
            if profile.chunk_type is not None:
                chunks = [profile.chunk_type(copy.deepcopy(c)) for c in chunks]
            return _replay_async(chunks) if asynchronous else _replay_sync(chunks)
        if profile.response_type is not None:
            return profile.response_type(copy.deepcopy(output))
        return output

    def _record(
        self,
        profile: ProviderProfile,
        identity: CallSiteIdentity,
        kwargs: dict[str, Any],
        response: Any,
        streaming: bool,
    ) -> Any:
        """Record the live response; streamed responses once fully read.
        Returns what the caller should receive."""

        def span_for(output: Any) -> CachedSpan:
            return {
                "name": profile.span_name,
                "input": serialize(kwargs),
                "output": serialize(output),
                "attributes": {STREAMED_ATTRIBUTE: streaming},
            }

        if not streaming:
            self._schedule(identity, span_for(response))
            return response

        passthrough, capture = tee_stream(response)

        def on_captured(future):
            captured = future.result()
            if captured.error is not None:
                logger.debug(
                    f"Not recording {identity.key}: stream failed ({captured.error})"
                )
                return
            self._schedule(identity, span_for(captured.chunks))

        track_capture(capture).add_done_callback(on_captured)
        return passthrough

    def _schedule(self, identity: CallSiteIdentity, span: CachedSpan) -> None:
        future = self.cache_client.schedule_record(identity, span)
        if future is not None:
            track_capture(future)

    async def _acall(self, profile, wrapped, args, kwargs):
        identity = self.cache_client.next_identity(self.get_span_path(profile))
        streaming = profile.is_streaming(kwargs)
        result = await self.cache_client.lookup(identity, kwargs)
        if isinstance(result, Hit):
            logger.debug(f"Replaying {identity.key}")
            return self._replay(profile, result.span, streaming, asynchronous=True)
        if isinstance(result, Override):
            kwargs = profile.apply_overrides(kwargs, result)
        response = await wrapped(*args, **kwargs)
        return self._record(profile, identity, kwargs, response, streaming)

    def _call(self, profile, wrapped, args, kwargs):
        identity = self.cache_client.next_identity(self.get_span_path(profile))
        streaming = profile.is_streaming(kwargs)
        result = self.cache_client.lookup_sync(identity, kwargs)
        if isinstance(result, Hit):
            logger.debug(f"Replaying {identity.key}")
            return self._replay(profile, result.span, streaming, asynchronous=False)
        if isinstance(result, Override):
            kwargs = profile.apply_overrides(kwargs, result)
        response = wrapped(*args, **kwargs)
        return self._record(profile, identity, kwargs, response, streaming)


# (module, object, methods, profile) for the providers wrapped by default
KNOWN_PROVIDERS: list[tuple[str, str, list[str], ProviderProfile]] = [
    ("openai.resources.chat.completions", "Completions", ["create"], OPENAI_CHAT),
    ("openai.resources.chat.completions", "AsyncCompletions", ["create"], OPENAI_CHAT),
    ("anthropic.resources.messages", "Messages", ["create"], ANTHROPIC_MESSAGES),
    ("anthropic.resources.messages", "AsyncMessages", ["create"], ANTHROPIC_MESSAGES),
]


def instrument_known_providers(wrapper: RolloutInstrumentationWrapper) -> list[str]:
    """Wrap the provider clients that are installed. Returns the wrapped
    "module:object" names."""
    instrumented = []
    for module, object_name, methods, profile in KNOWN_PROVIDERS:
        package = module.split(".", 1)[0]
        if importlib.util.find_spec(package) is None:
            continue
        try:
            wrapper.wrap_methods(module, object_name, methods, profile)
        except (ImportError, AttributeError) as e:
            # client layouts differ between provider SDK versions
            logger.debug(f"Could not instrument {module}.{object_name}: {e}")
            continue
        instrumented.append(f"{module}:{object_name}")
    return instrumented
