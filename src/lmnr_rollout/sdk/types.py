from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Literal, TypedDict, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)
from typing_extensions import NotRequired

from lmnr_rollout.sdk.errors import ConfigParseFailure


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


class ParameterSpec(BaseModel):
    """Shape of one entry point parameter as seen by the rollout caller."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str | None = None
    required: bool = True
    default: str | None = None
    nested: list["ParameterSpec"] = Field(default_factory=list)
    # how the worker passes the value in the call
    kind: Literal["positional", "keyword", "var_positional", "var_keyword"] = (
        "keyword"
    )

    def to_metadata(self) -> dict[str, Any]:
        """Wire representation used by the rollout UI, omitting empty fields."""
        data: dict[str, Any] = {"name": self.name, "required": self.required}
        if self.type is not None:
            data["type"] = self.type
        if self.default is not None:
            data["default"] = self.default
        if self.nested:
            data["nested"] = [p.to_metadata() for p in self.nested]
        return data


@dataclass(frozen=True)
class EntryPointFunction:
    name: str
    export_name: str
    params: tuple[ParameterSpec, ...] = ()
    fn: Callable[..., Any] | None = field(default=None, compare=False)

    def bind(self, fn: Callable[..., Any]) -> "EntryPointFunction":
        return EntryPointFunction(
            name=self.name, export_name=self.export_name, params=self.params, fn=fn
        )

    def to_metadata(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "exportName": self.export_name,
            "params": [p.to_metadata() for p in self.params],
        }


# ---------------------------------------------------------------------------
# Worker configuration and protocol
# ---------------------------------------------------------------------------


class WorkerConfig(BaseModel):
    """Configuration sent to the worker process as a single line on stdin."""

    model_config = ConfigDict(populate_by_name=True)

    file_path: str | None = Field(default=None, alias="filePath")
    module_path: str | None = Field(default=None, alias="modulePath")
    function_name: str | None = Field(default=None, alias="functionName")
    args: dict[str, Any] | list[Any] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    cache_server_host: str = Field(default="127.0.0.1", alias="cacheServerHost")
    cache_server_port: int | None = Field(default=None, alias="cacheServerPort")
    base_url: str = Field(default="https://api.lmnr.ai", alias="baseUrl")
    project_api_key: str | None = Field(default=None, alias="projectApiKey")
    http_port: int | None = Field(default=None, alias="httpPort")
    grpc_port: int | None = Field(default=None, alias="grpcPort")
    external_packages: list[str] = Field(
        default_factory=list, alias="externalPackages"
    )
    dynamic_imports_to_skip: list[str] = Field(
        default_factory=list, alias="dynamicImportsToSkip"
    )
    session_id: str | None = Field(default=None, alias="sessionId")
    project_id: str | None = Field(default=None, alias="projectId")
    handshake_failure: Literal["miss", "abort"] = Field(
        default="miss", alias="handshakeFailure"
    )
    handshake_timeout: float = Field(default=5.0, alias="handshakeTimeout")

    @property
    def cache_server_url(self) -> str | None:
        if self.cache_server_port is None:
            return None
        return f"http://{self.cache_server_host}:{self.cache_server_port}"

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True) + "\n"

    @classmethod
    def from_line(cls, line: str) -> "WorkerConfig":
        try:
            return cls.model_validate_json(line)
        except ValidationError as e:
            raise ConfigParseFailure(f"Failed to parse config: {e}") from e


class LogMessage(BaseModel):
    type: Literal["log"] = "log"
    level: Literal["info", "debug", "warn", "error"]
    message: str


class ResultMessage(BaseModel):
    type: Literal["result"] = "result"
    data: Any = None


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str = Field(validation_alias=AliasChoices("message", "error"))
    stack: str | None = None


WorkerMessage = Annotated[
    Union[LogMessage, ResultMessage, ErrorMessage], Field(discriminator="type")
]
WORKER_MESSAGE_ADAPTER: TypeAdapter[WorkerMessage] = TypeAdapter(WorkerMessage)


# ---------------------------------------------------------------------------
# Cache service
# ---------------------------------------------------------------------------


class LanguageModelTextBlock(TypedDict):
    type: Literal["text"]
    text: str


class LanguageModelToolDefinitionOverride(TypedDict):
    name: str
    description: NotRequired[str | None]
    parameters: NotRequired[dict[str, Any]]


class RolloutPathOverride(TypedDict, total=False):
    system: str | list[LanguageModelTextBlock]
    tools: list[LanguageModelToolDefinitionOverride]


class CachedSpan(TypedDict):
    name: str
    input: Any
    output: Any
    attributes: dict[str, Any]


class CacheServerResponse(TypedDict):
    pathToCount: dict[str, int]
    overrides: NotRequired[dict[str, RolloutPathOverride]]
    span: NotRequired[CachedSpan | None]


@dataclass(frozen=True)
class CallSiteIdentity:
    path: str
    index: int

    @property
    def key(self) -> str:
        # index first, so that paths may themselves contain colons
        return f"{self.index}:{self.path}"

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "index": self.index}


@dataclass(frozen=True)
class Hit:
    span: CachedSpan


@dataclass(frozen=True)
class Override:
    system: str | list[LanguageModelTextBlock] | None = None
    tools: list[LanguageModelToolDefinitionOverride] | None = None


@dataclass(frozen=True)
class Miss:
    pass


CacheLookupResult = Union[Hit, Override, Miss]
