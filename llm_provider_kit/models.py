"""Data models for LLM Provider Kit."""

import json
import time
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Role(str, Enum):
    """Message role enumeration."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextPart(BaseModel):
    """Plain text content."""
    type: Literal["text"] = "text"
    text: str


class ImageDataPart(BaseModel):
    """Inline base64 image content."""
    type: Literal["image_data"] = "image_data"
    media_type: str = "image/png"
    data: str


class ImageURLPart(BaseModel):
    """Image referenced by URL."""
    type: Literal["image_url"] = "image_url"
    url: str


class ToolResultPart(BaseModel):
    """Result of a tool invocation, answering an earlier tool call."""
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    content: str = ""
    is_error: bool = False


ContentPart = Annotated[
    Union[TextPart, ImageDataPart, ImageURLPart, ToolResultPart],
    Field(discriminator="type"),
]


class FunctionCall(BaseModel):
    """Function name and JSON-encoded arguments of a tool call."""
    name: str
    arguments: str = "{}"

    @field_validator("arguments", mode="before")
    @classmethod
    def _serialize_arguments(cls, value: Any) -> str:
        # Structured arguments are re-serialized so consumers always parse a string
        if value is None:
            return "{}"
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class FunctionCallDelta(BaseModel):
    """Incremental function call data in a stream chunk."""
    name: str | None = None
    arguments: str = ""


class ToolCallDelta(BaseModel):
    """Incremental tool call data in a stream chunk."""
    index: int = 0
    id: str | None = None
    type: Literal["function"] | None = None
    function: FunctionCallDelta = Field(default_factory=FunctionCallDelta)


class Tool(BaseModel):
    """A tool definition forwarded to the provider."""
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    @model_validator(mode="before")
    @classmethod
    def _unwrap_function_format(cls, data: Any) -> Any:
        # Accept the OpenAI {"type": "function", "function": {...}} shape too
        if isinstance(data, dict) and isinstance(data.get("function"), dict):
            return data["function"]
        return data


class ToolChoice(BaseModel):
    """How the model may use the provided tools."""
    mode: Literal["auto", "required", "none", "specific"] = "auto"
    name: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if isinstance(data, str):
            mode = "required" if data == "any" else data
            return {"mode": mode}
        if isinstance(data, dict) and "mode" not in data:
            function = data.get("function")
            if isinstance(function, dict) and function.get("name"):
                return {"mode": "specific", "name": function["name"]}
            if data.get("type") == "tool" and data.get("name"):
                return {"mode": "specific", "name": data["name"]}
            if data.get("type") in ("auto", "none", "required", "any"):
                return {"mode": "required" if data["type"] == "any" else data["type"]}
        return data

    @model_validator(mode="after")
    def _check_specific(self) -> "ToolChoice":
        if self.mode == "specific" and not self.name:
            raise ValueError("specific tool_choice requires a tool name")
        return self


class ChatMessage(BaseModel):
    """A message in a chat conversation."""
    role: Role
    content: str | list[ContentPart] | None = None
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    model_config = ConfigDict(use_enum_values=True)

    def parts(self) -> list[TextPart | ImageDataPart | ImageURLPart | ToolResultPart]:
        """Return the content as a list of parts."""
        if self.content is None:
            return []
        if isinstance(self.content, str):
            return [TextPart(text=self.content)] if self.content else []
        return list(self.content)

    def text(self) -> str:
        """Concatenate all text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.parts() if isinstance(part, TextPart))

    @property
    def has_images(self) -> bool:
        return any(isinstance(part, (ImageDataPart, ImageURLPart)) for part in self.parts())


class ChatRequest(BaseModel):
    """Normalized chat completion request."""
    model: str
    messages: list[ChatMessage] = Field(min_length=1)
    tools: list[Tool] | None = None
    tool_choice: ToolChoice | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    stream: bool = False
    stop: list[str] | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("stop", mode="before")
    @classmethod
    def _coerce_stop(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @model_validator(mode="after")
    def _check_tool_choice(self) -> "ChatRequest":
        if self.tool_choice is not None and not self.tools:
            raise ValueError("tool_choice requires tools")
        return self

    @property
    def estimated_tokens(self) -> int:
        """Best-effort token estimate used by the rate-limit gate."""
        return self.max_tokens or 0


class Usage(BaseModel):
    """Token usage information."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> "Usage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )


class Choice(BaseModel):
    """A choice in the chat completion response."""
    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class ChatResponse(BaseModel):
    """Normalized non-streaming chat completion response."""
    id: str = ""
    object: str = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str = ""
    choices: list[Choice]
    usage: Usage = Field(default_factory=Usage)
    provider_metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def content(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.text()

    @property
    def tool_calls(self) -> list[ToolCall]:
        if not self.choices:
            return []
        return self.choices[0].message.tool_calls or []


class Delta(BaseModel):
    """Incremental message content."""
    role: str | None = None
    content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None


class ChunkChoice(BaseModel):
    """A choice in a stream chunk."""
    index: int = 0
    delta: Delta = Field(default_factory=Delta)
    message: ChatMessage | None = None
    finish_reason: str | None = None


class StreamChunk(BaseModel):
    """Normalized streaming chunk."""
    id: str = ""
    object: str = "chat.completion.chunk"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str = ""
    choices: list[ChunkChoice] = Field(default_factory=list)
    usage: Usage | None = None
    done: bool = False
    provider_metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def content(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""

    @property
    def finish_reason(self) -> str | None:
        if not self.choices:
            return None
        return self.choices[0].finish_reason

    @classmethod
    def from_response(cls, response: ChatResponse) -> "StreamChunk":
        """Wrap a complete response as a single terminal chunk."""
        choices = []
        for choice in response.choices:
            tool_call_deltas = None
            if choice.message.tool_calls:
                tool_call_deltas = [
                    ToolCallDelta(
                        index=i,
                        id=call.id,
                        type="function",
                        function=FunctionCallDelta(
                            name=call.function.name, arguments=call.function.arguments
                        ),
                    )
                    for i, call in enumerate(choice.message.tool_calls)
                ]
            choices.append(
                ChunkChoice(
                    index=choice.index,
                    delta=Delta(
                        role=choice.message.role,
                        content=choice.message.text(),
                        tool_calls=tool_call_deltas,
                    ),
                    message=choice.message,
                    finish_reason=choice.finish_reason,
                )
            )
        return cls(
            id=response.id,
            created=response.created,
            model=response.model,
            choices=choices,
            usage=response.usage,
            done=True,
            provider_metadata=response.provider_metadata,
        )


class ProviderType(str, Enum):
    """Supported LLM provider types."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    CEREBRAS = "cerebras"
    QWEN = "qwen"
    OPENROUTER = "openrouter"


class OAuthCredentialConfig(BaseModel):
    """OAuth credential set as it appears in configuration."""
    id: str
    client_id: str = ""
    client_secret: str | None = None
    access_token: str
    refresh_token: str = ""
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)


class ProviderConfig(BaseModel):
    """Configuration for one provider instance."""
    name: str
    type: ProviderType
    base_url: str | None = None
    default_model: str | None = None
    api_key: str | None = None
    api_keys: list[str] = Field(default_factory=list)
    oauth_credentials: list[OAuthCredentialConfig] = Field(default_factory=list)
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    timeout: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    requests_per_minute: int | None = Field(default=None, gt=0)
    strict_options: bool = False
    token_url: str | None = None
    site_url: str | None = None
    site_name: str | None = None
    organization_id: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(use_enum_values=True)

    @property
    def display_name(self) -> str:
        return self.name


class ModelInfo(BaseModel):
    """A model advertised by a provider."""
    id: str
    name: str = ""
    provider: str = ""
    owned_by: str | None = None
    created: int | None = None
    context_window: int | None = None


class HealthStatus(BaseModel):
    """Result of a provider health check."""
    provider: str
    healthy: bool
    status_code: int | None = None
    response_time_ms: float | None = None
    message: str = ""
    checked_at: float = Field(default_factory=time.time)
    credentials: list[dict[str, Any]] = Field(default_factory=list)


class ProviderCapabilities(BaseModel):
    """Static description of what a provider adapter supports."""
    provider: str
    type: str
    codec: str
    codec_version: str
    description: str = ""
    capabilities: list[str] = Field(default_factory=list)
    recognized_options: list[str] = Field(default_factory=list)
    supports_streaming: bool = True
    supports_tool_calling: bool = True
    auth_methods: list[str] = Field(default_factory=list)
    default_model: str | None = None
    base_url: str = ""
