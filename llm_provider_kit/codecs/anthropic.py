"""Anthropic messages API codec."""

import json
import time
from typing import Any

from pydantic import ValidationError

from ..exceptions import InvalidRequest, UpstreamError
from ..models import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    Choice,
    ChunkChoice,
    Delta,
    FunctionCallDelta,
    ImageDataPart,
    ImageURLPart,
    StreamChunk,
    TextPart,
    ToolCall,
    ToolCallDelta,
    ToolChoice,
    ToolResultPart,
    Usage,
)
from .base import ProviderCodec, RequestDefaults, StreamDecoder, malformed, token_count

OAUTH_SYSTEM_PREAMBLE = "You are Claude Code, Anthropic's official CLI for Claude."
MAX_OUTPUT_TOKENS = 200000

STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}
FINISH_REASONS = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
}


def map_stop_reason(stop_reason: str | None) -> str | None:
    if stop_reason is None:
        return None
    return STOP_REASONS.get(stop_reason, stop_reason)


def _parse_input(arguments: str) -> Any:
    if not arguments:
        return {}
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        return {}


class AnthropicStreamDecoder(StreamDecoder):
    """Decode messages API stream events."""

    def __init__(self, provider: str | None = None):
        super().__init__(provider)
        self.message_id = ""
        self.model = ""
        self.input_tokens = 0
        self.done = False
        # content block index -> tool call index
        self._tool_indexes: dict[int, int] = {}

    def _chunk(self, delta: Delta | None = None, **kwargs: Any) -> StreamChunk:
        finish_reason = kwargs.pop("finish_reason", None)
        return StreamChunk(
            id=self.message_id,
            model=self.model,
            choices=[ChunkChoice(delta=delta or Delta(), finish_reason=finish_reason)],
            **kwargs,
        )

    def decode(self, payload: Any) -> StreamChunk | None:
        if not isinstance(payload, dict):
            return None
        event_type = payload.get("type")

        if event_type == "message_start":
            message = payload.get("message") or {}
            self.message_id = message.get("id", "")
            self.model = message.get("model", "")
            usage = message.get("usage")
            if isinstance(usage, dict):
                self.input_tokens = token_count(usage.get("input_tokens"))
            return None

        if event_type == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                tool_index = len(self._tool_indexes)
                self._tool_indexes[payload.get("index", tool_index)] = tool_index
                return self._chunk(
                    Delta(
                        tool_calls=[
                            ToolCallDelta(
                                index=tool_index,
                                id=block.get("id"),
                                type="function",
                                function=FunctionCallDelta(name=block.get("name")),
                            )
                        ]
                    )
                )
            if block.get("type") == "text" and block.get("text"):
                return self._chunk(Delta(content=block["text"]))
            return None

        if event_type == "content_block_delta":
            delta = payload.get("delta")
            if not isinstance(delta, dict):
                return None
            if delta.get("type") == "text_delta":
                return self._chunk(Delta(content=delta.get("text", "")))
            if delta.get("type") == "input_json_delta":
                tool_index = self._tool_indexes.get(payload.get("index", 0), 0)
                return self._chunk(
                    Delta(
                        tool_calls=[
                            ToolCallDelta(
                                index=tool_index,
                                function=FunctionCallDelta(arguments=delta.get("partial_json", "")),
                            )
                        ]
                    )
                )
            return None

        if event_type == "message_delta":
            delta = payload.get("delta")
            if not isinstance(delta, dict):
                delta = {}
            usage = payload.get("usage")
            output_tokens = token_count(usage.get("output_tokens")) if isinstance(usage, dict) else 0
            self.done = True
            return self._chunk(
                finish_reason=map_stop_reason(delta.get("stop_reason")) or "stop",
                usage=Usage.of(self.input_tokens, output_tokens),
                done=True,
                provider_metadata={
                    "stop_reason": delta.get("stop_reason"),
                    "stop_sequence": delta.get("stop_sequence"),
                },
            )

        if event_type == "message_stop":
            if self.done:
                return None
            self.done = True
            return self._chunk(finish_reason="stop", done=True)

        if event_type == "error":
            error = payload.get("error") or {}
            raise UpstreamError(
                error.get("message", "stream error"), self.provider, error_data=payload
            )

        # ping, content_block_stop and unknown events
        return None


class AnthropicCodec(ProviderCodec):
    """Anthropic messages API wire format."""

    name = "anthropic"
    version = "1.0.0"
    description = "Anthropic messages API with system prompts, tool use and extended thinking"
    capabilities = (
        "chat",
        "streaming",
        "tool_calling",
        "system_messages",
        "vision",
        "temperature",
        "top_p",
        "top_k",
        "max_tokens",
        "stop_sequences",
        "thinking",
        "oauth",
    )
    recognized_options = frozenset({"top_p", "top_k", "thinking", "metadata"})

    default_max_tokens = 4096

    def check_option(self, key: str, value: Any) -> None:
        if key == "top_p" and not (isinstance(value, (int, float)) and 0 <= value <= 1):
            raise ValueError("top_p must be between 0 and 1")
        if key == "top_k" and not (isinstance(value, int) and value >= 0):
            raise ValueError("top_k must be a non-negative integer")
        if key in ("thinking", "metadata") and not isinstance(value, dict):
            raise ValueError(f"{key} must be an object")

    def encode_system(self, system_texts: list[str], oauth: bool) -> Any:
        system = "\n\n".join(text for text in system_texts if text)
        if oauth:
            blocks = [{"type": "text", "text": OAUTH_SYSTEM_PREAMBLE}]
            if system:
                blocks.append({"type": "text", "text": system})
            return blocks
        return system or None

    def encode_blocks(self, message: ChatMessage) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        if message.role == "tool":
            results = [part for part in message.parts() if isinstance(part, ToolResultPart)]
            if results:
                return [self._tool_result(part) for part in results]
            return [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id or "",
                    "content": message.text(),
                }
            ]

        for part in message.parts():
            if isinstance(part, TextPart):
                if part.text:
                    blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImageDataPart):
                blocks.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": part.media_type, "data": part.data},
                    }
                )
            elif isinstance(part, ImageURLPart):
                blocks.append({"type": "image", "source": {"type": "url", "url": part.url}})
            elif isinstance(part, ToolResultPart):
                blocks.append(self._tool_result(part))

        for call in message.tool_calls or []:
            blocks.append(
                {
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.function.name,
                    "input": _parse_input(call.function.arguments),
                }
            )
        return blocks

    @staticmethod
    def _tool_result(part: ToolResultPart) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": part.tool_call_id,
            "content": part.content,
        }
        if part.is_error:
            block["is_error"] = True
        return block

    def encode_messages(self, request: ChatRequest) -> tuple[list[str], list[dict[str, Any]]]:
        system_texts: list[str] = []
        messages: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role == "system":
                system_texts.append(message.text())
                continue

            role = "user" if message.role == "tool" else message.role
            blocks = self.encode_blocks(message)
            is_tool_result = bool(blocks) and all(block["type"] == "tool_result" for block in blocks)

            previous = messages[-1] if messages else None
            if (
                is_tool_result
                and previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and all(block["type"] == "tool_result" for block in previous["content"])
            ):
                previous["content"].extend(blocks)
                continue

            messages.append({"role": role, "content": blocks})

        for message in messages:
            blocks = message["content"]
            if len(blocks) == 1 and blocks[0]["type"] == "text":
                message["content"] = blocks[0]["text"]
            elif not blocks:
                message["content"] = ""
        return system_texts, messages

    def encode_tool_choice(self, tool_choice: ToolChoice) -> dict[str, Any]:
        if tool_choice.mode == "required":
            return {"type": "any"}
        if tool_choice.mode == "specific":
            return {"type": "tool", "name": tool_choice.name}
        if tool_choice.mode == "none":
            self.logger.logger.warning(
                "Provider anthropic: tool_choice 'none' is not supported, sending 'auto'"
            )
        return {"type": "auto"}

    def encode_request(
        self,
        request: ChatRequest,
        *,
        defaults: RequestDefaults | None = None,
        oauth: bool = False,
    ) -> dict[str, Any]:
        system_texts, messages = self.encode_messages(request)

        max_tokens = self.resolve_max_tokens(request, defaults)
        if max_tokens is not None and max_tokens > MAX_OUTPUT_TOKENS:
            raise InvalidRequest(
                f"max_tokens must not exceed {MAX_OUTPUT_TOKENS}", self.name, attempts_made=0
            )

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        system = self.encode_system(system_texts, oauth)
        if system is not None:
            payload["system"] = system
        temperature = self.resolve_temperature(request, defaults)
        if temperature is not None:
            payload["temperature"] = temperature
        if request.stream:
            payload["stream"] = True
        if request.stop:
            payload["stop_sequences"] = request.stop
        if request.tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in request.tools
            ]
            if request.tool_choice is not None:
                payload["tool_choice"] = self.encode_tool_choice(request.tool_choice)

        payload.update(request.options)
        return payload

    def decode_response(self, body: Any) -> ChatResponse:
        if not isinstance(body, dict):
            raise malformed("Response body is not a JSON object")
        content = body.get("content")
        if not content and not body.get("stop_reason"):
            raise malformed("Response has no content blocks")
        if content is not None and not isinstance(content, list):
            raise malformed("Response content is not a list")

        texts: list[str] = []
        tool_calls: list[ToolCall] = []
        try:
            for block in content or []:
                if block.get("type") == "text":
                    texts.append(block.get("text", ""))
                elif block.get("type") == "tool_use":
                    tool_calls.append(
                        ToolCall(
                            id=block.get("id", ""),
                            function={"name": block.get("name", ""), "arguments": block.get("input")},
                        )
                    )
        except (ValidationError, AttributeError) as e:
            raise malformed("Unexpected content block", e) from e

        usage_data = body.get("usage")
        if not isinstance(usage_data, dict):
            usage_data = {}
        stop_reason = body.get("stop_reason")
        return ChatResponse(
            id=body.get("id", ""),
            created=int(time.time()),
            model=body.get("model", ""),
            choices=[
                Choice(
                    index=0,
                    message=ChatMessage(
                        role="assistant",
                        content="".join(texts),
                        tool_calls=tool_calls or None,
                    ),
                    finish_reason=map_stop_reason(stop_reason),
                )
            ],
            usage=Usage.of(
                token_count(usage_data.get("input_tokens")),
                token_count(usage_data.get("output_tokens")),
            ),
            provider_metadata={
                "stop_reason": stop_reason,
                "stop_sequence": body.get("stop_sequence"),
            },
        )

    def stream_decoder(self, provider: str | None = None) -> StreamDecoder:
        return AnthropicStreamDecoder(provider or self.name)

    def encode_response(self, response: ChatResponse) -> dict[str, Any]:
        choice = response.choices[0] if response.choices else None
        blocks: list[dict[str, Any]] = []
        if choice is not None:
            text = choice.message.text()
            if text:
                blocks.append({"type": "text", "text": text})
            for call in choice.message.tool_calls or []:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.function.name,
                        "input": _parse_input(call.function.arguments),
                    }
                )

        stop_reason = response.provider_metadata.get("stop_reason")
        if stop_reason is None and choice is not None and choice.finish_reason:
            stop_reason = FINISH_REASONS.get(choice.finish_reason, choice.finish_reason)

        return {
            "id": response.id,
            "type": "message",
            "role": "assistant",
            "model": response.model,
            "content": blocks,
            "stop_reason": stop_reason,
            "stop_sequence": response.provider_metadata.get("stop_sequence"),
            "usage": {
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens,
            },
        }
