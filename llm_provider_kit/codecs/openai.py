"""OpenAI chat completions codec, shared by OpenAI-compatible providers."""

import json
import time
from typing import Any

from pydantic import ValidationError

from ..exceptions import UpstreamError
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


def _text_of(content: Any) -> str | None:
    """Content may be a string or a list of typed blocks."""
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") in ("text", "output_text")
        )
    return str(content)


def _usage(data: Any) -> Usage | None:
    if not isinstance(data, dict):
        return None
    prompt = token_count(data.get("prompt_tokens"))
    completion = token_count(data.get("completion_tokens"))
    total = token_count(data.get("total_tokens")) or prompt + completion
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _arguments(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


class OpenAIStreamDecoder(StreamDecoder):
    """Decode ``chat.completion.chunk`` payloads."""

    def decode(self, payload: Any) -> StreamChunk | None:
        if not isinstance(payload, dict):
            return None
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message", "stream error") if isinstance(error, dict) else str(error)
            raise UpstreamError(message, self.provider, error_data=payload)

        usage = _usage(payload.get("usage"))
        choices_data = payload.get("choices") or []
        if not choices_data:
            if usage is None:
                return None
            return StreamChunk(
                id=payload.get("id", ""),
                created=payload.get("created") or int(time.time()),
                model=payload.get("model", ""),
                usage=usage,
            )

        choices = []
        done = False
        for position, choice_data in enumerate(choices_data):
            if not isinstance(choice_data, dict):
                continue
            delta_data = choice_data.get("delta")
            if delta_data is None:
                # Some compatible servers send whole messages instead of deltas
                delta_data = choice_data.get("message") or {}
            if not isinstance(delta_data, dict):
                continue
            tool_calls = None
            if delta_data.get("tool_calls"):
                tool_calls = [
                    ToolCallDelta(
                        index=call.get("index", i),
                        id=call.get("id"),
                        type="function" if call.get("id") or call.get("type") else None,
                        function=FunctionCallDelta(
                            name=(call.get("function") or {}).get("name"),
                            arguments=_arguments((call.get("function") or {}).get("arguments")),
                        ),
                    )
                    for i, call in enumerate(delta_data["tool_calls"])
                ]
            finish_reason = choice_data.get("finish_reason") or None
            done = done or finish_reason is not None
            choices.append(
                ChunkChoice(
                    index=choice_data.get("index", position),
                    delta=Delta(
                        role=delta_data.get("role"),
                        content=_text_of(delta_data.get("content")),
                        tool_calls=tool_calls,
                    ),
                    finish_reason=finish_reason,
                )
            )

        if not choices and usage is None:
            return None
        return StreamChunk(
            id=payload.get("id", ""),
            created=payload.get("created") or int(time.time()),
            model=payload.get("model", ""),
            choices=choices,
            usage=usage,
            done=done,
        )


class OpenAICodec(ProviderCodec):
    """OpenAI chat completions wire format."""

    name = "openai"
    version = "1.0.0"
    description = "OpenAI chat completions format, also spoken by OpenAI-compatible gateways"
    capabilities = (
        "chat",
        "streaming",
        "tool_calling",
        "function_calling",
        "system_messages",
        "vision",
        "temperature",
        "max_tokens",
        "stop_sequences",
    )
    recognized_options = frozenset(
        {
            "top_p",
            "frequency_penalty",
            "presence_penalty",
            "seed",
            "user",
            "response_format",
            "parallel_tool_calls",
        }
    )

    def check_option(self, key: str, value: Any) -> None:
        if key == "top_p" and not (isinstance(value, (int, float)) and 0 <= value <= 1):
            raise ValueError("top_p must be between 0 and 1")
        if key in ("frequency_penalty", "presence_penalty") and not (
            isinstance(value, (int, float)) and -2 <= value <= 2
        ):
            raise ValueError(f"{key} must be between -2 and 2")

    def check_request(self, request: ChatRequest) -> None:
        """Reject requests the provider cannot serve."""

    def encode_content(self, parts: list[Any]) -> str | list[dict[str, Any]]:
        if all(isinstance(part, TextPart) for part in parts):
            return "".join(part.text for part in parts)
        blocks: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, TextPart):
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImageDataPart):
                blocks.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{part.media_type};base64,{part.data}"},
                    }
                )
            elif isinstance(part, ImageURLPart):
                blocks.append({"type": "image_url", "image_url": {"url": part.url}})
        return blocks

    def encode_message(self, message: ChatMessage) -> list[dict[str, Any]]:
        """One normalized message may become several wire messages."""
        parts = message.parts()
        tool_results = [part for part in parts if isinstance(part, ToolResultPart)]
        other_parts = [part for part in parts if not isinstance(part, ToolResultPart)]

        encoded: list[dict[str, Any]] = []
        for result in tool_results:
            encoded.append(
                {"role": "tool", "tool_call_id": result.tool_call_id, "content": result.content}
            )

        if message.role == "tool":
            if not tool_results:
                encoded.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id or "",
                        "content": message.text(),
                    }
                )
            return encoded

        if other_parts or message.tool_calls or not tool_results:
            wire: dict[str, Any] = {"role": message.role, "content": self.encode_content(other_parts)}
            if message.name:
                wire["name"] = message.name
            if message.tool_calls:
                wire["tool_calls"] = [call.model_dump() for call in message.tool_calls]
                if not wire["content"]:
                    wire["content"] = None
            encoded.append(wire)
        return encoded

    def encode_tool_choice(self, tool_choice: ToolChoice) -> Any:
        if tool_choice.mode == "specific":
            return {"type": "function", "function": {"name": tool_choice.name}}
        return tool_choice.mode

    def apply_options(
        self, payload: dict[str, Any], options: dict[str, Any], request: ChatRequest
    ) -> None:
        """Merge provider options into the request body."""
        payload.update(options)

    def encode_request(
        self,
        request: ChatRequest,
        *,
        defaults: RequestDefaults | None = None,
        oauth: bool = False,
    ) -> dict[str, Any]:
        self.check_request(request)

        messages: list[dict[str, Any]] = []
        for message in request.messages:
            messages.extend(self.encode_message(message))

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
        }
        temperature = self.resolve_temperature(request, defaults)
        if temperature is not None:
            payload["temperature"] = temperature
        max_tokens = self.resolve_max_tokens(request, defaults)
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if request.stream:
            payload["stream"] = True
        if request.stop:
            payload["stop"] = request.stop
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
            if request.tool_choice is not None:
                payload["tool_choice"] = self.encode_tool_choice(request.tool_choice)

        self.apply_options(payload, dict(request.options), request)
        return payload

    def decode_message(self, data: dict[str, Any]) -> ChatMessage:
        tool_calls = None
        if data.get("tool_calls"):
            tool_calls = [
                ToolCall(
                    id=call.get("id", ""),
                    function={
                        "name": (call.get("function") or {}).get("name", ""),
                        "arguments": (call.get("function") or {}).get("arguments"),
                    },
                )
                for call in data["tool_calls"]
            ]
        return ChatMessage(
            role=data.get("role") or "assistant",
            content=_text_of(data.get("content")),
            name=data.get("name"),
            tool_calls=tool_calls,
        )

    def decode_response(self, body: Any) -> ChatResponse:
        if not isinstance(body, dict):
            raise malformed("Response body is not a JSON object")
        choices_data = body.get("choices")
        if not isinstance(choices_data, list) or not choices_data:
            raise malformed("Response has no choices")

        try:
            choices = [
                Choice(
                    index=choice_data.get("index", position),
                    message=self.decode_message(choice_data.get("message") or {}),
                    finish_reason=choice_data.get("finish_reason"),
                )
                for position, choice_data in enumerate(choices_data)
            ]
        except (ValidationError, AttributeError, TypeError) as e:
            raise malformed("Unexpected choice format", e) from e

        metadata: dict[str, Any] = {}
        if body.get("system_fingerprint"):
            metadata["system_fingerprint"] = body["system_fingerprint"]

        return ChatResponse(
            id=body.get("id", ""),
            created=body.get("created") or int(time.time()),
            model=body.get("model", ""),
            choices=choices,
            usage=_usage(body.get("usage")) or Usage(),
            provider_metadata=metadata,
        )

    def stream_decoder(self, provider: str | None = None) -> StreamDecoder:
        return OpenAIStreamDecoder(provider or self.name)

    def encode_response(self, response: ChatResponse) -> dict[str, Any]:
        choices = []
        for choice in response.choices:
            content = choice.message.content
            if isinstance(content, list):
                content = choice.message.text()
            message: dict[str, Any] = {"role": choice.message.role, "content": content}
            if choice.message.tool_calls:
                message["tool_calls"] = [call.model_dump() for call in choice.message.tool_calls]
            choices.append(
                {"index": choice.index, "message": message, "finish_reason": choice.finish_reason}
            )
        body: dict[str, Any] = {
            "id": response.id,
            "object": "chat.completion",
            "created": response.created,
            "model": response.model,
            "choices": choices,
            "usage": response.usage.model_dump(),
        }
        if "system_fingerprint" in response.provider_metadata:
            body["system_fingerprint"] = response.provider_metadata["system_fingerprint"]
        return body
