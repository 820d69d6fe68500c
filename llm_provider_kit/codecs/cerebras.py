"""Cerebras codec."""

from typing import Any

from ..exceptions import InvalidRequest
from ..models import ChatMessage, ChatRequest
from .openai import OpenAICodec

CODE_GENERATION_PROMPT = (
    "You are an expert programmer. Generate ONLY clean, functional code "
    "with no explanations or markdown formatting."
)


class CerebrasCodec(OpenAICodec):
    """OpenAI-compatible format served on Cerebras inference hardware."""

    name = "cerebras"
    version = "1.0.0"
    description = "Cerebras ultra-fast inference, OpenAI-compatible, text only"
    capabilities = (
        "chat",
        "streaming",
        "tool_calling",
        "system_messages",
        "temperature",
        "max_tokens",
        "stop_sequences",
        "code_generation",
    )
    recognized_options = frozenset({"top_p", "seed", "code_generation"})

    default_temperature = 0.6

    def check_option(self, key: str, value: Any) -> None:
        super().check_option(key, value)
        if key == "code_generation" and not isinstance(value, bool):
            raise ValueError("code_generation must be a boolean")

    def check_request(self, request: ChatRequest) -> None:
        if any(message.has_images for message in request.messages):
            raise InvalidRequest(
                "Cerebras does not accept image content", self.name, attempts_made=0
            )

    def apply_options(
        self, payload: dict[str, Any], options: dict[str, Any], request: ChatRequest
    ) -> None:
        code_generation = options.pop("code_generation", False)
        if code_generation and not any(m.role == "system" for m in request.messages):
            system = ChatMessage(role="system", content=CODE_GENERATION_PROMPT)
            payload["messages"] = self.encode_message(system) + payload["messages"]
        payload.update(options)
