"""Qwen codec."""

from typing import Any

from .openai import OpenAICodec


class QwenCodec(OpenAICodec):
    """OpenAI-compatible format of the Qwen portal."""

    name = "qwen"
    version = "1.0.0"
    description = "Qwen models through the OpenAI-compatible portal, OAuth or API key"
    capabilities = (
        "chat",
        "streaming",
        "tool_calling",
        "system_messages",
        "temperature",
        "max_tokens",
        "stop_sequences",
        "thinking",
        "oauth",
    )
    recognized_options = frozenset({"top_p", "seed", "enable_thinking", "presence_penalty"})

    default_max_tokens = 8192

    def check_option(self, key: str, value: Any) -> None:
        super().check_option(key, value)
        if key == "enable_thinking" and not isinstance(value, bool):
            raise ValueError("enable_thinking must be a boolean")
