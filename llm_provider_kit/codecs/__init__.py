"""Request codecs and the codec registry."""

import threading

from .anthropic import AnthropicCodec
from .base import ProviderCodec, RequestDefaults, StreamDecoder
from .cerebras import CerebrasCodec
from .openai import OpenAICodec
from .openrouter import OpenRouterCodec
from .qwen import QwenCodec

BUILTIN_CODECS: tuple[type[ProviderCodec], ...] = (
    OpenAICodec,
    AnthropicCodec,
    CerebrasCodec,
    QwenCodec,
    OpenRouterCodec,
)

_registry: dict[str, ProviderCodec] = {}
_registry_lock = threading.Lock()


def _ensure_builtins() -> None:
    if _registry:
        return
    for codec_class in BUILTIN_CODECS:
        _registry[codec_class.name] = codec_class()


def register_codec(codec: ProviderCodec, name: str | None = None) -> None:
    """Register ``codec`` under ``name`` (its own name by default), replacing any previous one."""
    with _registry_lock:
        _ensure_builtins()
        _registry[name or codec.name] = codec


def get_codec(name: str) -> ProviderCodec:
    """Look up a codec.

    Raises:
        KeyError: If no codec is registered under ``name``
    """
    with _registry_lock:
        _ensure_builtins()
        try:
            return _registry[name]
        except KeyError:
            raise KeyError(f"No codec registered for '{name}'") from None


def available_codecs() -> list[str]:
    with _registry_lock:
        _ensure_builtins()
        return sorted(_registry)


def reset_registry() -> None:
    """Drop custom registrations; built-ins come back on the next lookup."""
    with _registry_lock:
        _registry.clear()


__all__ = [
    "AnthropicCodec",
    "CerebrasCodec",
    "OpenAICodec",
    "OpenRouterCodec",
    "ProviderCodec",
    "QwenCodec",
    "RequestDefaults",
    "StreamDecoder",
    "available_codecs",
    "get_codec",
    "register_codec",
    "reset_registry",
]
