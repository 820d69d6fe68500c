"""Provider implementations."""

from typing import Any

from ..models import ProviderConfig, ProviderType
from .anthropic import AnthropicProvider
from .base import BaseProvider
from .cerebras import CerebrasProvider
from .openai import OpenAIProvider
from .openrouter import OpenRouterProvider
from .qwen import QwenProvider

PROVIDER_CLASSES: dict[str, type[BaseProvider]] = {
    ProviderType.OPENAI.value: OpenAIProvider,
    ProviderType.ANTHROPIC.value: AnthropicProvider,
    ProviderType.CEREBRAS.value: CerebrasProvider,
    ProviderType.QWEN.value: QwenProvider,
    ProviderType.OPENROUTER.value: OpenRouterProvider,
}


def create_provider(config: ProviderConfig, **kwargs: Any) -> BaseProvider:
    """Create a provider instance based on configuration.

    Keyword arguments are passed to the adapter constructor.
    """
    provider_class = PROVIDER_CLASSES.get(config.type)
    if provider_class is None:
        raise ValueError(f"Unsupported provider type: {config.type}")
    return provider_class(config, **kwargs)


__all__ = [
    "BaseProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "CerebrasProvider",
    "QwenProvider",
    "OpenRouterProvider",
    "create_provider",
]
