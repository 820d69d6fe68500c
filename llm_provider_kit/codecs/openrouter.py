"""OpenRouter codec."""

from typing import Any

from ..models import ChatRequest
from .openai import OpenAICodec

FREE_SUFFIX = ":free"

MODEL_ROUTING = {
    "fastest": "meta-llama/llama-3.1-8b-instruct",
    "cheapest": "meta-llama/llama-3.1-8b-instruct:free",
    "balanced": "meta-llama/llama-3.1-70b-instruct",
    "best": "anthropic/claude-3.5-sonnet",
}

PROVIDER_MODELS = {
    "anthropic": "anthropic/claude-3.5-sonnet",
    "openai": "openai/gpt-4o",
    "google": "google/gemini-pro-1.5",
    "meta": "meta-llama/llama-3.1-70b-instruct",
    "mistral": None,
    "cohere": None,
}

COST_OPTIMIZED_TEMPERATURE = 0.7
COST_OPTIMIZED_MAX_TOKENS = 1024


def _unset_model(model: str) -> bool:
    return model in ("", "auto")


class OpenRouterCodec(OpenAICodec):
    """OpenAI-compatible format with OpenRouter routing extensions."""

    name = "openrouter"
    version = "1.0.0"
    description = "OpenRouter universal model gateway with routing and fallback models"
    capabilities = (
        "chat",
        "streaming",
        "tool_calling",
        "function_calling",
        "system_messages",
        "temperature",
        "top_p",
        "max_tokens",
        "stop_sequences",
        "model_routing",
        "fallback_models",
        "cost_optimization",
        "multi_provider",
        "site_referer",
        "free_tier",
    )
    recognized_options = frozenset(
        {
            "top_p",
            "model_routing",
            "free_only",
            "cost_optimization",
            "fallback_models",
            "provider",
            "transforms",
        }
    )

    def check_option(self, key: str, value: Any) -> None:
        super().check_option(key, value)
        if key == "model_routing" and value not in MODEL_ROUTING:
            raise ValueError(f"model_routing must be one of: {sorted(MODEL_ROUTING)}")
        if key == "provider" and value not in PROVIDER_MODELS:
            raise ValueError(f"provider must be one of: {sorted(PROVIDER_MODELS)}")
        if key in ("free_only", "cost_optimization") and not isinstance(value, bool):
            raise ValueError(f"{key} must be a boolean")
        if key in ("fallback_models", "transforms") and not (
            isinstance(value, list) and all(isinstance(item, str) for item in value)
        ):
            raise ValueError(f"{key} must be a list of strings")

    def apply_options(
        self, payload: dict[str, Any], options: dict[str, Any], request: ChatRequest
    ) -> None:
        routing = options.pop("model_routing", None)
        if routing and _unset_model(request.model):
            payload["model"] = MODEL_ROUTING[routing]

        provider = options.pop("provider", None)
        if provider:
            payload["provider"] = {"order": [provider]}
            if _unset_model(request.model) and not routing and PROVIDER_MODELS.get(provider):
                payload["model"] = PROVIDER_MODELS[provider]

        if options.pop("cost_optimization", False):
            if request.temperature is None:
                payload["temperature"] = COST_OPTIMIZED_TEMPERATURE
            if request.max_tokens is None:
                payload["max_tokens"] = COST_OPTIMIZED_MAX_TOKENS

        if options.pop("free_only", False):
            if _unset_model(payload["model"]):
                payload["model"] = MODEL_ROUTING["cheapest"]
            elif not payload["model"].endswith(FREE_SUFFIX):
                payload["model"] += FREE_SUFFIX

        fallback_models = options.pop("fallback_models", None)
        if fallback_models:
            payload["models"] = [payload["model"], *fallback_models]
            payload["route"] = "fallback"

        payload.update(options)
