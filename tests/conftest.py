"""Test configuration and fixtures."""

import json
from typing import Any, Callable

import httpx
import pytest

from llm_provider_kit.models import ProviderConfig
from llm_provider_kit.providers import BaseProvider, create_provider
from llm_provider_kit.stats import StatsCollector

Handler = Callable[[httpx.Request], Any]


def sse_body(*events: Any, done: bool = True) -> bytes:
    """Encode payloads as SSE ``data:`` frames."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def sse_response(*events: Any, done: bool = True, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        200,
        content=sse_body(*events, done=done),
        headers={"content-type": "text/event-stream", **(headers or {})},
    )


def openai_completion(content: str = "ok", total_tokens: int = 3, **extra: Any) -> dict:
    body = {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "created": 1677652288,
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": 1,
            "completion_tokens": total_tokens - 1,
            "total_tokens": total_tokens,
        },
    }
    body.update(extra)
    return body


def bearer(request: httpx.Request) -> str:
    return request.headers.get("authorization", "").removeprefix("Bearer ")


def build_provider(
    handler: Handler,
    provider_type: str = "openai",
    stats_collector: StatsCollector | None = None,
    **overrides: Any,
) -> BaseProvider:
    """Build an adapter whose HTTP client is served by ``handler``."""
    data: dict[str, Any] = {
        "name": provider_type,
        "type": provider_type,
        "default_model": "test-model",
    }
    if "oauth_credentials" not in overrides and "api_key" not in overrides:
        data["api_keys"] = ["sk-test-key-0001", "sk-test-key-0002"]
    data.update(overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    extra = {key: data.pop(key) for key in ("refresh_func", "on_token_refresh") if key in data}
    return create_provider(
        ProviderConfig.model_validate(data),
        http_client=client,
        stats_collector=stats_collector or StatsCollector(),
        **extra,
    )


@pytest.fixture
def sample_request():
    """Sample chat request."""
    return {
        "model": "gpt-4o-mini",
        "messages": [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": "Hello, how are you?"},
        ],
        "max_tokens": 100,
        "temperature": 0.7,
    }


@pytest.fixture
def mock_openai_response():
    """Mock OpenAI API response."""
    return openai_completion("Hello! I'm doing well, thank you for asking.", total_tokens=18)


@pytest.fixture
def mock_anthropic_response():
    """Mock Anthropic API response."""
    return {
        "id": "msg_123",
        "type": "message",
        "role": "assistant",
        "content": [
            {
                "type": "text",
                "text": "Hello! I'm doing well, thank you for asking.",
            }
        ],
        "model": "claude-3-5-sonnet-20241022",
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {
            "input_tokens": 10,
            "output_tokens": 8,
        },
    }
