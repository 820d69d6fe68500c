"""Tests for the provider codecs."""

import json

import pytest

from llm_provider_kit.codecs import (
    AnthropicCodec,
    CerebrasCodec,
    OpenAICodec,
    OpenRouterCodec,
    QwenCodec,
    RequestDefaults,
    available_codecs,
    get_codec,
    register_codec,
    reset_registry,
)
from llm_provider_kit.codecs.anthropic import OAUTH_SYSTEM_PREAMBLE
from llm_provider_kit.codecs.base import token_count
from llm_provider_kit.codecs.cerebras import CODE_GENERATION_PROMPT
from llm_provider_kit.exceptions import InvalidRequest, MalformedResponse
from llm_provider_kit.models import ChatRequest

WEATHER_TOOL = {
    "name": "get_weather",
    "description": "Current weather",
    "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
}


def make_request(**kwargs) -> ChatRequest:
    data = {
        "model": "test-model",
        "messages": [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
        ],
    }
    data.update(kwargs)
    return ChatRequest.model_validate(data)


def tool_conversation() -> list[dict]:
    return [
        {"role": "user", "content": "Weather in Paris and Rome?"},
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {"id": "call_1", "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'}},
                {"id": "call_2", "function": {"name": "get_weather", "arguments": '{"city": "Rome"}'}},
            ],
        },
        {"role": "tool", "tool_call_id": "call_1", "content": "sunny"},
        {"role": "tool", "tool_call_id": "call_2", "content": "rainy"},
    ]


class TestOpenAICodec:
    """OpenAI chat completions format."""

    def test_encode_basic_request(self):
        payload = OpenAICodec().encode_request(
            make_request(temperature=0.2, max_tokens=50, stop="END", stream=True)
        )

        assert payload["model"] == "test-model"
        assert payload["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
        ]
        assert payload["temperature"] == 0.2
        assert payload["max_tokens"] == 50
        assert payload["stop"] == ["END"]
        assert payload["stream"] is True

    def test_defaults_fill_unset_fields(self):
        payload = OpenAICodec().encode_request(
            make_request(), defaults=RequestDefaults(max_tokens=256, temperature=0.5)
        )

        assert payload["max_tokens"] == 256
        assert payload["temperature"] == 0.5
        assert "stream" not in payload

    def test_encode_tools_and_tool_choice(self):
        payload = OpenAICodec().encode_request(
            make_request(tools=[WEATHER_TOOL], tool_choice={"type": "function", "function": {"name": "get_weather"}})
        )

        assert payload["tools"] == [{"type": "function", "function": WEATHER_TOOL}]
        assert payload["tool_choice"] == {"type": "function", "function": {"name": "get_weather"}}

    def test_encode_tool_conversation(self):
        payload = OpenAICodec().encode_request(make_request(messages=tool_conversation()))

        assistant = payload["messages"][1]
        assert assistant["content"] is None
        assert [call["id"] for call in assistant["tool_calls"]] == ["call_1", "call_2"]
        assert payload["messages"][2] == {"role": "tool", "tool_call_id": "call_1", "content": "sunny"}
        assert payload["messages"][3] == {"role": "tool", "tool_call_id": "call_2", "content": "rainy"}

    def test_encode_tool_result_parts(self):
        request = make_request(
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "tool_result", "tool_call_id": "call_1", "content": "42"},
                        {"type": "text", "text": "Thanks"},
                    ],
                }
            ]
        )

        messages = OpenAICodec().encode_request(request)["messages"]

        assert messages == [
            {"role": "tool", "tool_call_id": "call_1", "content": "42"},
            {"role": "user", "content": "Thanks"},
        ]

    def test_encode_images(self):
        request = make_request(
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "What is this?"},
                        {"type": "image_data", "media_type": "image/jpeg", "data": "AAAA"},
                        {"type": "image_url", "url": "https://example.com/cat.png"},
                    ],
                }
            ]
        )

        content = OpenAICodec().encode_request(request)["messages"][0]["content"]

        assert content == [
            {"type": "text", "text": "What is this?"},
            {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
            {"type": "image_url", "image_url": {"url": "https://example.com/cat.png"}},
        ]

    def test_options_are_merged(self):
        payload = OpenAICodec().encode_request(make_request(options={"seed": 7, "top_p": 0.9}))

        assert payload["seed"] == 7
        assert payload["top_p"] == 0.9

    def test_decode_response(self, mock_openai_response):
        response = OpenAICodec().decode_response(mock_openai_response)

        assert response.id == "chatcmpl-123"
        assert response.content == "Hello! I'm doing well, thank you for asking."
        assert response.choices[0].finish_reason == "stop"
        assert response.usage.total_tokens == 18

    def test_decode_tool_calls(self):
        body = {
            "id": "chatcmpl-9",
            "model": "gpt-4o",
            "choices": [
                {
                    "message": {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "get_weather", "arguments": '{"city":"Paris"}'},
                            }
                        ],
                    },
                    "finish_reason": "tool_calls",
                }
            ],
        }

        response = OpenAICodec().decode_response(body)

        assert response.tool_calls[0].function.name == "get_weather"
        assert json.loads(response.tool_calls[0].function.arguments) == {"city": "Paris"}
        assert response.usage.total_tokens == 0

    @pytest.mark.parametrize("body", [[], {"choices": []}, {"choices": "nope"}])
    def test_decode_rejects_malformed_bodies(self, body):
        with pytest.raises(MalformedResponse):
            OpenAICodec().decode_response(body)

    def test_encode_response_round_trip(self, mock_openai_response):
        codec = OpenAICodec()
        mock_openai_response["system_fingerprint"] = "fp_1"

        response = codec.decode_response(mock_openai_response)

        assert codec.encode_response(response) == mock_openai_response

    def test_stream_decoder_uses_message_when_delta_missing(self):
        decoder = OpenAICodec().stream_decoder("openai")

        chunk = decoder.decode(
            {"id": "c1", "choices": [{"message": {"role": "assistant", "content": "whole"}, "finish_reason": "stop"}]}
        )

        assert chunk.content == "whole"
        assert chunk.done

    def test_stream_decoder_usage_only_chunk(self):
        decoder = OpenAICodec().stream_decoder()

        chunk = decoder.decode(
            {"id": "c1", "choices": [], "usage": {"prompt_tokens": 2, "completion_tokens": 3}}
        )

        assert chunk.choices == []
        assert chunk.usage.total_tokens == 5
        assert decoder.decode({"id": "c1", "choices": []}) is None

    def test_non_numeric_usage_counters_are_ignored(self, mock_openai_response):
        mock_openai_response["usage"] = {"prompt_tokens": "n/a", "completion_tokens": "5", "total_tokens": None}

        response = OpenAICodec().decode_response(mock_openai_response)

        assert response.usage.prompt_tokens == 0
        assert response.usage.completion_tokens == 5
        assert response.usage.total_tokens == 5

    def test_stream_decoder_skips_unexpected_choice_shapes(self):
        decoder = OpenAICodec().stream_decoder()

        assert decoder.decode({"id": "c1", "choices": ["oops"]}) is None
        assert decoder.decode({"id": "c1", "choices": [{"delta": "oops"}]}) is None


class TestAnthropicCodec:
    """Anthropic messages API format."""

    def test_system_is_lifted_out(self):
        payload = AnthropicCodec().encode_request(make_request())

        assert payload["system"] == "Be brief."
        assert payload["messages"] == [{"role": "user", "content": "Hello"}]
        assert payload["max_tokens"] == 4096

    def test_oauth_prepends_preamble(self):
        payload = AnthropicCodec().encode_request(make_request(), oauth=True)

        assert payload["system"] == [
            {"type": "text", "text": OAUTH_SYSTEM_PREAMBLE},
            {"type": "text", "text": "Be brief."},
        ]

    def test_oauth_without_system_message(self):
        request = make_request(messages=[{"role": "user", "content": "Hi"}])

        assert AnthropicCodec().encode_request(request, oauth=True)["system"] == [
            {"type": "text", "text": OAUTH_SYSTEM_PREAMBLE}
        ]
        assert "system" not in AnthropicCodec().encode_request(request)

    def test_tool_results_are_merged_into_one_user_message(self):
        payload = AnthropicCodec().encode_request(
            make_request(messages=tool_conversation(), tools=[WEATHER_TOOL])
        )

        messages = payload["messages"]
        assert [message["role"] for message in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"] == [
            {"type": "tool_use", "id": "call_1", "name": "get_weather", "input": {"city": "Paris"}},
            {"type": "tool_use", "id": "call_2", "name": "get_weather", "input": {"city": "Rome"}},
        ]
        assert messages[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "call_1", "content": "sunny"},
            {"type": "tool_result", "tool_use_id": "call_2", "content": "rainy"},
        ]
        assert payload["tools"] == [
            {
                "name": "get_weather",
                "description": "Current weather",
                "input_schema": WEATHER_TOOL["parameters"],
            }
        ]

    @pytest.mark.parametrize(
        "choice,expected",
        [
            ("auto", {"type": "auto"}),
            ("required", {"type": "any"}),
            ("none", {"type": "auto"}),
            ({"type": "tool", "name": "get_weather"}, {"type": "tool", "name": "get_weather"}),
        ],
    )
    def test_tool_choice(self, choice, expected):
        payload = AnthropicCodec().encode_request(make_request(tools=[WEATHER_TOOL], tool_choice=choice))

        assert payload["tool_choice"] == expected

    def test_images_become_image_blocks(self):
        request = make_request(
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "image_data", "media_type": "image/png", "data": "AAAA"},
                        {"type": "text", "text": "Describe"},
                    ],
                }
            ]
        )

        content = AnthropicCodec().encode_request(request)["messages"][0]["content"]

        assert content == [
            {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}},
            {"type": "text", "text": "Describe"},
        ]

    def test_max_tokens_limit(self):
        with pytest.raises(InvalidRequest) as exc_info:
            AnthropicCodec().encode_request(make_request(max_tokens=200001))
        assert exc_info.value.attempts_made == 0

    def test_stop_and_options(self):
        payload = AnthropicCodec().encode_request(
            make_request(stop=["###"], options={"top_k": 5})
        )

        assert payload["stop_sequences"] == ["###"]
        assert payload["top_k"] == 5

    def test_decode_response_joins_text_blocks(self, mock_anthropic_response):
        mock_anthropic_response["content"].append({"type": "text", "text": " More."})

        response = AnthropicCodec().decode_response(mock_anthropic_response)

        assert response.content == "Hello! I'm doing well, thank you for asking. More."
        assert response.choices[0].finish_reason == "stop"
        assert response.usage.prompt_tokens == 10
        assert response.usage.completion_tokens == 8
        assert response.usage.total_tokens == 18
        assert response.provider_metadata["stop_reason"] == "end_turn"

    def test_decode_tool_use(self):
        body = {
            "id": "msg_2",
            "model": "claude",
            "content": [
                {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}}
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 5, "output_tokens": 6},
        }

        response = AnthropicCodec().decode_response(body)

        assert response.choices[0].finish_reason == "tool_calls"
        assert response.tool_calls[0].id == "toolu_1"
        assert json.loads(response.tool_calls[0].function.arguments) == {"city": "Paris"}

    def test_unusable_usage_is_ignored(self, mock_anthropic_response):
        mock_anthropic_response["usage"] = {"input_tokens": "lots", "output_tokens": 8}
        response = AnthropicCodec().decode_response(mock_anthropic_response)
        assert response.usage.prompt_tokens == 0
        assert response.usage.completion_tokens == 8

        mock_anthropic_response["usage"] = "oops"
        assert AnthropicCodec().decode_response(mock_anthropic_response).usage.total_tokens == 0

    @pytest.mark.parametrize("body", ["text", {"content": []}, {"content": "x", "stop_reason": "end_turn"}])
    def test_decode_rejects_malformed_bodies(self, body):
        with pytest.raises(MalformedResponse):
            AnthropicCodec().decode_response(body)

    def test_encode_response_round_trip(self, mock_anthropic_response):
        codec = AnthropicCodec()

        response = codec.decode_response(mock_anthropic_response)
        encoded = codec.encode_response(response)

        assert encoded == mock_anthropic_response
        assert codec.decode_response(encoded).model_dump(exclude={"created"}) == response.model_dump(
            exclude={"created"}
        )


class TestCerebrasCodec:
    """Cerebras specifics on top of the OpenAI format."""

    def test_default_temperature(self):
        assert CerebrasCodec().encode_request(make_request())["temperature"] == 0.6

    def test_images_rejected(self):
        request = make_request(
            messages=[{"role": "user", "content": [{"type": "image_url", "url": "https://x/y.png"}]}]
        )

        with pytest.raises(InvalidRequest):
            CerebrasCodec().encode_request(request)

    def test_code_generation_adds_system_prompt(self):
        request = make_request(
            messages=[{"role": "user", "content": "fizzbuzz"}], options={"code_generation": True}
        )

        payload = CerebrasCodec().encode_request(request)

        assert payload["messages"][0] == {"role": "system", "content": CODE_GENERATION_PROMPT}
        assert "code_generation" not in payload

    def test_code_generation_keeps_existing_system_prompt(self):
        payload = CerebrasCodec().encode_request(make_request(options={"code_generation": True}))

        assert payload["messages"][0]["content"] == "Be brief."
        assert len(payload["messages"]) == 2


class TestQwenCodec:
    """Qwen specifics on top of the OpenAI format."""

    def test_default_max_tokens(self):
        assert QwenCodec().encode_request(make_request())["max_tokens"] == 8192

    def test_enable_thinking_option(self):
        codec = QwenCodec()
        assert codec.validate_options({"enable_thinking": True}) == {"enable_thinking": True}
        with pytest.raises(InvalidRequest):
            codec.validate_options({"enable_thinking": "yes"})


class TestOpenRouterCodec:
    """OpenRouter routing extensions."""

    def test_model_routing_applies_to_unset_model(self):
        payload = OpenRouterCodec().encode_request(
            make_request(model="auto", options={"model_routing": "best"})
        )
        assert payload["model"] == "anthropic/claude-3.5-sonnet"

    def test_model_routing_ignored_for_explicit_model(self):
        payload = OpenRouterCodec().encode_request(
            make_request(model="openai/gpt-4o-mini", options={"model_routing": "best"})
        )
        assert payload["model"] == "openai/gpt-4o-mini"

    def test_provider_preference(self):
        payload = OpenRouterCodec().encode_request(make_request(model="", options={"provider": "openai"}))

        assert payload["provider"] == {"order": ["openai"]}
        assert payload["model"] == "openai/gpt-4o"

    def test_cost_optimization(self):
        payload = OpenRouterCodec().encode_request(make_request(options={"cost_optimization": True}))

        assert payload["temperature"] == 0.7
        assert payload["max_tokens"] == 1024

    def test_free_only_and_fallbacks(self):
        payload = OpenRouterCodec().encode_request(
            make_request(
                model="meta-llama/llama-3.1-8b-instruct",
                options={"free_only": True, "fallback_models": ["mistralai/mistral-7b-instruct"]},
            )
        )

        assert payload["model"] == "meta-llama/llama-3.1-8b-instruct:free"
        assert payload["models"] == [
            "meta-llama/llama-3.1-8b-instruct:free",
            "mistralai/mistral-7b-instruct",
        ]
        assert payload["route"] == "fallback"
        assert "free_only" not in payload

    @pytest.mark.parametrize(
        "options",
        [
            {"model_routing": "smartest"},
            {"provider": "acme"},
            {"free_only": "yes"},
            {"fallback_models": "gpt-4o"},
        ],
    )
    def test_invalid_options(self, options):
        with pytest.raises(InvalidRequest):
            OpenRouterCodec().validate_options(options)


def test_validate_options_lenient_drops_unknown_keys():
    """Unknown options are dropped unless strict."""
    codec = OpenAICodec()

    assert codec.validate_options({"seed": 1, "bogus": True}) == {"seed": 1}
    with pytest.raises(InvalidRequest) as exc_info:
        codec.validate_options({"bogus": True}, strict=True, provider="openai")
    assert exc_info.value.attempts_made == 0
    assert exc_info.value.provider == "openai"


def test_describe():
    """Codecs describe their name, version and capabilities."""
    description = AnthropicCodec().describe()

    assert description["codec"] == "anthropic"
    assert description["codec_version"] == "1.0.0"
    assert "tool_calling" in description["capabilities"]
    assert description["recognized_options"] == sorted(AnthropicCodec.recognized_options)


def test_registry():
    """Built-in codecs are registered and custom codecs can be added."""
    try:
        assert available_codecs() == ["anthropic", "cerebras", "openai", "openrouter", "qwen"]
        assert isinstance(get_codec("qwen"), QwenCodec)

        custom = OpenAICodec()
        register_codec(custom, "local-llm")
        assert get_codec("local-llm") is custom

        with pytest.raises(KeyError):
            get_codec("missing")
    finally:
        reset_registry()

    assert "local-llm" not in available_codecs()


@pytest.mark.parametrize(
    "value, expected",
    [(7, 7), (7.9, 7), ("12", 12), (" 3 ", 3), ("n/a", 0), (None, 0), (True, 0), (-4, 0), ({}, 0), ("inf", 0)],
)
def test_token_count(value, expected):
    assert token_count(value) == expected
