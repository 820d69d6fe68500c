"""Tests for tool definition and tool call validation."""

import json

import pytest

from llm_provider_kit.models import Tool, ToolCall, ToolChoice
from llm_provider_kit.tools import ToolValidator

WEATHER = Tool(
    name="get_weather",
    description="Current weather",
    parameters={
        "type": "object",
        "properties": {
            "city": {"type": "string"},
            "unit": {"type": "string", "enum": ["celsius", "fahrenheit"]},
            "days": {"type": "integer"},
            "coords": {
                "type": "object",
                "properties": {"lat": {"type": "number"}, "lon": {"type": "number"}},
                "required": ["lat", "lon"],
            },
            "tags": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["city"],
    },
)


def weather_call(arguments, name: str = "get_weather", call_id: str = "call_1") -> ToolCall:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return ToolCall(id=call_id, function={"name": name, "arguments": arguments})


class TestToolDefinitions:
    """Tool definitions checked before a request is sent."""

    def test_valid_definition(self):
        ToolValidator().validate_definition(WEATHER)
        ToolValidator().validate_definition(Tool(name="noop"))

    @pytest.mark.parametrize(
        "tool,message",
        [
            (Tool(name=""), "name is required"),
            (Tool(name="get weather"), "letters, digits"),
            (Tool(name="x" * 65), "letters, digits"),
            (Tool(name="t", parameters={"properties": {}}), "type field"),
            (Tool(name="t", parameters={"type": "string"}), "object schema"),
            (Tool(name="t", parameters={"type": "object", "properties": []}), "properties"),
            (Tool(name="t", parameters={"type": "object", "required": "city"}), "required"),
        ],
    )
    def test_invalid_definitions(self, tool, message):
        with pytest.raises(ValueError, match=message):
            ToolValidator().validate_definition(tool)

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError, match="duplicate tool name 'get_weather'"):
            ToolValidator().validate_definitions([WEATHER, WEATHER])

    def test_specific_tool_choice_must_name_a_tool(self):
        validator = ToolValidator()

        validator.validate_definitions([WEATHER], ToolChoice(mode="specific", name="get_weather"))
        validator.validate_definitions([WEATHER], ToolChoice(mode="auto"))
        with pytest.raises(ValueError, match="unknown tool 'get_time'"):
            validator.validate_definitions([WEATHER], ToolChoice(mode="specific", name="get_time"))


class TestToolCalls:
    """Tool call arguments checked against the tool's schema."""

    def test_valid_call_returns_arguments(self):
        arguments = {
            "city": "Paris",
            "unit": "celsius",
            "days": 3.0,
            "coords": {"lat": 48.8, "lon": 2},
            "tags": ["today"],
        }

        assert ToolValidator().validate_call(WEATHER, weather_call(arguments)) == arguments

    @pytest.mark.parametrize(
        "arguments,message",
        [
            ({}, "required field city is missing"),
            ({"city": 7}, "field city must be string"),
            ({"city": "Paris", "unit": "kelvin"}, "not in allowed values"),
            ({"city": "Paris", "days": 2.5}, "field days must be integer"),
            ({"city": "Paris", "days": True}, "field days must be integer"),
            ({"city": "Paris", "coords": {"lat": 1}}, "required field coords.lon is missing"),
            ({"city": "Paris", "coords": {"lat": "x", "lon": 1}}, "coords.lat must be number"),
            ({"city": "Paris", "tags": ["ok", 3]}, r"tags\[1\] must be string"),
            ("[1, 2]", "must be a JSON object"),
            ("{not json", "invalid tool call arguments JSON"),
        ],
    )
    def test_invalid_arguments(self, arguments, message):
        with pytest.raises(ValueError, match=message):
            ToolValidator().validate_call(WEATHER, weather_call(arguments))

    def test_name_and_id_checked(self):
        validator = ToolValidator()

        with pytest.raises(ValueError, match="doesn't match tool get_weather"):
            validator.validate_call(WEATHER, weather_call({"city": "Paris"}, name="get_time"))
        with pytest.raises(ValueError, match="ID is required"):
            validator.validate_call(WEATHER, weather_call({"city": "Paris"}, call_id=""))

    def test_extra_fields_only_rejected_in_strict_mode(self):
        call = weather_call({"city": "Paris", "mood": "sunny"})

        assert ToolValidator().validate_call(WEATHER, call)["mood"] == "sunny"
        with pytest.raises(ValueError, match="unexpected field mood"):
            ToolValidator(strict=True).validate_call(WEATHER, call)

    def test_validate_calls_looks_up_tools_by_name(self):
        validator = ToolValidator()
        calls = [weather_call({"city": "Paris"}), weather_call({"city": "Oslo"}, call_id="call_2")]

        assert validator.validate_calls([WEATHER], calls) == [{"city": "Paris"}, {"city": "Oslo"}]
        with pytest.raises(ValueError, match="unknown tool 'get_time'"):
            validator.validate_calls([WEATHER], [weather_call({}, name="get_time")])
