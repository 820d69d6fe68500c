"""Validation of tool definitions and of the tool calls made against them."""

import json
import re
from typing import Any, Iterable

from .models import Tool, ToolCall, ToolChoice

TOOL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
    "null": (type(None),),
}


def _matches_type(value: Any, expected: str) -> bool:
    if expected not in _JSON_TYPES:
        return True
    if isinstance(value, bool) and expected in ("number", "integer"):
        return False
    if expected == "integer" and isinstance(value, float):
        return value.is_integer()
    return isinstance(value, _JSON_TYPES[expected])


class ToolValidator:
    """Check tool definitions before they are sent and tool calls after they come back.

    Argument checks cover the parts of JSON Schema that tool definitions use in
    practice: ``required``, ``properties`` with ``type`` and ``enum``, nested
    objects and array ``items``. In strict mode, arguments that the schema does
    not declare are rejected.

    All checks raise ``ValueError`` with a message naming the offending field.
    """

    def __init__(self, strict: bool = False):
        self.strict = strict

    def validate_definition(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("tool name is required")
        if not TOOL_NAME_PATTERN.match(tool.name):
            raise ValueError(
                f"tool name '{tool.name}' must be 1-64 letters, digits, underscores or dashes"
            )
        schema = tool.parameters
        schema_type = schema.get("type")
        if not schema_type:
            raise ValueError(f"parameters of tool '{tool.name}' must have a type field")
        if schema_type != "object":
            raise ValueError(f"parameters of tool '{tool.name}' must be an object schema")
        properties = schema.get("properties", {})
        if not isinstance(properties, dict):
            raise ValueError(f"properties of tool '{tool.name}' must be an object")
        required = schema.get("required", [])
        if not isinstance(required, list) or not all(isinstance(key, str) for key in required):
            raise ValueError(f"required of tool '{tool.name}' must be a list of names")

    def validate_definitions(
        self, tools: Iterable[Tool], tool_choice: ToolChoice | None = None
    ) -> None:
        """Validate every tool, reject duplicate names and dangling tool choices."""
        names: set[str] = set()
        for tool in tools:
            self.validate_definition(tool)
            if tool.name in names:
                raise ValueError(f"duplicate tool name '{tool.name}'")
            names.add(tool.name)
        if tool_choice is not None and tool_choice.mode == "specific":
            if tool_choice.name not in names:
                raise ValueError(f"tool_choice names unknown tool '{tool_choice.name}'")

    def validate_call(self, tool: Tool, call: ToolCall) -> dict[str, Any]:
        """Check one tool call against its definition and return the parsed arguments."""
        if call.function.name != tool.name:
            raise ValueError(
                f"tool call name {call.function.name} doesn't match tool {tool.name}"
            )
        if not call.id:
            raise ValueError("tool call ID is required")
        try:
            arguments = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid tool call arguments JSON: {e}") from e
        if not isinstance(arguments, dict):
            raise ValueError("tool call arguments must be a JSON object")
        self._check_object(arguments, tool.parameters, "")
        return arguments

    def validate_calls(self, tools: Iterable[Tool], calls: Iterable[ToolCall]) -> list[dict[str, Any]]:
        by_name = {tool.name: tool for tool in tools}
        parsed = []
        for call in calls:
            tool = by_name.get(call.function.name)
            if tool is None:
                raise ValueError(f"tool call names unknown tool '{call.function.name}'")
            parsed.append(self.validate_call(tool, call))
        return parsed

    def _check_object(self, data: dict[str, Any], schema: dict[str, Any], path: str) -> None:
        for key in schema.get("required", []):
            if key not in data:
                raise ValueError(f"required field {path}{key} is missing")
        properties = schema.get("properties")
        if not isinstance(properties, dict):
            return
        for key, value in data.items():
            if key not in properties:
                if self.strict:
                    raise ValueError(f"unexpected field {path}{key} (strict mode)")
                continue
            self._check_value(value, properties[key], f"{path}{key}")

    def _check_value(self, value: Any, schema: Any, field: str) -> None:
        if not isinstance(schema, dict):
            return
        expected = schema.get("type")
        types = expected if isinstance(expected, list) else [expected] if expected else []
        if types and not any(_matches_type(value, t) for t in types):
            raise ValueError(f"field {field} must be {' or '.join(types)}")
        enum = schema.get("enum")
        if isinstance(enum, list) and value not in enum:
            raise ValueError(f"field {field} value {value!r} is not in allowed values {enum}")
        if isinstance(value, dict):
            self._check_object(value, schema, f"{field}.")
        elif isinstance(value, list) and isinstance(schema.get("items"), dict):
            for i, item in enumerate(value):
                self._check_value(item, schema["items"], f"{field}[{i}]")
