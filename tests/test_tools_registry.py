"""Tests for registry-backed tools."""
from __future__ import annotations

import pytest
from jsonschema.exceptions import SchemaError

from ai_project_agent.tools import ToolExecutionError, ToolInputError, ToolRegistry, ToolSpec


def _registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool(
        "write_file",
        input_schema={
            "type": "object",
            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
            "required": ["path", "content"],
        },
    )
    def write_file(payload):
        """Write a file in the project."""
        return {"written": payload["path"], "bytes": len(payload["content"])}

    @registry.tool("list_files")
    def list_files(payload):
        return ["index.html", "style.css"]

    return registry


def test_definitions_are_sorted_openai_functions() -> None:
    definitions = _registry().definitions()

    assert [d["function"]["name"] for d in definitions] == ["list_files", "write_file"]
    assert definitions[1]["type"] == "function"
    assert definitions[1]["function"]["description"] == "Write a file in the project."
    assert definitions[1]["function"]["parameters"]["required"] == ["path", "content"]


def test_invoke_returns_text() -> None:
    registry = _registry()

    assert registry.invoke("write_file", {"path": "a.txt", "content": "hey"}) == '{"written": "a.txt", "bytes": 3}'
    assert registry.invoke("list_files", {}) == '["index.html", "style.css"]'


def test_invoke_validates_input() -> None:
    registry = _registry()

    with pytest.raises(ToolInputError) as excinfo:
        registry.invoke("write_file", {"path": "a.txt", "content": 5})

    assert "(at content)" in str(excinfo.value)
    assert excinfo.value.tool_name == "write_file"


def test_handler_failures_are_wrapped() -> None:
    def explode(payload):
        raise OSError("disk full")

    registry = ToolRegistry([ToolSpec(name="save", handler=explode, fatal_on_error=True)])

    with pytest.raises(ToolExecutionError) as excinfo:
        registry.invoke("save", {})

    assert str(excinfo.value) == "OSError: disk full"
    assert excinfo.value.fatal is True


def test_invalid_schema_is_rejected_at_registration() -> None:
    with pytest.raises(SchemaError):
        ToolSpec(name="bad", handler=lambda payload: None, input_schema={"type": "nope"})


def test_membership_and_lookup() -> None:
    registry = _registry()

    assert "write_file" in registry
    assert "delete_file" not in registry
    assert len(registry) == 2
    with pytest.raises(KeyError):
        registry.get("delete_file")
    assert len(ToolRegistry()) == 0
