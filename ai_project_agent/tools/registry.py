"""Tool registry and validation helpers."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from jsonschema import Draft7Validator

from ai_project_agent.core.utils.logger import get_logger

LOGGER = get_logger(__name__)

ToolHandler = Callable[[Mapping[str, Any]], Any]


class ToolError(RuntimeError):
    """Base class for tool failures surfaced to the generation loop."""

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ToolInputError(ToolError):
    """Raised when tool arguments do not satisfy the tool's input schema."""


class ToolExecutionError(ToolError):
    """Raised when a tool handler fails.

    ``fatal`` failures end the generation after the current tool call; the
    remaining calls of the turn are answered with a skipped result.
    """

    def __init__(self, message: str, *, tool_name: str | None = None, fatal: bool = False) -> None:
        super().__init__(message, tool_name=tool_name)
        self.fatal = fatal


class MalformedToolCallError(ToolError):
    """Raised when a tool call's arguments cannot be decoded at all."""

    def __init__(
        self,
        message: str,
        *,
        tool_call_id: str | None,
        model: str | None,
        tool_name: str | None = None,
    ) -> None:
        super().__init__(message, tool_name=tool_name)
        self.tool_call_id = tool_call_id
        self.model = model


@dataclass
class ToolSpec:
    """Metadata for a registered tool."""

    name: str
    handler: ToolHandler
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object"})
    description: str = ""
    fatal_on_error: bool = False

    def __post_init__(self) -> None:
        Draft7Validator.check_schema(self.input_schema)
        self._validator = Draft7Validator(self.input_schema)

    @property
    def validator(self) -> Draft7Validator:
        return self._validator

    def definition(self) -> Dict[str, Any]:
        """Return the OpenAI function-tool payload for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolRegistry:
    """Registry that manages tool specifications and validation."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._tools: Dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            LOGGER.debug("Overwriting existing tool registration for %s", spec.name)
        self._tools[spec.name] = spec

    def tool(
        self,
        name: str,
        *,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        fatal_on_error: bool = False,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator registering ``handler`` under ``name``."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(
                ToolSpec(
                    name=name,
                    handler=handler,
                    input_schema=input_schema or {"type": "object"},
                    description=description or (handler.__doc__ or "").strip(),
                    fatal_on_error=fatal_on_error,
                )
            )
            return handler

        return decorator

    def get(self, name: str) -> ToolSpec:
        if name not in self._tools:
            raise KeyError(f"Tool '{name}' is not registered")
        return self._tools[name]

    def available(self) -> Iterable[str]:
        return sorted(self._tools.keys())

    def definitions(self) -> List[Dict[str, Any]]:
        return [self._tools[name].definition() for name in self.available()]

    def validate(self, name: str, payload: Mapping[str, Any]) -> None:
        spec = self.get(name)
        errors = sorted(spec.validator.iter_errors(payload), key=lambda exc: list(exc.path))
        if errors:
            first = errors[0]
            location = "/".join(str(part) for part in first.path)
            suffix = f" (at {location})" if location else ""
            raise ToolInputError(f"Invalid input for {name}: {first.message}{suffix}", tool_name=name)

    def invoke(self, name: str, payload: Mapping[str, Any]) -> str:
        """Validate ``payload``, run the handler and return its result as text."""
        spec = self.get(name)
        self.validate(name, payload)
        try:
            result = spec.handler(payload)
        except (ToolInputError, ToolExecutionError):
            raise
        except Exception as exc:
            raise ToolExecutionError(
                f"{type(exc).__name__}: {exc}", tool_name=name, fatal=spec.fatal_on_error
            ) from exc
        return _stringify(result)


def _stringify(result: Any) -> str:
    if isinstance(result, str):
        return result
    if result is None:
        return ""
    return json.dumps(result, ensure_ascii=False, default=str)


__all__ = [
    "MalformedToolCallError",
    "ToolError",
    "ToolExecutionError",
    "ToolHandler",
    "ToolInputError",
    "ToolRegistry",
    "ToolSpec",
]
