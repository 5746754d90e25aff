"""Tool invoker that routes model tool calls to registry-backed implementations."""
from __future__ import annotations

import json
import time
from typing import Any, Dict

from ai_project_agent.core.utils.logger import get_logger
from ai_project_agent.session.models import PartialToolCall
from ai_project_agent.tools.registry import (
    MalformedToolCallError,
    ToolExecutionError,
    ToolInputError,
    ToolRegistry,
)

from .types import ToolOutcome

LOGGER = get_logger(__name__)


class RegistryToolInvoker:
    """Execute one tool call at a time against a session's tool registry."""

    def __init__(self, registry: ToolRegistry, *, model: str) -> None:
        self.registry = registry
        self.model = model

    def parse_arguments(self, call: PartialToolCall) -> Dict[str, Any]:
        """Decode the call's JSON arguments.

        Raises :class:`MalformedToolCallError` when the text is not JSON at all,
        which usually means the stream was cut off mid-call.
        """
        raw = call.arguments.strip()
        if not raw:
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedToolCallError(
                f"Arguments for tool {call.name or '<unnamed>'} are not valid JSON: {exc.msg}",
                tool_call_id=call.id,
                model=self.model,
                tool_name=call.name,
            ) from exc
        if not isinstance(decoded, dict):
            raise ToolInputError(
                f"Invalid input for {call.name}: expected a JSON object, got {type(decoded).__name__}",
                tool_name=call.name,
            )
        return decoded

    def __call__(self, call: PartialToolCall) -> ToolOutcome:
        """Run ``call``; every failure except a malformed call becomes an error outcome."""
        call_id = call.id or ""
        if call.name not in self.registry:
            LOGGER.warning("Model %s requested unknown tool %r", self.model, call.name)
            return ToolOutcome(
                call_id=call_id,
                tool=call.name,
                success=False,
                content=f"Tool {call.name} not found",
                error_kind="tool",
                error_message=f"Tool {call.name} not found",
            )

        started = time.perf_counter()
        try:
            arguments = self.parse_arguments(call)
            content = self.registry.invoke(call.name, arguments)
        except ToolInputError as exc:
            return ToolOutcome(
                call_id=call_id,
                tool=call.name,
                success=False,
                content=f"Error parsing arguments for tool {call.name}: {exc}",
                error_kind="malformed_tool_call",
                error_message=str(exc),
                duration_seconds=time.perf_counter() - started,
            )
        except ToolExecutionError as exc:
            LOGGER.warning("Tool %s failed%s: %s", call.name, " (fatal)" if exc.fatal else "", exc)
            return ToolOutcome(
                call_id=call_id,
                tool=call.name,
                success=False,
                content=f"Error executing tool {call.name}: {exc}",
                error_kind="tool",
                error_message=str(exc),
                fatal=exc.fatal,
                duration_seconds=time.perf_counter() - started,
            )

        duration = time.perf_counter() - started
        LOGGER.debug("Tool %s completed in %.3fs", call.name, duration)
        return ToolOutcome(
            call_id=call_id,
            tool=call.name,
            success=True,
            content=content,
            duration_seconds=duration,
        )


__all__ = ["RegistryToolInvoker"]
