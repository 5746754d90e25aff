"""Tool contract used by the generation loop."""
from __future__ import annotations

from .registry import (
    MalformedToolCallError,
    ToolError,
    ToolExecutionError,
    ToolHandler,
    ToolInputError,
    ToolRegistry,
    ToolSpec,
)

__all__ = [
    "MalformedToolCallError",
    "ToolError",
    "ToolExecutionError",
    "ToolHandler",
    "ToolInputError",
    "ToolRegistry",
    "ToolSpec",
]
