"""Generation loop primitives."""
from __future__ import annotations

from .loop import GenerationLoop, ModelResolver, budget_message, describe_provider_error
from .streaming import CompletedTurn, StreamAccumulator, StreamThrottle
from .tool_invoker import RegistryToolInvoker
from .types import GenerationResult, GenerationStatus, ToolOutcome

__all__ = [
    "CompletedTurn",
    "GenerationLoop",
    "GenerationResult",
    "GenerationStatus",
    "ModelResolver",
    "RegistryToolInvoker",
    "StreamAccumulator",
    "StreamThrottle",
    "ToolOutcome",
    "budget_message",
    "describe_provider_error",
]
