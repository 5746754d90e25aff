"""Shared data structures for the generation loop."""
from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

GenerationStatus = Literal["completed", "budget_exhausted", "cancelled", "failed"]


class ToolOutcome(BaseModel):
    """Result of executing (or refusing to execute) one tool call."""

    call_id: str
    tool: str
    success: bool
    content: str = Field(default="", description="Text returned to the model as the tool turn.")
    error_kind: Optional[str] = Field(default=None, description="TurnError kind when the call failed.")
    error_message: Optional[str] = None
    fatal: bool = Field(default=False, description="Whether the failure ends the generation.")
    duration_seconds: Optional[float] = None


class GenerationResult(BaseModel):
    """Final outcome of one generation."""

    project_id: str
    generation: int
    status: GenerationStatus
    provider_model: str
    steps: int = 0
    provider_calls: int = 0
    messages_added: int = 0
    stop_reason: Optional[str] = None
    runtime_seconds: Optional[float] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status in {"completed", "budget_exhausted"}


__all__ = ["GenerationResult", "GenerationStatus", "ToolOutcome"]
