"""Execution engine for agent sessions."""
from __future__ import annotations

from . import react
from .react import GenerationLoop, GenerationResult

__all__ = ["GenerationLoop", "GenerationResult", "react"]
