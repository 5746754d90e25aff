"""CLI package exposing the project agent command entry points."""
from __future__ import annotations

from .commands import chat, cli, history, main
from .utils import StreamPrinter, build_manager, build_session_config

__all__ = [
    "StreamPrinter",
    "build_manager",
    "build_session_config",
    "chat",
    "cli",
    "history",
    "main",
]
