"""Helpers that wire settings into a ready session manager for the CLI."""
from __future__ import annotations

from typing import Any, Dict, Optional

import click

from ai_project_agent.core.utils.config import Settings
from ai_project_agent.core.utils.cost_tracker import StaticPriceTable
from ai_project_agent.core.utils.logger import get_logger
from ai_project_agent.providers.llm.resolver import ProviderResolver
from ai_project_agent.session import (
    InMemoryHistoryStore,
    JsonlHistoryStore,
    LoadingChanged,
    MessageAdded,
    SessionConfig,
    SessionManager,
    StreamingUpdate,
)
from ai_project_agent.tools.registry import ToolRegistry

LOGGER = get_logger(__name__)

TOOL_OUTPUT_PREVIEW_CHARS = 200


def build_manager(settings: Settings) -> SessionManager:
    history_store = (
        JsonlHistoryStore(settings.history_root) if settings.persist_history else InMemoryHistoryStore()
    )
    return SessionManager(
        ProviderResolver.from_settings(settings),
        settings=settings,
        history_store=history_store,
        price_table=StaticPriceTable.from_settings(settings),
    )


def build_session_config(
    settings: Settings,
    project_id: str,
    *,
    project_name: Optional[str] = None,
    tools: Optional[ToolRegistry] = None,
) -> SessionConfig:
    return SessionConfig(
        project_id=project_id,
        project_name=project_name,
        tools=tools if tools is not None else ToolRegistry(),
        system_prompt=settings.system_prompt,
        max_steps=settings.max_steps,
        streaming_update_interval=settings.streaming_update_interval,
    )


def _build_context(settings: Settings) -> Dict[str, Any]:
    return {
        "settings": settings,
        "manager": None,
    }


def get_manager(ctx: click.Context) -> SessionManager:
    """Return the context's session manager, building it on first use."""
    manager = ctx.obj.get("manager")
    if manager is None:
        manager = build_manager(ctx.obj["settings"])
        ctx.obj["manager"] = manager
        ctx.call_on_close(manager.shutdown)
    return manager


class StreamPrinter:
    """Echo streaming text and finalized turns of one project to the terminal."""

    def __init__(self, manager: SessionManager, project_id: str) -> None:
        self.project_id = project_id
        self._printed = 0
        self._unsubscribe = [
            manager.on(StreamingUpdate, self._on_streaming),
            manager.on(MessageAdded, self._on_message),
            manager.on(LoadingChanged, self._on_loading),
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    def _on_streaming(self, event: StreamingUpdate) -> None:
        if event.project_id != self.project_id or event.streaming_message is None:
            return
        text = event.streaming_message.content
        if len(text) > self._printed:
            click.echo(text[self._printed:], nl=False)
            self._printed = len(text)

    def _on_message(self, event: MessageAdded) -> None:
        if event.project_id != self.project_id:
            return
        message = event.message
        if message.role == "assistant":
            remainder = (message.content or "")[self._printed:]
            if remainder or self._printed:
                click.echo(remainder)
            self._printed = 0
            for call in message.tool_calls or ():
                function = call.get("function") or {}
                click.secho(
                    f"-> {function.get('name', '?')}({function.get('arguments', '')})",
                    fg="cyan",
                    err=True,
                )
        elif message.role == "tool":
            preview = (message.content or "").strip().replace("\n", " ")
            if len(preview) > TOOL_OUTPUT_PREVIEW_CHARS:
                preview = preview[:TOOL_OUTPUT_PREVIEW_CHARS] + "..."
            click.secho(f"<- {preview}", fg="red" if message.error else "bright_black", err=True)

    def _on_loading(self, event: LoadingChanged) -> None:
        if event.project_id == self.project_id and not event.is_loading and self._printed:
            # Cancelled mid-stream: terminate the partial line.
            click.echo()
            self._printed = 0


__all__ = ["StreamPrinter", "build_manager", "build_session_config", "get_manager"]
