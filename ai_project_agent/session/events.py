"""Typed publish/subscribe channel for session state changes.

Every event is a frozen dataclass with a stable ``name``; listeners subscribe by
event class or by that name. Emission is synchronous and runs on the emitting
thread (usually a generation worker), so listeners must hand long-running work
off themselves.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from threading import RLock
from typing import Callable, ClassVar, Dict, List, Optional, Type, Union

from ai_project_agent.core.utils.logger import get_logger
from ai_project_agent.providers.llm.base import Message, TurnError

from .models import StreamingMessage

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class SessionEvent:
    name: ClassVar[str] = "session"

    project_id: str


@dataclass(frozen=True)
class SessionCreated(SessionEvent):
    name: ClassVar[str] = "sessionCreated"

    session_name: str = ""
    restored_messages: int = 0


@dataclass(frozen=True)
class SessionDeleted(SessionEvent):
    name: ClassVar[str] = "sessionDeleted"


@dataclass(frozen=True)
class SessionReset(SessionEvent):
    name: ClassVar[str] = "sessionReset"

    session_name: str = ""


@dataclass(frozen=True)
class MessageAdded(SessionEvent):
    name: ClassVar[str] = "messageAdded"

    message: Message
    index: int


@dataclass(frozen=True)
class StreamingUpdate(SessionEvent):
    name: ClassVar[str] = "streamingUpdate"

    streaming_message: Optional[StreamingMessage] = None

    @property
    def content(self) -> str:
        return self.streaming_message.content if self.streaming_message else ""


@dataclass(frozen=True)
class LoadingChanged(SessionEvent):
    name: ClassVar[str] = "loadingChanged"

    is_loading: bool = False


@dataclass(frozen=True)
class CostUpdated(SessionEvent):
    name: ClassVar[str] = "costUpdated"

    total_cost: Decimal = Decimal("0")
    turn_cost: Decimal = Decimal("0")


@dataclass(frozen=True)
class ContextUsageUpdated(SessionEvent):
    name: ClassVar[str] = "contextUsageUpdated"

    input_tokens: int = 0
    context_length: Optional[int] = None
    percentage: Optional[float] = None


@dataclass(frozen=True)
class GenerationFailed(SessionEvent):
    name: ClassVar[str] = "generationFailed"

    error: TurnError


EVENT_TYPES: Dict[str, Type[SessionEvent]] = {
    event_type.name: event_type
    for event_type in (
        SessionCreated,
        SessionDeleted,
        SessionReset,
        MessageAdded,
        StreamingUpdate,
        LoadingChanged,
        CostUpdated,
        ContextUsageUpdated,
        GenerationFailed,
    )
}

Listener = Callable[[SessionEvent], None]
EventKey = Union[str, Type[SessionEvent]]


def _event_name(event: EventKey) -> str:
    if isinstance(event, str):
        if event not in EVENT_TYPES:
            raise ValueError(f"Unknown event '{event}'")
        return event
    if isinstance(event, type) and issubclass(event, SessionEvent) and event.name in EVENT_TYPES:
        return event.name
    raise ValueError(f"Unknown event type {event!r}")


class EventBus:
    """Registry of event name to ordered listeners."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = RLock()

    def on(self, event: EventKey, listener: Listener) -> Callable[[], None]:
        """Subscribe ``listener``; registering the same callable twice is a no-op.

        Returns a callable that unsubscribes it again.
        """
        name = _event_name(event)
        with self._lock:
            listeners = self._listeners.setdefault(name, [])
            if listener not in listeners:
                listeners.append(listener)
        return lambda: self.off(name, listener)

    def off(self, event: EventKey, listener: Listener) -> bool:
        name = _event_name(event)
        with self._lock:
            listeners = self._listeners.get(name)
            if not listeners or listener not in listeners:
                return False
            listeners.remove(listener)
            return True

    def emit(self, event: SessionEvent) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event.name, ()))
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001 - listeners are isolated from each other
                LOGGER.exception("Listener %r failed while handling %s", listener, event.name)

    def listener_count(self, event: EventKey | None = None) -> int:
        with self._lock:
            if event is None:
                return sum(len(items) for items in self._listeners.values())
            return len(self._listeners.get(_event_name(event), ()))

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()


__all__ = [
    "ContextUsageUpdated",
    "CostUpdated",
    "EVENT_TYPES",
    "EventBus",
    "GenerationFailed",
    "Listener",
    "LoadingChanged",
    "MessageAdded",
    "SessionCreated",
    "SessionDeleted",
    "SessionEvent",
    "SessionReset",
    "StreamingUpdate",
]
