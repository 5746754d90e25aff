"""Session management for per-project agent conversations."""
from __future__ import annotations

from .events import (
    EVENT_TYPES,
    ContextUsageUpdated,
    CostUpdated,
    EventBus,
    GenerationFailed,
    LoadingChanged,
    MessageAdded,
    SessionCreated,
    SessionDeleted,
    SessionEvent,
    SessionReset,
    StreamingUpdate,
)
from .models import PartialToolCall, Session, SessionConfig, StreamingMessage, generate_session_name
from .persistence import (
    HistoryStore,
    HistoryValidationError,
    InMemoryHistoryStore,
    JsonlHistoryStore,
    StoredHistory,
    UnsafeHistoryPathError,
    validate_history,
)
from .recorder import SessionRecorder
from .manager import (
    SessionAlreadyExistsError,
    SessionBusyError,
    SessionError,
    SessionManager,
    SessionNotFoundError,
)

__all__ = [
    "ContextUsageUpdated",
    "CostUpdated",
    "EVENT_TYPES",
    "EventBus",
    "GenerationFailed",
    "HistoryStore",
    "HistoryValidationError",
    "InMemoryHistoryStore",
    "JsonlHistoryStore",
    "LoadingChanged",
    "MessageAdded",
    "PartialToolCall",
    "Session",
    "SessionAlreadyExistsError",
    "SessionBusyError",
    "SessionConfig",
    "SessionCreated",
    "SessionDeleted",
    "SessionError",
    "SessionEvent",
    "SessionManager",
    "SessionNotFoundError",
    "SessionRecorder",
    "SessionReset",
    "StoredHistory",
    "StreamingMessage",
    "StreamingUpdate",
    "UnsafeHistoryPathError",
    "generate_session_name",
    "validate_history",
]
