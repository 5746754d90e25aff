"""Core data structures for per-project agent sessions."""
from __future__ import annotations

import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from threading import Event, RLock, Thread
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from ai_project_agent.core.utils.cancellation import CancellationToken
from ai_project_agent.core.utils.cost_tracker import CostTracker
from ai_project_agent.providers.llm.base import Message, TurnError
from ai_project_agent.tools.registry import ToolRegistry

if TYPE_CHECKING:  # pragma: no cover
    from ai_project_agent.engine.react.types import GenerationResult

DEFAULT_MAX_STEPS = 50

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _settled_event() -> Event:
    event = Event()
    event.set()
    return event


def generate_session_name(now: Optional[datetime] = None) -> str:
    """Return a sortable history name such as ``2024-08-24T17-15-22Z-def``."""
    moment = (now or utcnow()).astimezone(timezone.utc)
    suffix = "".join(random.choices(_SUFFIX_ALPHABET, k=3))
    return f"{moment.strftime('%Y-%m-%dT%H-%M-%S')}Z-{suffix}"


@dataclass(frozen=True)
class SessionConfig:
    """Configuration fixed when a session is created."""

    project_id: str
    project_name: Optional[str] = None
    tools: ToolRegistry = field(default_factory=ToolRegistry, compare=False)
    system_prompt: Optional[str] = None
    max_steps: int = DEFAULT_MAX_STEPS
    streaming_update_interval: float = 0.05

    def __post_init__(self) -> None:
        if not self.project_id:
            raise ValueError("project_id must be a non-empty string")
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if self.streaming_update_interval < 0:
            raise ValueError("streaming_update_interval cannot be negative")

    @property
    def display_name(self) -> str:
        return self.project_name or self.project_id


@dataclass(frozen=True)
class PartialToolCall:
    """Tool call assembled from stream fragments so far."""

    index: int
    id: Optional[str] = None
    name: str = ""
    arguments: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id or "",
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class StreamingMessage:
    """In-flight assistant turn; replaced wholesale on every update."""

    content: str = ""
    tool_calls: Tuple[PartialToolCall, ...] = ()
    role: str = "assistant"


@dataclass
class Session:
    """Conversation and execution state for one project."""

    config: SessionConfig
    session_name: str = field(default_factory=generate_session_name)
    messages: List[Message] = field(default_factory=list)
    streaming_message: Optional[StreamingMessage] = None
    is_loading: bool = False
    cancellation: Optional[CancellationToken] = None
    cost_tracker: CostTracker = field(default_factory=CostTracker)
    last_input_tokens: int = 0
    last_error: Optional[TurnError] = None
    last_activity: datetime = field(default_factory=utcnow)
    generation_count: int = 0
    last_result: Optional["GenerationResult"] = None
    settled: Event = field(default_factory=_settled_event, repr=False)
    lock: RLock = field(default_factory=RLock, repr=False)
    worker: Optional[Thread] = field(default=None, repr=False)
    # Thread announcing a generation whose worker has not started yet.
    announcer: Optional[Thread] = field(default=None, repr=False)
    # Set once the session left the registry; no generation may start on it.
    closed: bool = False

    @property
    def project_id(self) -> str:
        return self.config.project_id

    @property
    def project_name(self) -> str:
        return self.config.display_name

    @property
    def total_cost(self) -> Decimal:
        return self.cost_tracker.total_cost

    def touch(self) -> None:
        self.last_activity = utcnow()

    def snapshot(self) -> List[Message]:
        """Return a copy of the finalized history."""
        with self.lock:
            return list(self.messages)

    def compose(self) -> List[Message]:
        """Return the provider-ready message list, system prompt first."""
        history = self.snapshot()
        if self.config.system_prompt:
            return [Message(role="system", content=self.config.system_prompt), *history]
        return history


__all__ = [
    "DEFAULT_MAX_STEPS",
    "PartialToolCall",
    "Session",
    "SessionConfig",
    "StreamingMessage",
    "generate_session_name",
    "utcnow",
]
