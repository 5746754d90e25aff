"""Accumulate provider stream fragments into a streaming message."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ai_project_agent.core.utils.cost_tracker import TokenUsage
from ai_project_agent.providers.llm.base import Message, StreamEvent, StreamFinish, TextDelta, ToolCallDelta
from ai_project_agent.session.models import PartialToolCall, StreamingMessage


@dataclass(frozen=True)
class CompletedTurn:
    """Assistant turn assembled from a finished stream."""

    content: str
    tool_calls: Tuple[PartialToolCall, ...]
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None

    def to_message(self) -> Message:
        if self.tool_calls:
            return Message(
                role="assistant",
                content=self.content or None,
                tool_calls=[call.to_payload() for call in self.tool_calls],
            )
        return Message(role="assistant", content=self.content)


class StreamAccumulator:
    """Merge text and tool-call fragments; fragments sharing an index form one call."""

    def __init__(self) -> None:
        self._text: List[str] = []
        self._calls: Dict[int, PartialToolCall] = {}
        self.finish: Optional[StreamFinish] = None

    def add(self, event: StreamEvent) -> bool:
        """Apply ``event``; returns whether the visible message changed."""
        if isinstance(event, TextDelta):
            if not event.text:
                return False
            self._text.append(event.text)
            return True
        if isinstance(event, ToolCallDelta):
            current = self._calls.get(event.index) or PartialToolCall(index=event.index)
            self._calls[event.index] = PartialToolCall(
                index=event.index,
                id=event.id or current.id,
                name=event.name or current.name,
                arguments=current.arguments + (event.arguments or ""),
            )
            return True
        if isinstance(event, StreamFinish):
            self.finish = event
        return False

    def snapshot(self) -> StreamingMessage:
        return StreamingMessage(content="".join(self._text), tool_calls=self._ordered_calls())

    def complete(self) -> CompletedTurn:
        calls = tuple(
            call if call.id else PartialToolCall(
                index=call.index,
                id=f"call_{call.index}_{uuid.uuid4().hex[:12]}",
                name=call.name,
                arguments=call.arguments,
            )
            for call in self._ordered_calls()
        )
        return CompletedTurn(
            content="".join(self._text),
            tool_calls=calls,
            finish_reason=self.finish.finish_reason if self.finish else None,
            usage=self.finish.usage if self.finish else None,
        )

    def _ordered_calls(self) -> Tuple[PartialToolCall, ...]:
        return tuple(self._calls[index] for index in sorted(self._calls))


class StreamThrottle:
    """Coalesce streaming updates to at most one per ``interval`` seconds."""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval = max(0.0, interval)
        self._clock = clock
        self._last: Optional[float] = None
        self.pending = False

    def should_emit(self) -> bool:
        """Record a change and return whether it should be emitted now."""
        now = self._clock()
        if self.interval == 0 or self._last is None or now - self._last >= self.interval:
            self._last = now
            self.pending = False
            return True
        self.pending = True
        return False

    def flush(self) -> bool:
        """Return whether a coalesced change still needs emitting."""
        if not self.pending:
            return False
        self.pending = False
        self._last = self._clock()
        return True


__all__ = ["CompletedTurn", "StreamAccumulator", "StreamThrottle"]
