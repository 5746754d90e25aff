"""Commit session mutations, then persist and publish them.

Every write goes through :class:`SessionRecorder` so that state is changed under
the session lock and events are emitted only after the lock is released. Writes
made on behalf of a generation carry that generation's cancellation token as
``owner``; once a session has been reset or force-detached the token no longer
matches and late writes from the old generation are dropped.
"""
from __future__ import annotations

from decimal import Decimal
from threading import Event
from typing import TYPE_CHECKING, Optional

from ai_project_agent.core.utils.cancellation import CancellationToken
from ai_project_agent.core.utils.cost_tracker import (
    CostRecord,
    PriceTable,
    TokenUsage,
    context_usage_percentage,
)
from ai_project_agent.core.utils.logger import get_logger
from ai_project_agent.providers.llm.base import Message, TurnError

from .events import (
    ContextUsageUpdated,
    CostUpdated,
    EventBus,
    GenerationFailed,
    LoadingChanged,
    MessageAdded,
    StreamingUpdate,
)
from .models import Session, StreamingMessage
from .persistence import HistoryStore

if TYPE_CHECKING:  # pragma: no cover
    from ai_project_agent.engine.react.types import GenerationResult

LOGGER = get_logger(__name__)


class SessionRecorder:
    """Shared write path used by the session manager and the generation loop."""

    def __init__(
        self,
        bus: EventBus,
        history_store: Optional[HistoryStore] = None,
        price_table: Optional[PriceTable] = None,
    ) -> None:
        self.bus = bus
        self.history_store = history_store
        self.price_table = price_table

    @staticmethod
    def owns(session: Session, owner: Optional[CancellationToken]) -> bool:
        """Return whether ``owner`` may still write to ``session``. Call under the session lock."""
        return owner is None or session.cancellation is owner

    # Messages -----------------------------------------------------------

    def append(
        self,
        session: Session,
        message: Message,
        *,
        owner: Optional[CancellationToken] = None,
        require_idle: bool = False,
    ) -> Optional[int]:
        """Append ``message``; returns its index, or ``None`` when the write was refused."""
        with session.lock:
            if not self.owns(session, owner) or (require_idle and session.is_loading):
                return None
            session.messages.append(message)
            index = len(session.messages) - 1
            session.touch()
            snapshot = list(session.messages)
            session_name = session.session_name
        self._persist(session.project_id, session_name, snapshot)
        self.bus.emit(MessageAdded(project_id=session.project_id, message=message, index=index))
        return index

    def finalize_turn(
        self,
        session: Session,
        message: Message,
        *,
        owner: CancellationToken,
    ) -> Optional[int]:
        """Replace the streaming message by its finalized turn."""
        with session.lock:
            if not self.owns(session, owner):
                return None
            session.streaming_message = None
            session.messages.append(message)
            index = len(session.messages) - 1
            session.touch()
            snapshot = list(session.messages)
            session_name = session.session_name
        self._persist(session.project_id, session_name, snapshot)
        self.bus.emit(MessageAdded(project_id=session.project_id, message=message, index=index))
        self.bus.emit(StreamingUpdate(project_id=session.project_id, streaming_message=None))
        return index

    def update_streaming(
        self,
        session: Session,
        streaming: Optional[StreamingMessage],
        *,
        owner: CancellationToken,
        emit: bool = True,
    ) -> bool:
        with session.lock:
            if not self.owns(session, owner):
                return False
            session.streaming_message = streaming
        if emit:
            self.bus.emit(StreamingUpdate(project_id=session.project_id, streaming_message=streaming))
        return True

    # Accounting -----------------------------------------------------------

    def track_usage(
        self,
        session: Session,
        provider_model: str,
        usage: TokenUsage,
        *,
        owner: CancellationToken,
    ) -> Optional[CostRecord]:
        """Add one completed turn's cost and remember its prompt size."""
        pricing = self.price_table.lookup(provider_model) if self.price_table is not None else None
        with session.lock:
            if not self.owns(session, owner):
                return None
            record = session.cost_tracker.track_turn(provider_model, usage, pricing)
            session.last_input_tokens = usage.prompt_tokens
            total = session.cost_tracker.total_cost
        if pricing is None:
            LOGGER.debug("No pricing for %s; cost unchanged", provider_model)
        self.bus.emit(
            CostUpdated(
                project_id=session.project_id,
                total_cost=total,
                turn_cost=record.cost if record else Decimal("0"),
            )
        )
        self.bus.emit(
            ContextUsageUpdated(
                project_id=session.project_id,
                input_tokens=usage.prompt_tokens,
                context_length=pricing.context_length if pricing else None,
                percentage=context_usage_percentage(usage.prompt_tokens, pricing),
            )
        )
        return record

    # Generation lifecycle -------------------------------------------------

    def fail(self, session: Session, error: TurnError, *, owner: CancellationToken) -> None:
        with session.lock:
            if not self.owns(session, owner):
                return
            session.last_error = error
        self.bus.emit(GenerationFailed(project_id=session.project_id, error=error))

    def detach(
        self,
        session: Session,
        owner: CancellationToken,
        result: Optional["GenerationResult"] = None,
    ) -> bool:
        """Release ``owner``'s hold on the session and emit ``loadingChanged(false)``.

        Returns ``False`` when the generation had already been detached.
        """
        with session.lock:
            if session.cancellation is not owner:
                return False
            settled = self.detach_locked(session, result)
        self.bus.emit(LoadingChanged(project_id=session.project_id, is_loading=False))
        settled.set()
        return True

    @staticmethod
    def detach_locked(session: Session, result: Optional["GenerationResult"] = None) -> Event:
        """Clear the generation state. The caller sets the returned event once it has announced the change."""
        session.is_loading = False
        session.streaming_message = None
        session.cancellation = None
        if result is not None:
            session.last_result = result
        session.touch()
        return session.settled

    # Persistence ---------------------------------------------------------

    def _persist(self, project_id: str, session_name: str, messages: list) -> None:
        if self.history_store is None:
            return
        try:
            self.history_store.save(project_id, session_name, messages)
        except Exception:  # noqa: BLE001 - storage failures never fail a session operation
            LOGGER.exception("Failed to save history for project %s", project_id)


__all__ = ["SessionRecorder"]
