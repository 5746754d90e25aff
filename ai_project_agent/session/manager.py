"""Session lifecycle management for per-project agent conversations."""
from __future__ import annotations

import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from ai_project_agent.core.utils.cancellation import CancellationToken
from ai_project_agent.core.utils.config import Settings
from ai_project_agent.core.utils.cost_tracker import PriceTable
from ai_project_agent.core.utils.logger import correlation_scope, get_logger
from ai_project_agent.engine.react.loop import GenerationLoop, ModelResolver
from ai_project_agent.providers.llm.base import Message

from .events import (
    ContextUsageUpdated,
    CostUpdated,
    EventBus,
    LoadingChanged,
    SessionCreated,
    SessionDeleted,
    SessionReset,
)
from .models import Session, SessionConfig, generate_session_name, utcnow
from .persistence import HistoryStore, StoredHistory
from .recorder import SessionRecorder

LOGGER = get_logger(__name__)


class SessionError(RuntimeError):
    """Raised when the session manager is used incorrectly."""

    def __init__(self, message: str, *, project_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.project_id = project_id


class SessionNotFoundError(SessionError, KeyError):
    """Raised when no session is registered for a project."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class SessionAlreadyExistsError(SessionError):
    """Raised by :meth:`SessionManager.create_session` for a registered project."""


class SessionBusyError(SessionError):
    """Raised when a direct history edit is attempted during a generation."""


MessageLike = Union[Message, Mapping[str, Any]]


class SessionManager:
    """Registry mapping project identifiers to sessions.

    Each generation runs on its own worker thread; the manager only decides
    whether a generation may start and hands cancellation to it.
    """

    def __init__(
        self,
        resolver: ModelResolver,
        *,
        settings: Optional[Settings] = None,
        history_store: Optional[HistoryStore] = None,
        price_table: Optional[PriceTable] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.resolver = resolver
        self.bus = bus or EventBus()
        self.history_store = history_store
        self.recorder = SessionRecorder(self.bus, history_store, price_table)
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.RLock()

    # Subscription shortcuts ---------------------------------------------

    def on(self, event, listener):
        return self.bus.on(event, listener)

    def off(self, event, listener) -> bool:
        return self.bus.off(event, listener)

    # Registry ------------------------------------------------------------

    def create_session(self, config: SessionConfig) -> Session:
        """Register a session for ``config.project_id``, restoring its latest history."""
        project_id = config.project_id
        with self._lock:
            if project_id in self._sessions:
                raise SessionAlreadyExistsError(
                    f"Session for project '{project_id}' already exists", project_id=project_id
                )

        session = Session(config=config)
        restored = self._load_history(project_id)
        if restored is not None:
            session.messages = list(restored.messages)
            session.session_name = restored.session_name

        with self._lock:
            if project_id in self._sessions:
                raise SessionAlreadyExistsError(
                    f"Session for project '{project_id}' already exists", project_id=project_id
                )
            self._sessions[project_id] = session

        LOGGER.info(
            "Created session %s for project %s (%d restored messages)",
            session.session_name,
            project_id,
            len(session.messages),
        )
        self.bus.emit(
            SessionCreated(
                project_id=project_id,
                session_name=session.session_name,
                restored_messages=len(session.messages),
            )
        )
        self.evict_idle_sessions()
        return session

    def ensure_session(self, config: SessionConfig) -> Session:
        """Return the registered session for the project or create it."""
        existing = self.get_session(config.project_id)
        if existing is not None:
            return existing
        try:
            return self.create_session(config)
        except SessionAlreadyExistsError:
            return self.require_session(config.project_id)

    def get_session(self, project_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(project_id)

    def require_session(self, project_id: str) -> Session:
        session = self.get_session(project_id)
        if session is None:
            raise SessionNotFoundError(f"Session '{project_id}' does not exist", project_id=project_id)
        return session

    def get_all_sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def has_session(self, project_id: str) -> bool:
        with self._lock:
            return project_id in self._sessions

    # Messages ------------------------------------------------------------

    def add_message(self, project_id: str, message: MessageLike) -> Message:
        """Append a turn without starting a generation."""
        session = self.require_session(project_id)
        if not isinstance(message, Message):
            message = Message.from_dict(message)
        if self.recorder.append(session, message, require_idle=True) is None:
            raise SessionBusyError(
                f"Cannot add a message to '{project_id}' while a generation is running",
                project_id=project_id,
            )
        return message

    def send_message(self, project_id: str, content: str, provider_model: Optional[str] = None) -> bool:
        """Append a user turn and start a generation.

        Returns ``False`` without touching the history when a generation is
        already running for the project.
        """
        session = self.require_session(project_id)
        message = Message(role="user", content=content)
        if self.recorder.append(session, message, require_idle=True) is None:
            LOGGER.info("Ignoring message for %s: generation already running", project_id)
            return False
        return self.start_generation(project_id, provider_model)

    # Generation ----------------------------------------------------------

    def start_generation(self, project_id: str, provider_model: Optional[str] = None) -> bool:
        """Start a generation on a worker thread.

        Returns ``False`` (and does nothing) when a generation is already active
        or when there is no user or tool turn to respond to.
        """
        session = self.require_session(project_id)
        model = provider_model or self.settings.default_model
        with session.lock:
            if session.closed:
                raise SessionNotFoundError(f"Session '{project_id}' does not exist", project_id=project_id)
            if session.is_loading:
                LOGGER.debug("Generation already active for %s", project_id)
                return False
            if not session.messages or session.messages[-1].role not in {"user", "tool"}:
                LOGGER.debug("Nothing to respond to for %s", project_id)
                return False
            token = CancellationToken()
            session.is_loading = True
            session.cancellation = token
            session.last_error = None
            session.generation_count += 1
            generation = session.generation_count
            session.settled = threading.Event()
            worker = threading.Thread(
                target=self._run_generation,
                args=(session, token, model, generation),
                name=f"generation-{project_id}",
                daemon=True,
            )
            session.worker = worker
            session.announcer = threading.current_thread()
            session.touch()
        if self.settings.generation_timeout > 0:
            token.cancel_after(self.settings.generation_timeout)
        # Listeners get loadingChanged(true) before any event from the worker.
        try:
            self.bus.emit(LoadingChanged(project_id=project_id, is_loading=True))
        finally:
            with session.lock:
                session.announcer = None
            worker.start()
        return True

    def _run_generation(
        self,
        session: Session,
        token: CancellationToken,
        provider_model: str,
        generation: int,
    ) -> None:
        with correlation_scope(f"{session.project_id}:{generation}"):
            loop = GenerationLoop(
                session,
                self.recorder,
                self.resolver,
                provider_model=provider_model,
                cancellation=token,
                generation=generation,
            )
            loop.run()

    def stop_generation(self, project_id: str) -> bool:
        """Signal cancellation; returns whether a generation was running."""
        session = self.require_session(project_id)
        with session.lock:
            token = session.cancellation
        if token is None:
            return False
        LOGGER.info("Stopping generation for %s", project_id)
        token.cancel("stopped by user")
        return True

    def wait_for_generation(self, project_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the active generation settles; returns whether the session is idle.

        Called from the generation's own thread, or from a listener while the
        generation is being announced, it returns immediately instead of
        waiting on itself.
        """
        session = self.require_session(project_id)
        return self._wait(session, timeout)

    def _wait(self, session: Session, timeout: Optional[float]) -> bool:
        with session.lock:
            settled = session.settled
            current = threading.current_thread()
            on_own_thread = session.worker is current or session.announcer is current
        if settled.is_set() or on_own_thread:
            return settled.is_set()
        return settled.wait(timeout)

    def _cancel_and_settle(self, session: Session, reason: str) -> Optional[threading.Event]:
        """Cancel any active generation and detach it if it does not settle in time.

        Returns the settled event of a generation this call detached itself; the
        caller sets it after emitting ``loadingChanged(false)``.
        """
        with session.lock:
            token = session.cancellation
        if token is None:
            return None
        token.cancel(reason)
        if self._wait(session, self.settings.cancel_wait_timeout):
            return None
        with session.lock:
            if session.cancellation is not token:
                return None
            LOGGER.warning("Detaching unsettled generation for %s", session.project_id)
            return self.recorder.detach_locked(session)

    def _announce_detached(self, project_id: str, settled: Optional[threading.Event]) -> None:
        if settled is None:
            return
        self.bus.emit(LoadingChanged(project_id=project_id, is_loading=False))
        settled.set()

    # Session lifecycle ---------------------------------------------------

    def start_new_session(self, project_id: str) -> Session:
        """Cancel any generation, then clear history, cost and token counters."""
        session = self.require_session(project_id)
        detached = [self._cancel_and_settle(session, "new session")]
        with session.lock:
            token = session.cancellation
            if token is not None:
                # Another caller started a generation while we waited.
                token.cancel("new session")
                detached.append(self.recorder.detach_locked(session))
            session.messages = []
            session.streaming_message = None
            session.cost_tracker.reset()
            session.last_input_tokens = 0
            session.last_error = None
            session.session_name = generate_session_name()
            session.touch()
            session_name = session.session_name

        for settled in detached:
            self._announce_detached(project_id, settled)
        LOGGER.info("Started new session %s for project %s", session_name, project_id)
        self.bus.emit(SessionReset(project_id=project_id, session_name=session_name))
        self.bus.emit(CostUpdated(project_id=project_id, total_cost=Decimal("0"), turn_cost=Decimal("0")))
        self.bus.emit(ContextUsageUpdated(project_id=project_id, input_tokens=0))
        return session

    def delete_session(self, project_id: str) -> None:
        """Cancel any generation and remove the session from the registry."""
        with self._lock:
            session = self._sessions.pop(project_id, None)
        if session is None:
            raise SessionNotFoundError(f"Session '{project_id}' does not exist", project_id=project_id)
        with session.lock:
            session.closed = True
        self._announce_detached(project_id, self._cancel_and_settle(session, "session deleted"))
        LOGGER.info("Deleted session for project %s", project_id)
        self.bus.emit(SessionDeleted(project_id=project_id))

    def evict_idle_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """Drop stale idle sessions, then the least recently active beyond the size cap."""
        moment = now or utcnow()
        max_age = timedelta(days=self.settings.max_session_age_days)
        evicted: List[str] = []
        with self._lock:
            idle = [session for session in self._sessions.values() if not session.is_loading]
            candidates = [session for session in idle if moment - session.last_activity > max_age]
            surplus = len(self._sessions) - len(candidates) - self.settings.max_sessions
            if surplus > 0:
                stale = {session.project_id for session in candidates}
                remaining = sorted(
                    (session for session in idle if session.project_id not in stale),
                    key=lambda session: session.last_activity,
                )
                candidates.extend(remaining[:surplus])
            for session in candidates:
                # A generation may have started since the idle check above.
                with session.lock:
                    if session.is_loading:
                        continue
                    session.closed = True
                del self._sessions[session.project_id]
                evicted.append(session.project_id)

        for project_id in evicted:
            LOGGER.info("Evicted idle session for project %s", project_id)
            self.bus.emit(SessionDeleted(project_id=project_id))
        return evicted

    def shutdown(self) -> None:
        """Cancel every generation, wait for them to settle and clear all state."""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            with session.lock:
                session.closed = True
                token = session.cancellation
            if token is not None:
                token.cancel("shutdown")
        for session in sessions:
            if not self._wait(session, self.settings.cancel_wait_timeout):
                LOGGER.warning("Generation for %s did not settle before shutdown", session.project_id)
        with self._lock:
            self._sessions.clear()
        self.bus.clear()

    # Internal ------------------------------------------------------------

    def _load_history(self, project_id: str) -> Optional[StoredHistory]:
        if self.history_store is None:
            return None
        try:
            return self.history_store.load_latest(project_id)
        except Exception:  # noqa: BLE001 - a broken history must not block session creation
            LOGGER.exception("Failed to load history for project %s", project_id)
            return None


__all__ = [
    "SessionAlreadyExistsError",
    "SessionBusyError",
    "SessionError",
    "SessionManager",
    "SessionNotFoundError",
]
