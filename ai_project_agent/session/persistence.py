"""Durable message history per project, stored as one JSONL file per session name."""
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from ai_project_agent.core.utils.logger import get_logger
from ai_project_agent.providers.llm.base import Message

LOGGER = get_logger(__name__)

HISTORY_SUBDIR = Path(".ai") / "history"
HISTORY_SUFFIX = ".jsonl"


class HistoryValidationError(ValueError):
    """Raised when a history would not be accepted by a provider."""


class UnsafeHistoryPathError(ValueError):
    """Raised when a project id or session name cannot be used as a path component."""


def _path_component(value: str, kind: str) -> str:
    if not value or value in {".", ".."} or any(sep in value for sep in ("/", "\\", "\0")):
        raise UnsafeHistoryPathError(f"Invalid {kind} for history storage: {value!r}")
    return value


@dataclass
class StoredHistory:
    session_name: str
    messages: List[Message] = field(default_factory=list)


class HistoryStore(Protocol):
    """Persistence collaborator for finalized session messages."""

    def load_latest(self, project_id: str) -> Optional[StoredHistory]:
        ...

    def save(self, project_id: str, session_name: str, messages: Sequence[Message]) -> None:
        ...


def validate_history(messages: Sequence[Message]) -> None:
    """Check that every tool turn answers a call of the closest preceding assistant turn."""
    for index, message in enumerate(messages):
        if message.role != "tool":
            continue
        if not message.tool_call_id:
            raise HistoryValidationError(f"Tool message at index {index} is missing tool_call_id")
        for previous in reversed(messages[:index]):
            if previous.role != "assistant":
                continue
            call_ids = {call.get("id") for call in previous.tool_calls or ()}
            if message.tool_call_id in call_ids:
                break
            raise HistoryValidationError(
                f"Tool message at index {index} with tool_call_id {message.tool_call_id!r} "
                "does not answer the preceding assistant turn"
            )
        else:
            raise HistoryValidationError(
                f"Tool message at index {index} is not preceded by an assistant turn"
            )


class JsonlHistoryStore:
    """Write histories under ``<root>/<project_id>/.ai/history/<session_name>.jsonl``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def history_dir(self, project_id: str) -> Path:
        return self.root / _path_component(project_id, "project id") / HISTORY_SUBDIR

    def history_file(self, project_id: str, session_name: str) -> Path:
        return self.history_dir(project_id) / f"{_path_component(session_name, 'session name')}{HISTORY_SUFFIX}"

    def list_sessions(self, project_id: str) -> List[str]:
        """Return stored session names, newest first."""
        directory = self.history_dir(project_id)
        if not directory.is_dir():
            return []
        names = [path.stem for path in directory.iterdir() if path.suffix == HISTORY_SUFFIX]
        return sorted(names, reverse=True)

    def load(self, project_id: str, session_name: str) -> Optional[StoredHistory]:
        path = self.history_file(project_id, session_name)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOGGER.warning("Failed to read session history %s: %s", path, exc)
            return None

        messages: List[Message] = []
        for line_number, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                messages.append(Message.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError) as exc:
                LOGGER.warning("Skipping unreadable history line %s:%d: %s", path, line_number, exc)
        return StoredHistory(session_name=session_name, messages=messages)

    def load_latest(self, project_id: str) -> Optional[StoredHistory]:
        try:
            names = self.list_sessions(project_id)
        except OSError as exc:
            LOGGER.warning("Failed to list history for project %s: %s", project_id, exc)
            return None
        if not names:
            return None
        return self.load(project_id, names[0])

    def save(self, project_id: str, session_name: str, messages: Sequence[Message]) -> None:
        """Rewrite the whole history file.

        Storage failures are logged, never raised. An unsafe project id or
        session name raises :class:`UnsafeHistoryPathError`.
        """
        target = self.history_file(project_id, session_name)
        try:
            validate_history(messages)
        except HistoryValidationError as exc:
            LOGGER.warning("Not saving history for project %s: %s", project_id, exc)
            return

        directory = target.parent
        lines = [json.dumps(message.to_dict(), ensure_ascii=False) for message in messages]
        body = "\n".join(lines) + ("\n" if lines else "")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{session_name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(body)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            LOGGER.warning("Failed to save session history %s: %s", target, exc)
            return
        LOGGER.debug("Saved %d messages to %s", len(messages), target)


class InMemoryHistoryStore:
    """Process-local history store that deliberately avoids persistence."""

    def __init__(self) -> None:
        self._histories: Dict[Tuple[str, str], List[Message]] = {}
        self._lock = Lock()

    def load_latest(self, project_id: str) -> Optional[StoredHistory]:
        with self._lock:
            names = sorted(name for pid, name in self._histories if pid == project_id)
            if not names:
                return None
            latest = names[-1]
            return StoredHistory(session_name=latest, messages=list(self._histories[(project_id, latest)]))

    def save(self, project_id: str, session_name: str, messages: Sequence[Message]) -> None:
        with self._lock:
            self._histories[(project_id, session_name)] = list(messages)

    def sessions(self, project_id: str) -> List[str]:
        with self._lock:
            return sorted((name for pid, name in self._histories if pid == project_id), reverse=True)


__all__ = [
    "HistoryStore",
    "HistoryValidationError",
    "InMemoryHistoryStore",
    "JsonlHistoryStore",
    "StoredHistory",
    "UnsafeHistoryPathError",
    "validate_history",
]
