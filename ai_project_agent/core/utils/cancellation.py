"""Cooperative cancellation tokens shared by the generation loop and providers."""
from __future__ import annotations

import threading
from typing import Callable, List, Optional

from .logger import get_logger

LOGGER = get_logger(__name__)


class CancellationToken:
    """Thread-safe, one-shot cancellation signal.

    Callbacks registered with :meth:`add_callback` run exactly once, on the
    thread that calls :meth:`cancel` (or immediately if the token is already
    cancelled).
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._timer: Optional[threading.Timer] = None
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation; returns ``False`` when it was already requested."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        for callback in callbacks:
            self._run_callback(callback)
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation. Returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)
        self._run_callback(callback)
        return lambda: None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; returns the cancelled state."""
        return self._event.wait(timeout)

    def cancel_after(self, seconds: float) -> None:
        """Cancel with reason ``"timeout"`` once ``seconds`` have elapsed."""
        timer = threading.Timer(seconds, self.cancel, kwargs={"reason": "timeout"})
        timer.daemon = True
        with self._lock:
            if self._event.is_set():
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = timer
        timer.start()

    def _remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    @staticmethod
    def _run_callback(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:  # noqa: BLE001 - a failing abort hook must not stop the others
            LOGGER.exception("Cancellation callback %r failed", callback)


__all__ = ["CancellationToken"]
