"""Cooperative cancellation for long-running import and sync runs.

Work loops poll ``is_cancelled()`` at their heads.  Code that blocks on I/O
registers a callback so that ``cancel()`` can wake it up (for example by
closing an HTTP response), after which the blocked code re-checks the token.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

log = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe cancellation flag with wake-up callbacks."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001
                log.warning("Cancellation callback %r failed", callback, exc_info=True)

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Register callback; it runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass


def is_cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.is_cancelled()
