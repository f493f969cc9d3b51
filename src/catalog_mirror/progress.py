"""catalog_mirror.progress

Typed progress events emitted by import and synchronization runs, plus two
sinks:

  - ThrottledProgress drops high-frequency scan-position events that arrive
    faster than a fixed interval; every other event passes through, so
    checkpoint events are delivered at least once.
  - QueueProgressSink hands events from the worker thread to the
    application thread.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from catalog_mirror.table_schemas import Family

ProgressSink = Callable[[Any], None]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DiskSpaceProgress:
    free_bytes: int | None


@dataclass(frozen=True)
class SearchTableDefinitionProgress:
    position: int
    size: int


@dataclass(frozen=True)
class TableDefinitionFoundProgress:
    family: Family


@dataclass(frozen=True)
class WrongTableDefinitionProgress:
    expected: Family
    found: Family


@dataclass(frozen=True)
class LoadRemoteIdsProgress:
    family: Family


@dataclass(frozen=True)
class IndexCreationProgress:
    family: Family
    column: str


@dataclass(frozen=True)
class ObjectsProgress:
    added: int
    updated: int


@dataclass(frozen=True)
class SyncObjectsProgress:
    downloaded: int
    added: int
    updated: int


@dataclass(frozen=True)
class CompletedProgress:
    status: str
    added: int
    updated: int


_THROTTLED_EVENTS = (SearchTableDefinitionProgress,)


def null_sink(event: Any) -> None:
    pass


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class ThrottledProgress:
    """Forward events to sink, rate limiting scan-position events."""

    def __init__(
        self,
        sink: ProgressSink,
        min_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._min_interval = min_interval
        self._clock = clock
        self._last_sent: dict[type, float] = {}

    def __call__(self, event: Any) -> None:
        if isinstance(event, _THROTTLED_EVENTS):
            now = self._clock()
            last = self._last_sent.get(type(event))
            if last is not None and now - last < self._min_interval:
                return
            self._last_sent[type(event)] = now
        self._sink(event)


class QueueProgressSink:
    """Thread-safe buffer of progress events for a consumer thread."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize)
        self._lock = threading.Lock()

    def __call__(self, event: Any) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> Any:
        """Block for the next event; raises queue.Empty on timeout."""
        return self._queue.get(timeout=timeout)

    def drain(self) -> list[Any]:
        events = []
        with self._lock:
            while True:
                try:
                    events.append(self._queue.get_nowait())
                except queue.Empty:
                    return events
