"""Bounded, newest-first buffer of captured events."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterator

from hookrelay.models import CapturedEvent

MAX_EVENTS = 50


class BoundedEventBuffer:
    """Fixed-capacity event list, most recent first.

    Pushing past capacity evicts from the tail (the oldest event). Shared by
    real channel events and local test injections for one viewer session;
    never persisted.
    """

    def __init__(self, capacity: int = MAX_EVENTS) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._events: deque[CapturedEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._events.maxlen or 0

    def push(self, event: CapturedEvent) -> None:
        with self._lock:
            self._events.appendleft(event)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def events(self) -> tuple[CapturedEvent, ...]:
        """Snapshot of the buffer, newest first."""
        with self._lock:
            return tuple(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[CapturedEvent]:
        return iter(self.events())

    def __getitem__(self, index: int) -> CapturedEvent:
        return self.events()[index]
