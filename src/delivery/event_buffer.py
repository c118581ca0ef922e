"""
Bounded event buffer between the interactive path and the batch processor.

The producer never blocks: when the buffer is full the oldest unprocessed
event is discarded and counted. Losing data under sustained overload is
accepted in exchange for keeping the editor responsive.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass

from loguru import logger

from src.graph.models import UserEvent


@dataclass
class BufferStats:
    """Counters exposed as metrics."""

    received: int = 0
    dropped: int = 0
    drained: int = 0


class EventBuffer:
    """
    Thread-safe circular buffer with drop-oldest backpressure.

    Usage:
        buffer = EventBuffer(capacity=10_000)
        buffer.put(event)          # interactive path, never blocks
        batch = buffer.drain()     # batch processor
    """

    def __init__(self, capacity: int = 10_000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._events: deque[UserEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._stats = BufferStats()
        self._overflowing = False

    def put(self, event: UserEvent) -> bool:
        """
        Append an event.

        Returns:
            False if an older event had to be dropped to make room
        """
        with self._lock:
            self._stats.received += 1
            full = len(self._events) == self.capacity
            if full:
                self._stats.dropped += 1
                if not self._overflowing:
                    logger.debug("Event buffer full ({}); dropping oldest events", self.capacity)
                self._overflowing = True
            else:
                self._overflowing = False
            self._events.append(event)
            return not full

    def drain(self, max_items: int | None = None) -> list[UserEvent]:
        """Remove and return buffered events, oldest first."""
        with self._lock:
            count = len(self._events) if max_items is None else min(max_items, len(self._events))
            batch = [self._events.popleft() for _ in range(count)]
            self._stats.drained += len(batch)
            return batch

    @property
    def stats(self) -> BufferStats:
        with self._lock:
            return BufferStats(**vars(self._stats))

    @property
    def dropped(self) -> int:
        return self.stats.dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
