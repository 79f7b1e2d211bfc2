"""Display sinks: where pipeline events go."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Set

from cuecard.models import DisplayEvent

logger = logging.getLogger(__name__)


class DisplaySink(ABC):
    """One-way event sink for the display surface."""

    @abstractmethod
    def publish(self, event: DisplayEvent) -> None:
        """Deliver an event. Must not block the caller."""
        pass


class NullSink(DisplaySink):
    def publish(self, event: DisplayEvent) -> None:
        return None


class DisplayChannel(DisplaySink):
    """Fans events out to any number of subscriber queues.

    Each subscriber gets a bounded queue; when a slow subscriber's queue is
    full the oldest event is dropped so publishers never wait.
    """

    def __init__(self, max_queue: int = 500):
        self._max_queue = max_queue
        self._subscribers: Set[asyncio.Queue] = set()
        self.dropped = 0

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: DisplayEvent) -> None:
        for q in list(self._subscribers):
            if q.full():
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                self.dropped += 1
            q.put_nowait(event)


class RecordingSink(DisplaySink):
    """Keeps every event in memory. Handy for scripted sessions and tests."""

    def __init__(self):
        self.events: List[DisplayEvent] = []

    def publish(self, event: DisplayEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: str) -> List[DisplayEvent]:
        return [e for e in self.events if e.kind == kind]

    def clear(self) -> None:
        self.events.clear()
