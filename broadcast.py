# broadcast.py
"""
FAIRPLAY — Broadcast
Fire-and-forget event publishing. EventHub fans events out to subscriber
queues (the /events WebSocket consumes them); a slow subscriber loses its
oldest events, publishers never block.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Protocol, Set

logger = logging.getLogger("fairplay.broadcast")


class Broadcaster(Protocol):
    def publish(self, event: dict) -> None: ...


class NullBroadcaster:
    def publish(self, event: dict) -> None:
        return None


class EventHub:
    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscribers(self) -> int:
        return len(self._subscribers)

    def publish(self, event: dict) -> None:
        event = {"ts": time.time(), **event}
        for q in list(self._subscribers):
            if q.full():
                q.get_nowait()
                logger.debug("[broadcast] subscriber lagging, dropped oldest event")
            q.put_nowait(event)

    @asynccontextmanager
    async def subscribe(self):
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(q)
        try:
            yield q
        finally:
            self._subscribers.discard(q)
