"""
Bounded stage queues.

Two back-pressure policies:
- drop: live audio. When full the oldest item is discarded so the newest
  frame always gets in.
- block: transcripts and speakable units. The producer waits for space.

Closing a queue wakes every waiting consumer with `QueueClosed`.
"""

from __future__ import annotations

import asyncio
from typing import Any, Generic, List, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_CLOSED = object()


class QueueClosed(Exception):
    """Raised by `get()`/`put()` once the queue has been closed."""
    pass


class StageQueue(Generic[T]):
    """asyncio.Queue wrapper with a back-pressure policy and close()."""

    def __init__(self, name: str, maxsize: int, drop_when_full: bool = False):
        self.name = name
        self.maxsize = maxsize
        self.drop_when_full = drop_when_full
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        if self._closed:
            return 0
        return self._queue.qsize()

    def empty(self) -> bool:
        return self.qsize() == 0

    def put_nowait(self, item: T) -> bool:
        """
        Non-blocking put under the drop policy.

        Returns False if the queue is closed or something had to be
        discarded to make room (counted in `dropped`).
        """
        if self._closed:
            return False
        dropped = False
        while self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self.dropped += 1
            dropped = True
        self._queue.put_nowait(item)
        if dropped:
            logger.debug("Queue full, dropped oldest", queue=self.name, dropped=self.dropped)
        return not dropped

    async def put(self, item: T) -> None:
        """Put honoring the queue's policy; waits for space under the block policy."""
        if self._closed:
            raise QueueClosed(self.name)
        if self.drop_when_full:
            self.put_nowait(item)
            return
        await self._queue.put(item)
        if self._closed:
            raise QueueClosed(self.name)

    async def get(self) -> T:
        if self._closed:
            raise QueueClosed(self.name)
        item = await self._queue.get()
        if item is _CLOSED or self._closed:
            # Leave the sentinel for any other waiting consumer.
            self._requeue_sentinel()
            raise QueueClosed(self.name)
        return item

    def drain(self) -> List[T]:
        """Remove and return everything queued, without waiting."""
        items: List[T] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not _CLOSED:
                items.append(item)
        if self._closed:
            self._requeue_sentinel()
        return items

    def close(self) -> None:
        """Close the queue; pending and future get() calls raise QueueClosed."""
        if self._closed:
            return
        self._closed = True
        self.drain()

    def _requeue_sentinel(self) -> None:
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)
