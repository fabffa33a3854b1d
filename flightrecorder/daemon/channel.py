"""Bounded, closable channel between capture monitors and the coordinator."""

import asyncio
from collections import deque
from typing import Deque, Optional

from .capture import Capture


class CaptureChannel:
    """
    Multi-producer, single-consumer queue of captures.

    Unlike asyncio.Queue it can be closed: once closed, senders get False
    back instead of blocking forever, and the receiver drains whatever was
    already buffered before seeing None.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("channel capacity must be at least 1")
        self.capacity = capacity
        self._buffer: Deque[Capture] = deque()
        self._closed = False
        self._cond = asyncio.Condition()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    async def send(self, capture: Capture) -> bool:
        """
        Queue a capture, waiting while the channel is full.

        Returns:
            True once queued, False if the channel is (or becomes) closed.
        """
        async with self._cond:
            while not self._closed and len(self._buffer) >= self.capacity:
                await self._cond.wait()
            if self._closed:
                return False
            self._buffer.append(capture)
            self._cond.notify_all()
            return True

    async def receive(self) -> Optional[Capture]:
        """Next capture in send order, or None once closed and drained."""
        async with self._cond:
            while not self._buffer and not self._closed:
                await self._cond.wait()
            if not self._buffer:
                return None
            capture = self._buffer.popleft()
            self._cond.notify_all()
            return capture

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()
