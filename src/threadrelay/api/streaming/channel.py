"""Queue-backed server-sent event channel."""

from __future__ import annotations

import asyncio

from collections.abc import AsyncIterator

from threadrelay.api.streaming.events import SseEvent
from threadrelay.core.constants import SSE_CHANNEL_MAX_EVENTS
from threadrelay.utils.logger import logger


class SseChannel:
    """One client's event stream.

    The session pushes events with ``send`` without ever waiting on the
    client; the HTTP response consumes ``frames()``. Once closed, further
    sends are ignored. A client that falls ``max_events`` frames behind is
    cut off: the channel closes after the frames already queued, and the
    response treats the early end as a disconnect.
    """

    def __init__(self, max_events: int = SSE_CHANNEL_MAX_EVENTS) -> None:
        # One slot beyond max_events is kept free for the close marker
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_events + 1)
        self.max_events = max_events
        self._closed = False
        self.sent = 0
        self.overflowed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: SseEvent) -> bool:
        """Queue an event. Returns False if the channel is closed or just overflowed."""
        if self._closed:
            return False
        if self._queue.qsize() >= self.max_events:
            self.overflowed = True
            logger.warning(f"SSE client fell {self.max_events} events behind, closing stream")
            self.close()
            return False
        self._queue.put_nowait(event.encode())
        self.sent += 1
        return True

    def close(self) -> None:
        """End the stream after everything already queued has been delivered."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame
