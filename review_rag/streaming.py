"""Producer/consumer channel for partial review content.

The pipeline produces; a transport (the HTTP stream endpoint) consumes.
A consumer that goes away cancels the channel, and the producer's next
publish raises ChannelClosed so it stops producing instead of writing
into a queue nobody reads.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator

DELTA = "delta"
RESET = "reset"
DONE = "done"
ERROR = "error"


class ChannelClosed(Exception):
    pass


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    text: str = ""


class ContentChannel:
    def __init__(self):
        # unbounded: a review is produced whether or not anyone is listening yet
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancelled = False
        self._closed = False
        self.claimed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def _put(self, event: StreamEvent) -> None:
        if self._cancelled:
            raise ChannelClosed()
        if self._closed:
            raise ChannelClosed()
        await self._queue.put(event)

    async def publish(self, text: str) -> None:
        await self._put(StreamEvent(DELTA, text))

    async def reset(self) -> None:
        """Tell the consumer to discard everything received so far."""
        await self._put(StreamEvent(RESET))

    async def finish(self) -> None:
        if self._cancelled or self._closed:
            return
        await self._queue.put(StreamEvent(DONE))
        self._closed = True

    async def fail(self, message: str) -> None:
        if self._cancelled or self._closed:
            return
        await self._queue.put(StreamEvent(ERROR, message))
        self._closed = True

    def cancel(self) -> None:
        self._cancelled = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def events(self) -> AsyncIterator[StreamEvent]:
        try:
            while True:
                event = await self._queue.get()
                yield event
                if event.kind in (DONE, ERROR):
                    return
        finally:
            if not self._closed:
                self.cancel()
