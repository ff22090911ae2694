"""
Transport — the write side of one open Server-Sent Events response.

SSEStream is a bounded asyncio.Queue: the hub writes SSE-formatted chunks
into it and the HTTP layer drains it into a StreamingResponse. Writes never
block; when the client is too slow to keep up, chunks are dropped.
"""

import asyncio
from typing import AsyncIterator, Protocol

from timers import running_loop

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class TransportClosed(Exception):
    """Raised when writing to a stream whose client has gone away."""


class Transport(Protocol):
    @property
    def closed(self) -> bool: ...

    def write(self, chunk: str) -> None: ...


class SSEStream:
    def __init__(self, maxsize: int = 256, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, chunk: str) -> None:
        """Queue a chunk for the client. Safe to call from any thread."""
        if self._closed:
            raise TransportClosed("stream is closed")
        if running_loop() is self._loop:
            self._put(chunk)
        else:
            self._loop.call_soon_threadsafe(self._put, chunk)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if running_loop() is self._loop:
            self._put(None)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._put, None)

    def _put(self, chunk: str | None) -> None:
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            pass  # drop if client is slow

    async def __aiter__(self) -> AsyncIterator[str]:
        while not (self._closed and self._queue.empty()):
            chunk = await self._queue.get()
            if chunk is None:
                break
            yield chunk
