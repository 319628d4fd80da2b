"""Output stream — fan raw PTY bytes out to registered subscribers."""

from __future__ import annotations

import asyncio


class OutputStream:
    """Async byte broadcast: PTY reader -> subscribers.

    Single-producer, multi-consumer. Subscriber queues are unbounded so
    ``publish()`` never blocks the reader. A subscriber only receives chunks
    published after it subscribed. ``None`` marks end-of-stream.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[bytes | None]] = []
        self._closed: bool = False

    def publish(self, chunk: bytes) -> None:
        """Send a chunk to all subscribers.

        Silently drops chunks after ``close()`` has been called.
        """
        if self._closed or not chunk:
            return
        for q in list(self._subscribers):
            q.put_nowait(chunk)

    def subscribe(self) -> asyncio.Queue[bytes | None]:
        """Register a subscriber. Returns a queue to read from.

        Subscribing to a closed stream returns a queue that is already
        terminated.
        """
        q: asyncio.Queue[bytes | None] = asyncio.Queue()
        if self._closed:
            q.put_nowait(None)
        else:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Deregister a subscriber."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the stream has ended."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
        self._subscribers.clear()


class Subscription:
    """One registered reader of an ``OutputStream``.

    Registration happens on construction, so bytes published afterwards are
    never missed even if iteration starts later. Iterate with ``async for``;
    iteration ends when the stream closes. Use as a context manager (or call
    ``close()``) to deregister.
    """

    def __init__(self, stream: OutputStream) -> None:
        self._stream = stream
        self._queue = stream.subscribe()
        self._ended = False

    async def get(self, timeout: float | None = None) -> bytes | None:
        """Next chunk, or ``None`` at end-of-stream.

        Raises:
            asyncio.TimeoutError: nothing arrived within ``timeout``.
        """
        if self._ended:
            return None
        if timeout is None:
            chunk = await self._queue.get()
        else:
            chunk = await asyncio.wait_for(self._queue.get(), timeout)
        if chunk is None:
            self._ended = True
        return chunk

    def get_nowait(self) -> bytes | None:
        """Next queued chunk without waiting.

        Raises:
            asyncio.QueueEmpty: nothing is queued.
        """
        if self._ended:
            return None
        chunk = self._queue.get_nowait()
        if chunk is None:
            self._ended = True
        return chunk

    def close(self) -> None:
        self._stream.unsubscribe(self._queue)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.get()
        if chunk is None:
            self.close()
            raise StopAsyncIteration
        return chunk

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
