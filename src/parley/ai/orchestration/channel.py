"""Producer/consumer plumbing between an exchange and its transport."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Generic, TypeVar

from ...errors import ExchangeFailed, TransportClosed
from .events import StreamEvent, sse_frame

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_PENDING = 256

_BACKGROUND_TASKS: set[asyncio.Task] = set()


@dataclass(slots=True, frozen=True)
class _EndOfStream:
    error: BaseException | None = None


class EventChannel:
    """Ordered, at-most-once hand-off of stream events to one consumer.

    The producer side calls :meth:`send` and finally :meth:`finish`. At most
    *max_pending* events are buffered; beyond that :meth:`send` waits for the
    consumer. Once the consumer calls :meth:`close` (for example because the
    client disconnected) buffered events are dropped and every further
    :meth:`send` raises :class:`TransportClosed`.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self._queue: asyncio.Queue[StreamEvent | _EndOfStream] = asyncio.Queue(maxsize=max(1, max_pending))
        self._end: _EndOfStream | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._end is not None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def send(self, event: StreamEvent) -> None:
        if self._closed:
            raise TransportClosed("Stream consumer has disconnected")
        if self._end is not None:
            raise RuntimeError("Cannot send on a finished channel")
        await self._queue.put(event)

    def finish(self, error: BaseException | None = None) -> None:
        """Mark the end of the event sequence, optionally abnormal."""

        if self._end is not None:
            return
        self._end = _EndOfStream(error)
        # A full buffer is drained first; the consumer then picks up ``_end`` directly.
        if not self._queue.full():
            self._queue.put_nowait(self._end)

    def close(self) -> None:
        """Consumer-side close; pending and future events are dropped."""

        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while not self._closed:
            if self._queue.empty() and self._end is not None:
                item: StreamEvent | _EndOfStream = self._end
            else:
                item = await self._queue.get()
            if isinstance(item, _EndOfStream):
                if item.error is not None:
                    raise ExchangeFailed(item.error) from item.error
                return
            yield item


class ExchangeStream(Generic[T]):
    """Transport-facing handle for one running exchange.

    The exchange coroutine starts on first iteration (or :meth:`wait`) and
    runs as its own task, so a consumer that stops iterating never cancels
    the producer: the producer observes :class:`TransportClosed` and still
    completes its side effects.
    """

    def __init__(self, runner: Callable[[EventChannel], Awaitable[T]], *, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self._runner = runner
        self._channel = EventChannel(max_pending)
        self._task: asyncio.Task[T] | None = None

    @property
    def channel(self) -> EventChannel:
        return self._channel

    def start(self) -> asyncio.Task[T]:
        if self._task is None:
            self._task = asyncio.ensure_future(self._runner(self._channel))
            _BACKGROUND_TASKS.add(self._task)
            self._task.add_done_callback(_BACKGROUND_TASKS.discard)
        return self._task

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield events in order; raises :class:`ExchangeFailed` on abnormal end."""

        self.start()
        try:
            async for event in self._channel:
                yield event
        finally:
            self._channel.close()

    async def frames(self) -> AsyncIterator[str]:
        """Yield ``data: <json>`` frames for a server-sent-events response."""

        async for event in self.events():
            yield sse_frame(event)

    async def wait(self) -> T:
        """Wait for the exchange, side effects included, to finish."""

        return await self.start()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self.events()


__all__ = ["DEFAULT_MAX_PENDING", "EventChannel", "ExchangeStream"]
