"""
Module with an event channel for delivering typed events to registered handlers.

Producers like the change watch stream emit events without waiting for them to be
handled. A single consumer task per channel takes the events off its queue in delivery
order and passes each of them to every registered handler, awaiting asynchronous
handlers before moving on to the next event. This gives the following guarantees:

* Events are handled one at a time and in the order in which they were emitted, even if
handlers need to wait for the network.
* Registering a handler returns a disposer, and a disposed handler is never called
again, not even for events that were emitted before disposal.
* Closing the channel cancels the handler that is currently running, which makes
teardown immediate rather than waiting for in-flight network calls.

For example, a watch that feeds a cache:

channel = EventChannel()
dispose = channel.subscribe(update_cache)

channel.emit(ChangeEvent(ChangeType.CHANGE, "/src/main.py"))
channel.emit(ChangeEvent(ChangeType.REMOVE, "/src/old.py"))

await channel.drain()  # Both events have been handled, in order
channel.close()
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Generic, List, Optional, TypeVar

from wsmirror.logger import log

T = TypeVar("T")

Handler = Callable[[T], Any]


class EventChannel(Generic[T]):
    """Ordered, single consumer channel of events of type T."""

    def __init__(self) -> None:
        """Instantiate a new EventChannel."""
        self._handlers: List[Handler] = []
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._closed = False

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a handler for all future events and return its disposer."""
        if self._closed:
            raise RuntimeError("event channel is closed")

        self._handlers.append(handler)

        def dispose() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return dispose

    def emit(self, event: T) -> None:
        """Post an event to the channel. Events on a closed channel are discarded."""
        if self._closed:
            return

        if self._queue is None:
            self._queue = asyncio.Queue()
            self._consumer = asyncio.get_running_loop().create_task(self._consume())

        self._queue.put_nowait(event)

    async def _consume(self) -> None:
        """Pass events to the handlers one at a time."""
        assert self._queue is not None

        while True:
            event = await self._queue.get()

            try:
                for handler in list(self._handlers):
                    # Handler may have been disposed by an earlier handler
                    if self._closed or handler not in self._handlers:
                        continue

                    try:
                        result = handler(event)

                        if inspect.isawaitable(result):
                            await result
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        log.error(f"event handler failed for {event}: {e}")
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait for all events emitted so far to be handled."""
        if self._queue is not None and not self._closed:
            await self._queue.join()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Return the number of events that have not been handled yet."""
        return self._queue.qsize() if self._queue is not None else 0

    def close(self) -> None:
        """Dispose all handlers and stop delivering events."""
        self._closed = True
        self._handlers.clear()

        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None

        # Release anyone waiting in drain()
        while self._queue is not None and not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
