"""Per-script result channel.

An unbounded queue of `{"data": ..., "scriptId": ...}` items that a
continuous script emits, drained by exactly one consumer. A channel closes
exactly once. After that, writes are dropped, the consumer still receives
whatever was queued before the close, and then iteration stops.
"""

import asyncio
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

_CLOSED = object()


class ResultChannel:
    def __init__(self, script_id: str):
        self.script_id = script_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._drained = False
        self.close_reason: str | None = None
        self.items_written = 0
        self._end_callbacks: list[Callable[[], Any]] = []
        self._close_callbacks: list[Callable[[], Any]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: Any) -> bool:
        """Queue one event. Returns False if the channel is already closed."""
        if self._closed:
            return False
        self._queue.put_nowait({"data": data, "scriptId": self.script_id})
        self.items_written += 1
        return True

    def on_end(self, callback: Callable[[], Any]):
        """callback() runs when the producer ends the stream on its own."""
        self._end_callbacks.append(callback)

    def on_close(self, callback: Callable[[], Any]):
        """callback() runs once when the channel closes, whatever the cause."""
        self._close_callbacks.append(callback)

    def end(self):
        """The producer is done: close with reason "end"."""
        self.close("end")

    def close(self, reason: str = "closed") -> bool:
        """Close the channel. Only the first call has any effect."""
        if self._closed:
            return False
        self._closed = True
        self.close_reason = reason
        self._queue.put_nowait(_CLOSED)

        callbacks = list(self._end_callbacks) if reason == "end" else []
        callbacks.extend(self._close_callbacks)
        self._end_callbacks.clear()
        self._close_callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Channel callback for {self.script_id} failed: {e}", exc_info=True)
        return True

    async def get(self) -> dict | None:
        """Next item, or None once the channel is closed and drained."""
        if self._drained:
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            self._drained = True
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item
