"""
Asyncio channels feeding the refresh scheduler.

Three bounded queues connect the event delivery path to the control loop:

* `SignalChannel` carries raw "state may have changed" signals from the
  classifier. It never blocks the deliverer: when full, signals are dropped
  and counted, because the periodic refresh covers anything lost.
* `TriggerSlot` is the depth-1 slot of pending refreshes. Offering into an
  occupied slot is a no-op, so any burst collapses into one pending refresh.
* `ErrorSlot` holds the first fatal error of a connection generation.

All three must only be touched from the event loop thread; cross-thread
producers go through ``loop.call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
from asyncio import QueueEmpty, QueueFull

logger = logging.getLogger(__name__)


class SignalChannel:
    """Bounded, drop-if-full queue of refresh signals."""

    def __init__(self, *, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue[None] = asyncio.Queue(maxsize=maxsize)
        self.received_total = 0
        self.dropped_total = 0

    def offer(self) -> bool:
        """Enqueue one signal without waiting; return False when it was dropped."""
        try:
            self._queue.put_nowait(None)
        except QueueFull:
            self.dropped_total += 1
            logger.warning(
                "Refresh signal channel is full (%d); dropping signal.", self._queue.maxsize
            )
            return False
        self.received_total += 1
        return True

    async def get(self) -> None:
        await self._queue.get()

    async def drain(self, window: float) -> int:
        """
        Collect further signals for at most ``window`` seconds.

        The window is a single ceiling measured from the call, it is not
        extended by new arrivals. Whatever is still queued when it expires is
        flushed as part of the same burst. Returns the number of signals
        absorbed.
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + window
        absorbed = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                await asyncio.wait_for(self._queue.get(), timeout=remaining)
            except TimeoutError:
                break
            absorbed += 1
        return absorbed + self.clear()

    def clear(self) -> int:
        flushed = 0
        while True:
            try:
                self._queue.get_nowait()
            except QueueEmpty:
                return flushed
            flushed += 1

    def qsize(self) -> int:
        return self._queue.qsize()


class TriggerSlot:
    """Depth-1 slot holding at most one pending refresh request."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self.offered_total = 0
        self.dropped_total = 0

    def offer(self, reason: str) -> bool:
        """Mark a refresh as due; a no-op returning False when one is already pending."""
        try:
            self._queue.put_nowait(reason)
        except QueueFull:
            self.dropped_total += 1
            logger.debug("Refresh already pending; coalescing %s trigger.", reason)
            return False
        self.offered_total += 1
        logger.debug("Refresh trigger queued (%s).", reason)
        return True

    async def get(self) -> str:
        return await self._queue.get()

    @property
    def pending(self) -> bool:
        return not self._queue.empty()

    def clear(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except QueueEmpty:
                return


class ErrorSlot:
    """Keeps the first fatal error reported during a generation."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[BaseException] = asyncio.Queue(maxsize=1)

    def report(self, error: BaseException) -> None:
        try:
            self._queue.put_nowait(error)
        except QueueFull:
            logger.debug("Fatal error already recorded; ignoring follow-up: %s", error)

    async def get(self) -> BaseException:
        return await self._queue.get()

    def clear(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except QueueEmpty:
                return


__all__ = ["ErrorSlot", "SignalChannel", "TriggerSlot"]
