"""
Acquire and release the pair of external connections (LXD, etcd).

`ConnectionManager.acquire` retries forever with a linear backoff capped at
one minute. Every wait observes the shutdown event, so a shutdown request
returns immediately instead of attempting another connection.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..modules.event.classifier import Classification, EventClassifier
from .channels import ErrorSlot, SignalChannel
from .contracts import ConnectError, Lxd2EtcdError
from .control import TRACE, ServiceControl

if TYPE_CHECKING:
    from ..modules.host.lxd_client import HostSession
    from ..modules.store.etcd_client import StoreSession

logger = logging.getLogger(__name__)

BACKOFF_STEP = 10.0
BACKOFF_CEILING = 60.0

HostFactory = Callable[[], "HostSession"]
StoreFactory = Callable[[], "StoreSession"]


def backoff_delays(step: float = BACKOFF_STEP, ceiling: float = BACKOFF_CEILING) -> Iterator[float]:
    """Yield 0, step, 2*step, ... up to ``ceiling``, then ``ceiling`` forever."""
    for attempt in itertools.count():
        yield min(attempt * step, ceiling)


class EventForwarder:
    """
    Bridge from the LXD delivery thread to the scheduler's event loop.

    Classification happens on the delivery thread; only the outcome crosses
    over, through ``call_soon_threadsafe``. Once deactivated (the generation
    was released) late frames are discarded.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        classifier: EventClassifier,
        signals: SignalChannel,
        errors: ErrorSlot,
    ) -> None:
        self._loop = loop
        self._classifier = classifier
        self._signals = signals
        self._errors = errors
        self.active = True

    def on_event(self, raw: Any) -> None:
        if not self.active:
            return
        try:
            outcome = self._classifier.classify(raw)
        except Lxd2EtcdError as exc:
            self._post(self._errors.report, exc)
            return
        if outcome is Classification.SIGNAL_REFRESH:
            self._post(self._signals.offer)

    def on_close(self, reason: str) -> None:
        if not self.active:
            return
        self._post(self._errors.report, ConnectError(reason))

    def _post(self, callback: Callable[..., Any], *args: Any) -> None:
        if not self.active:
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed; dropping LXD event outcome.")

    def _deliver(self, callback: Callable[..., Any], *args: Any) -> None:
        if self.active:
            callback(*args)


@dataclass
class ConnectionHandle:
    """The connections of one generation; never reused after release."""

    generation: int
    host: HostSession | None = None
    store: StoreSession | None = None
    forwarder: EventForwarder | None = field(default=None, repr=False)


class ConnectionManager:
    """Owns connection setup, retry with backoff, and teardown."""

    def __init__(
        self,
        *,
        host_factory: HostFactory,
        store_factory: StoreFactory,
        control: ServiceControl,
        classifier: EventClassifier | None = None,
        backoff_step: float = BACKOFF_STEP,
        backoff_ceiling: float = BACKOFF_CEILING,
    ) -> None:
        self._host_factory = host_factory
        self._store_factory = store_factory
        self._control = control
        self._classifier = classifier or EventClassifier()
        self._backoff_step = backoff_step
        self._backoff_ceiling = backoff_ceiling
        self._generation = 0
        self._abandoned: set[asyncio.Task[None]] = set()
        self.attempts_total = 0
        self.failures_total = 0
        self.last_error: BaseException | None = None

    @property
    def generation(self) -> int:
        return self._generation

    async def acquire(
        self,
        stop_event: asyncio.Event,
        *,
        signals: SignalChannel,
        errors: ErrorSlot,
    ) -> ConnectionHandle | None:
        """
        Connect to LXD, subscribe to its events, then connect to etcd.

        Returns None when ``stop_event`` is set before a connection succeeds.
        The backoff starts from zero on every call.
        """

        self._control.initialized = False
        loop = asyncio.get_running_loop()
        logger.log(TRACE, "starting to initialize service with retries")
        for attempt, delay in enumerate(
            backoff_delays(self._backoff_step, self._backoff_ceiling), start=1
        ):
            if stop_event.is_set():
                break
            if delay:
                logger.info("Retrying connection in %.0fs.", delay)
                if await self._wait_with_cancel(stop_event, delay):
                    break
                logger.log(TRACE, "trying again to initialize service")
            handle = self._new_handle(loop, signals, errors)
            self.attempts_total += 1
            try:
                opened = await self._open_or_abandon(handle, stop_event)
            except Exception as exc:
                self.failures_total += 1
                self.last_error = exc
                logger.error(
                    "Connection attempt %d failed: %s",
                    attempt,
                    exc,
                    exc_info=not isinstance(exc, Lxd2EtcdError),
                )
                await self.release(handle)
                continue
            if not opened:
                break
            if stop_event.is_set():
                await self.release(handle)
                break
            self._generation += 1
            handle.generation = self._generation
            self._control.initialized = True
            logger.info("Connected to LXD and etcd (generation %d).", handle.generation)
            return handle
        logger.log(TRACE, "initialization canceled")
        return None

    async def release(self, handle: ConnectionHandle | None) -> None:
        """Best-effort teardown; failures are logged and never propagated."""
        self._control.initialized = False
        if handle is None:
            return
        if handle.forwarder is not None:
            handle.forwarder.active = False
        host, handle.host = handle.host, None
        store, handle.store = handle.store, None
        if host is not None:
            try:
                await asyncio.to_thread(host.disconnect)
            except Exception:
                logger.exception("Failed to disconnect LXD event listener.")
        if store is not None:
            try:
                await asyncio.to_thread(store.close)
            except Exception:
                logger.exception("Failed to close etcd client.")

    def _new_handle(
        self,
        loop: asyncio.AbstractEventLoop,
        signals: SignalChannel,
        errors: ErrorSlot,
    ) -> ConnectionHandle:
        forwarder = EventForwarder(
            loop=loop, classifier=self._classifier, signals=signals, errors=errors
        )
        return ConnectionHandle(generation=0, forwarder=forwarder)

    async def _open_or_abandon(self, handle: ConnectionHandle, stop_event: asyncio.Event) -> bool:
        """
        Run ``_open`` on a worker thread, racing it against ``stop_event``.

        Returns False when shutdown wins. The attempt then finishes in the
        background and whatever it opened is released once it returns.
        """
        opening = asyncio.ensure_future(asyncio.to_thread(self._open, handle))
        stopping = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({opening, stopping}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._abandon(opening, handle)
            raise
        finally:
            stopping.cancel()
        if opening.done():
            opening.result()
            return True
        logger.info("Shutdown requested during connection attempt; abandoning it.")
        self._abandon(opening, handle)
        return False

    def _abandon(self, opening: asyncio.Future[None], handle: ConnectionHandle) -> None:
        task = asyncio.create_task(
            self._release_when_opened(opening, handle), name="lxd2etcd-abandoned-connect"
        )
        self._abandoned.add(task)
        task.add_done_callback(self._abandoned.discard)

    async def _release_when_opened(
        self, opening: asyncio.Future[None], handle: ConnectionHandle
    ) -> None:
        try:
            await opening
        except Exception as exc:
            logger.debug("Abandoned connection attempt failed: %s", exc)
        await self.release(handle)

    def _open(self, handle: ConnectionHandle) -> None:
        assert handle.forwarder is not None
        handle.host = self._host_factory()
        handle.host.subscribe(handle.forwarder.on_event, handle.forwarder.on_close)
        handle.store = self._store_factory()

    @staticmethod
    async def _wait_with_cancel(stop_event: asyncio.Event, interval: float) -> bool:
        """Sleep for ``interval``; return True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except TimeoutError:
            return False
        return True


__all__ = [
    "BACKOFF_CEILING",
    "BACKOFF_STEP",
    "ConnectionHandle",
    "ConnectionManager",
    "EventForwarder",
    "backoff_delays",
]
