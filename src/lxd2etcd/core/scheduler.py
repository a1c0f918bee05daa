"""
Refresh scheduler: the control loop deciding when LXD state is re-published.

The loop is a small state machine::

    AWAITING_CONNECTION --acquired--> RUNNING --fatal error--> DRAINING
            ^      |                     |                        |
            |      +--shutdown--+        +--shutdown--+           |
            |                   v                     v           |
            +-------------- STOPPED <-----------------+-----------+

While RUNNING, three trigger sources (startup, periodic tick, debounced event
burst plus its settle re-trigger) feed a depth-1 `TriggerSlot`. The loop
consumes that slot and runs one capture + write at a time; it waits for the
refresh to finish before looking at anything else, which is what makes the
refresh single-flight without a lock. Any fatal error tears the generation
down and restarts from connection acquisition.
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import enum
import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from ..modules.host.producer import SnapshotProducer
from ..modules.store.publisher import SnapshotPublisher
from .channels import ErrorSlot, SignalChannel, TriggerSlot
from .connection import ConnectionHandle, ConnectionManager
from .contracts import HealthStatus, SchedulerStatus
from .control import ServiceControl

logger = logging.getLogger(__name__)


class SchedulerState(enum.Enum):
    AWAITING_CONNECTION = "awaiting_connection"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class RefreshScheduler:
    """Merge refresh triggers into a serialized stream of refresh cycles."""

    def __init__(
        self,
        *,
        connections: ConnectionManager,
        producer: SnapshotProducer,
        publisher: SnapshotPublisher,
        control: ServiceControl,
        hostname: str,
        refresh_interval: float = 300.0,
        settle_delay: float = 10.0,
        debounce_window: float = 1.0,
        signal_queue_size: int = 64,
        on_transition: Callable[[SchedulerState], None] | None = None,
    ) -> None:
        self._connections = connections
        self._producer = producer
        self._publisher = publisher
        self._control = control
        self._hostname = hostname
        self._refresh_interval = refresh_interval
        self._settle_delay = settle_delay
        self._debounce_window = debounce_window
        self._on_transition = on_transition
        self._signals = SignalChannel(maxsize=signal_queue_size)
        self._triggers = TriggerSlot()
        self._errors = ErrorSlot()
        self._stop_event = asyncio.Event()
        self._state = SchedulerState.AWAITING_CONNECTION
        self._handle: ConnectionHandle | None = None
        self._settle_timers: set[asyncio.TimerHandle] = set()
        self.history: deque[SchedulerState] = deque([self._state], maxlen=64)
        self.last_error: BaseException | None = None
        self._refresh_ok_total = 0
        self._refresh_failed_total = 0
        self._last_refresh: dt.datetime | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def signals(self) -> SignalChannel:
        return self._signals

    @property
    def triggers(self) -> TriggerSlot:
        return self._triggers

    @property
    def pending_settle_timers(self) -> int:
        return len(self._settle_timers)

    def request_shutdown(self) -> None:
        """Ask the loop to stop; honoured after any in-flight refresh completes."""
        if not self._stop_event.is_set():
            logger.info("stopping service...")
            self._stop_event.set()

    async def run(self) -> BaseException | None:
        """
        Drive the state machine until shutdown.

        Returns the last unresolved error, or None when the service stopped
        while healthy.
        """

        while self._state is not SchedulerState.STOPPED:
            if self._state is SchedulerState.AWAITING_CONNECTION:
                await self._await_connection()
            elif self._state is SchedulerState.RUNNING:
                await self._run_generation()
            elif self._state is SchedulerState.DRAINING:
                logger.error("Restarting pipeline after fatal error: %s", self.last_error)
                self._transition(SchedulerState.AWAITING_CONNECTION)
        logger.info("service has been stopped...")
        return self.last_error

    async def _await_connection(self) -> None:
        self._reset_channels()
        handle = await self._connections.acquire(
            self._stop_event, signals=self._signals, errors=self._errors
        )
        if handle is None:
            if self._connections.last_error is not None:
                self.last_error = self._connections.last_error
            self._transition(SchedulerState.STOPPED)
            return
        self._handle = handle
        self._transition(SchedulerState.RUNNING)
        self._triggers.offer("startup")

    async def _run_generation(self) -> None:
        ticker = asyncio.create_task(self._tick_loop(), name="lxd2etcd-ticker")
        debouncer = asyncio.create_task(self._debounce_loop(), name="lxd2etcd-debounce")
        waiters: dict[str, asyncio.Task[Any]] = {}
        try:
            while True:
                self._arm(waiters, "shutdown", self._stop_event.wait)
                self._arm(waiters, "error", self._errors.get)
                self._arm(waiters, "trigger", self._triggers.get)
                done, _pending = await asyncio.wait(
                    waiters.values(), return_when=asyncio.FIRST_COMPLETED
                )
                if waiters["shutdown"] in done:
                    await self._teardown()
                    self._transition(SchedulerState.STOPPED)
                    return
                if waiters["error"] in done:
                    error = waiters.pop("error").result()
                    await self._fail(error)
                    return
                reason = waiters.pop("trigger").result()
                error = await self._refresh(reason)
                if error is not None:
                    await self._fail(error)
                    return
        finally:
            for task in (ticker, debouncer, *waiters.values()):
                task.cancel()
            for task in (ticker, debouncer, *waiters.values()):
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            self._cancel_settle_timers()

    @staticmethod
    def _arm(waiters: dict[str, asyncio.Task[Any]], name: str, factory: Callable[[], Any]) -> None:
        task = waiters.get(name)
        if task is None or task.done():
            waiters[name] = asyncio.ensure_future(factory())

    async def _refresh(self, reason: str) -> BaseException | None:
        """Run one capture + write; returns the error instead of raising it."""
        if not self._control.initialized or self._handle is None:
            logger.warning("Refresh (%s) requested while not initialized; ignoring.", reason)
            return None
        handle = self._handle
        logger.info("refresh triggered (%s)", reason)
        try:
            await asyncio.to_thread(self._refresh_cycle, handle)
        except Exception as exc:
            self._refresh_failed_total += 1
            return exc
        self._refresh_ok_total += 1
        self._last_refresh = dt.datetime.now(tz=dt.UTC)
        self.last_error = None
        return None

    def _refresh_cycle(self, handle: ConnectionHandle) -> None:
        if handle.host is None or handle.store is None:
            raise RuntimeError("connection handle has been released")
        snapshot = self._producer.capture(handle.host)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "retrieved lxd info at %s:\n%s", snapshot.captured_at.isoformat(), snapshot.pretty()
            )
        self._publisher.write(handle.store, self._hostname, snapshot)

    async def _fail(self, error: BaseException) -> None:
        self.last_error = error
        await self._teardown()
        self._transition(SchedulerState.DRAINING)

    async def _teardown(self) -> None:
        handle, self._handle = self._handle, None
        await self._connections.release(handle)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            self._triggers.offer("periodic")

    async def _debounce_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await self._signals.get()
            absorbed = await self._signals.drain(self._debounce_window)
            logger.debug("Debounced burst of %d LXD event(s).", absorbed + 1)
            self._triggers.offer("event")
            self._arm_settle_timer(loop)

    def _arm_settle_timer(self, loop: asyncio.AbstractEventLoop) -> None:
        def fire() -> None:
            self._settle_timers.discard(timer)
            if self._state is SchedulerState.RUNNING:
                self._triggers.offer("settle")

        timer = loop.call_later(self._settle_delay, fire)
        self._settle_timers.add(timer)

    def _cancel_settle_timers(self) -> None:
        for timer in self._settle_timers:
            timer.cancel()
        self._settle_timers.clear()

    def _reset_channels(self) -> None:
        self._signals.clear()
        self._triggers.clear()
        self._errors.clear()

    def _transition(self, state: SchedulerState) -> None:
        if state is not self._state:
            logger.debug("Scheduler state %s -> %s", self._state.value, state.value)
        self._state = state
        self.history.append(state)
        if self._on_transition is not None:
            self._on_transition(state)

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            state=self._state.value,
            generation=self._connections.generation,
            initialized=self._control.initialized,
            refresh_ok_total=self._refresh_ok_total,
            refresh_failed_total=self._refresh_failed_total,
            triggers_offered_total=self._triggers.offered_total,
            triggers_dropped_total=self._triggers.dropped_total,
            signals_received_total=self._signals.received_total,
            signals_dropped_total=self._signals.dropped_total,
            connect_failures_total=self._connections.failures_total,
            last_error=str(self.last_error) if self.last_error is not None else None,
            last_refresh_utc=self._last_refresh,
        )

    async def health(self) -> HealthStatus:
        status = self.status()
        if self._state is SchedulerState.RUNNING and self._last_refresh is not None:
            classification = "healthy"
        elif self._state is SchedulerState.STOPPED:
            classification = "error" if self.last_error is not None else "stopped"
        else:
            classification = "degraded"
        return HealthStatus(status=classification, details=status.model_dump(mode="json"))


__all__ = ["RefreshScheduler", "SchedulerState"]
