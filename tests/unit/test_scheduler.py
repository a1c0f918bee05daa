from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

import pytest
from fakes import FakeHostSession, FakeStoreSession, SessionFactory, lifecycle_event

from lxd2etcd.core.connection import ConnectionManager
from lxd2etcd.core.contracts import ConnectError, HostSnapshot
from lxd2etcd.core.control import ServiceControl
from lxd2etcd.core.scheduler import RefreshScheduler, SchedulerState
from lxd2etcd.modules.host.producer import SnapshotProducer
from lxd2etcd.modules.store.publisher import SnapshotPublisher


def _scheduler(
    host_factory: SessionFactory,
    store_factory: SessionFactory,
    *,
    refresh_interval: float = 60.0,
    settle_delay: float = 60.0,
    debounce_window: float = 0.05,
    backoff_step: float = 0.01,
    producer: SnapshotProducer | None = None,
    publisher: SnapshotPublisher | None = None,
    on_transition: Callable[[SchedulerState], None] | None = None,
) -> RefreshScheduler:
    control = ServiceControl(root_logger=logging.getLogger("tests.scheduler"))
    connections = ConnectionManager(
        host_factory=host_factory,
        store_factory=store_factory,
        control=control,
        backoff_step=backoff_step,
        backoff_ceiling=backoff_step * 6,
    )
    return RefreshScheduler(
        connections=connections,
        producer=producer or SnapshotProducer(),
        publisher=publisher or SnapshotPublisher(),
        control=control,
        hostname="host1",
        refresh_interval=refresh_interval,
        settle_delay=settle_delay,
        debounce_window=debounce_window,
        on_transition=on_transition,
    )


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _refreshes(scheduler: RefreshScheduler) -> int:
    return scheduler.status().refresh_ok_total


async def _stop(scheduler: RefreshScheduler, task: asyncio.Task[Any]) -> Any:
    scheduler.request_shutdown()
    return await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_startup_refresh_then_clean_shutdown(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    scheduler = _scheduler(host_factory, store_factory)
    task = asyncio.create_task(scheduler.run())

    await _eventually(lambda: _refreshes(scheduler) == 1)
    result = await _stop(scheduler, task)

    assert result is None
    assert scheduler.state is SchedulerState.STOPPED
    assert list(scheduler.history) == [
        SchedulerState.AWAITING_CONNECTION,
        SchedulerState.RUNNING,
        SchedulerState.STOPPED,
    ]
    store: FakeStoreSession = store_factory.last
    assert [key for key, _value in store.puts] == ["/lxd/host1/networks", "/lxd/host1/containers"]
    assert store.closed
    assert host_factory.last.disconnected


@pytest.mark.asyncio
@pytest.mark.parametrize("burst", [1, 25])
async def test_burst_collapses_into_one_refresh_plus_settle(
    host_factory: SessionFactory, store_factory: SessionFactory, burst: int
) -> None:
    scheduler = _scheduler(host_factory, store_factory, settle_delay=0.3)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)
    host: FakeHostSession = host_factory.last

    for _ in range(burst):
        host.emit(lifecycle_event("instance-started"))
    await _eventually(lambda: _refreshes(scheduler) == 2)
    await asyncio.sleep(0.1)
    assert _refreshes(scheduler) == 2

    await _eventually(lambda: _refreshes(scheduler) == 3)
    await asyncio.sleep(0.4)
    assert _refreshes(scheduler) == 3
    assert host.capture_calls == 3
    await _stop(scheduler, task)


@pytest.mark.asyncio
async def test_ignored_events_do_not_refresh(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    scheduler = _scheduler(host_factory, store_factory, settle_delay=0.05)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)

    host_factory.last.emit(lifecycle_event("image-downloaded"))
    await asyncio.sleep(0.2)

    assert _refreshes(scheduler) == 1
    await _stop(scheduler, task)


@pytest.mark.asyncio
async def test_periodic_timer_refreshes(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    scheduler = _scheduler(host_factory, store_factory, refresh_interval=0.05)
    task = asyncio.create_task(scheduler.run())

    await _eventually(lambda: _refreshes(scheduler) >= 3)
    await _stop(scheduler, task)


class _FlightRecorder:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.busy = False
        self.overlaps = 0


class _TrackingProducer(SnapshotProducer):
    def __init__(self, recorder: _FlightRecorder) -> None:
        super().__init__()
        self._recorder = recorder

    def capture(self, host: Any) -> HostSnapshot:
        with self._recorder.lock:
            if self._recorder.busy:
                self._recorder.overlaps += 1
            self._recorder.busy = True
        time.sleep(0.01)
        return super().capture(host)


class _TrackingPublisher(SnapshotPublisher):
    def __init__(self, recorder: _FlightRecorder) -> None:
        self._recorder = recorder

    def write(self, store: Any, hostname: str, snapshot: HostSnapshot) -> None:
        try:
            time.sleep(0.01)
            super().write(store, hostname, snapshot)
        finally:
            with self._recorder.lock:
                self._recorder.busy = False


@pytest.mark.asyncio
async def test_refreshes_never_overlap(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    recorder = _FlightRecorder()
    scheduler = _scheduler(
        host_factory,
        store_factory,
        refresh_interval=0.005,
        settle_delay=0.01,
        debounce_window=0.001,
        producer=_TrackingProducer(recorder),
        publisher=_TrackingPublisher(recorder),
    )
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) >= 1)

    for _ in range(20):
        host_factory.last.emit(lifecycle_event("network-updated"))
        await asyncio.sleep(0.005)
    await _eventually(lambda: _refreshes(scheduler) >= 5)
    await _stop(scheduler, task)

    assert recorder.overlaps == 0


@pytest.mark.asyncio
async def test_pending_slot_holds_at_most_one_trigger(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    gate = threading.Event()

    def blocked_host() -> FakeHostSession:
        host = FakeHostSession()
        host.capture_gate = gate
        return host

    host_factory.build = blocked_host
    scheduler = _scheduler(host_factory, store_factory, refresh_interval=0.01, settle_delay=0.01)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: bool(host_factory.sessions) and host_factory.last.capture_calls == 1)

    for _ in range(10):
        host_factory.last.emit(lifecycle_event("instance-started"))
        scheduler.triggers.offer("manual")
    await asyncio.sleep(0.15)

    assert scheduler.triggers.pending
    assert scheduler.triggers.dropped_total >= 9
    assert host_factory.last.capture_calls == 1

    gate.set()
    await _eventually(lambda: _refreshes(scheduler) >= 2)
    await _stop(scheduler, task)


@pytest.mark.asyncio
async def test_shutdown_lets_in_flight_refresh_finish(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    gate = threading.Event()

    def blocked_host() -> FakeHostSession:
        host = FakeHostSession()
        host.capture_gate = gate
        return host

    host_factory.build = blocked_host
    scheduler = _scheduler(host_factory, store_factory)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: bool(host_factory.sessions) and host_factory.last.capture_calls == 1)

    scheduler.request_shutdown()
    await asyncio.sleep(0.05)
    assert not task.done()
    assert scheduler.state is SchedulerState.RUNNING

    gate.set()
    assert await asyncio.wait_for(task, timeout=2.0) is None

    store: FakeStoreSession = store_factory.last
    assert [key for key, _value in store.puts] == ["/lxd/host1/networks", "/lxd/host1/containers"]
    assert _refreshes(scheduler) == 1
    assert scheduler.state is SchedulerState.STOPPED
    assert store.closed


@pytest.mark.asyncio
async def test_fired_settle_timers_are_forgotten(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    scheduler = _scheduler(host_factory, store_factory, settle_delay=0.01, debounce_window=0.001)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)

    for _ in range(20):
        host_factory.last.emit(lifecycle_event("instance-started"))
        await asyncio.sleep(0.01)
    await _eventually(lambda: scheduler.pending_settle_timers == 0)

    assert scheduler.triggers.offered_total >= 20
    await _stop(scheduler, task)


@pytest.mark.asyncio
async def test_store_write_error_restarts_generation(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    transitions: list[SchedulerState] = []
    scheduler = _scheduler(host_factory, store_factory, on_transition=transitions.append)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)
    first_store: FakeStoreSession = store_factory.last
    first_store.fail_suffix = "/containers"

    scheduler.triggers.offer("manual")
    await _eventually(lambda: len(store_factory.sessions) == 2 and _refreshes(scheduler) == 2)
    await asyncio.sleep(0.1)

    assert transitions[-4:] == [
        SchedulerState.RUNNING,
        SchedulerState.DRAINING,
        SchedulerState.AWAITING_CONNECTION,
        SchedulerState.RUNNING,
    ]
    assert first_store.closed
    assert host_factory.sessions[0].disconnected
    # exactly one startup refresh on the new generation
    assert len(store_factory.last.puts) == 2
    status = scheduler.status()
    assert status.generation == 2
    assert status.refresh_failed_total == 1
    assert status.last_error is None

    assert await _stop(scheduler, task) is None


@pytest.mark.asyncio
async def test_decode_error_from_event_feed_reconnects(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    scheduler = _scheduler(host_factory, store_factory)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)

    host_factory.last.emit("this is not json")
    await _eventually(lambda: _refreshes(scheduler) == 2)

    assert len(host_factory.sessions) == 2
    assert host_factory.sessions[0].disconnected
    assert SchedulerState.DRAINING in scheduler.history
    await _stop(scheduler, task)


@pytest.mark.asyncio
async def test_event_stream_close_reconnects(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    scheduler = _scheduler(host_factory, store_factory)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)

    on_close = host_factory.last.on_close
    assert on_close is not None
    await asyncio.to_thread(on_close, "LXD event stream closed unexpectedly")
    await _eventually(lambda: scheduler.status().generation == 2)

    await _stop(scheduler, task)


@pytest.mark.asyncio
async def test_shutdown_during_backoff_stops_without_new_attempt(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    host_factory.failures = 1_000
    scheduler = _scheduler(host_factory, store_factory, backoff_step=10.0)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: host_factory.calls == 1)
    await asyncio.sleep(0.02)

    result = await _stop(scheduler, task)

    assert isinstance(result, ConnectError)
    assert host_factory.calls == 1
    assert scheduler.state is SchedulerState.STOPPED
    health = await scheduler.health()
    assert health.status == "error"


@pytest.mark.asyncio
async def test_run_returns_unresolved_error(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    scheduler = _scheduler(host_factory, store_factory, backoff_step=10.0)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)
    host_factory.failures = 1_000

    host_factory.last.emit("{broken")
    await _eventually(lambda: host_factory.calls == 2)
    result = await _stop(scheduler, task)

    assert isinstance(result, ConnectError)
    assert scheduler.status().refresh_ok_total == 1


@pytest.mark.asyncio
async def test_refresh_ignored_while_not_initialized(
    host_factory: SessionFactory, store_factory: SessionFactory, caplog: pytest.LogCaptureFixture
) -> None:
    scheduler = _scheduler(host_factory, store_factory)

    assert await scheduler._refresh("manual") is None
    assert "not initialized" in caplog.text
    assert store_factory.calls == 0


@pytest.mark.asyncio
async def test_health_reports_healthy_after_refresh(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    scheduler = _scheduler(host_factory, store_factory)
    assert (await scheduler.health()).status == "degraded"
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)

    health = await scheduler.health()

    assert health.status == "healthy"
    assert health.details["state"] == "running"
    assert health.details["initialized"] is True
    assert health.details["triggers_offered_total"] == 1
    await _stop(scheduler, task)


@pytest.mark.asyncio
async def test_host_query_error_is_fatal_for_generation(
    host_factory: SessionFactory, store_factory: SessionFactory
) -> None:
    scheduler = _scheduler(host_factory, store_factory)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)
    first_store: FakeStoreSession = store_factory.last

    host_factory.last.fail_queries = True
    scheduler.triggers.offer("manual")
    await _eventually(lambda: _refreshes(scheduler) == 2)

    # the failed capture wrote nothing
    assert len(first_store.puts) == 2
    assert scheduler.status().refresh_failed_total == 1
    await _stop(scheduler, task)


@pytest.mark.asyncio
async def test_debug_log_carries_capture_time(
    host_factory: SessionFactory, store_factory: SessionFactory, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.DEBUG, logger="lxd2etcd.core.scheduler")
    scheduler = _scheduler(host_factory, store_factory)
    task = asyncio.create_task(scheduler.run())
    await _eventually(lambda: _refreshes(scheduler) == 1)
    await _stop(scheduler, task)

    messages = [record.getMessage() for record in caplog.records]
    lines = [message for message in messages if "retrieved lxd info" in message]
    assert len(lines) == 1
    assert "+00:00" in lines[0].splitlines()[0]
    assert '"lxdbr0"' in lines[0]
