"""
Lifecycle coordinator for the lxd2etcd service.

The orchestrator builds the connection manager, snapshot producer, publisher
and refresh scheduler from a `ConfigSnapshot`, runs the scheduler until
shutdown and, when metrics are enabled, keeps the Prometheus exporter fed
from a periodic telemetry loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from ..modules.host.lxd_client import LxdHostSession
from ..modules.host.producer import SnapshotProducer
from ..modules.status.prometheus_exporter import PrometheusExporter
from ..modules.store.etcd_client import EtcdClient
from ..modules.store.publisher import SnapshotPublisher
from .config import ConfigSnapshot
from .connection import BACKOFF_STEP, ConnectionManager, HostFactory, StoreFactory
from .contracts import HealthStatus
from .control import ServiceControl
from .scheduler import RefreshScheduler

logger = logging.getLogger(__name__)


def _default_host_factory(config: ConfigSnapshot) -> HostFactory:
    return lambda: LxdHostSession.connect(config.lxd)


def _default_store_factory(config: ConfigSnapshot) -> StoreFactory:
    return lambda: EtcdClient.from_settings(config.etcd)


class Orchestrator:
    """Own the scheduler and its ambient services."""

    def __init__(
        self,
        config: ConfigSnapshot,
        *,
        control: ServiceControl | None = None,
        host_factory: HostFactory | None = None,
        store_factory: StoreFactory | None = None,
        exporter: PrometheusExporter | None = None,
        backoff_step: float = BACKOFF_STEP,
    ) -> None:
        self.config = config
        self.control = control or ServiceControl()
        self.connections = ConnectionManager(
            host_factory=host_factory or _default_host_factory(config),
            store_factory=store_factory or _default_store_factory(config),
            control=self.control,
            backoff_step=backoff_step,
        )
        self.scheduler = RefreshScheduler(
            connections=self.connections,
            producer=SnapshotProducer(config.containers),
            publisher=SnapshotPublisher(),
            control=self.control,
            hostname=config.hostname,
            refresh_interval=config.lxd.refresh_interval,
            settle_delay=config.lxd.wait_for_dhcp,
            debounce_window=config.lxd.debounce_window,
            signal_queue_size=config.lxd.signal_queue_size,
        )
        if exporter is None and config.metrics.enabled:
            exporter = PrometheusExporter(port=config.metrics.port, addr=config.metrics.addr)
        self.exporter = exporter
        self._telemetry_interval = config.metrics.interval
        self._telemetry_task: asyncio.Task[None] | None = None

    async def run(self) -> BaseException | None:
        """Run until shutdown; returns the scheduler's last unresolved error."""
        logger.info("starting lxd2etcd for host <%s>", self.config.hostname)
        if self.exporter is not None:
            self.exporter.start()
            self._telemetry_task = asyncio.create_task(
                self._telemetry_loop(), name="lxd2etcd-telemetry"
            )
        try:
            return await self.scheduler.run()
        finally:
            if self._telemetry_task:
                self._telemetry_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._telemetry_task
                self._telemetry_task = None
            if self.exporter is not None:
                self.exporter.update(self.scheduler.status())
                self.exporter.stop()

    def request_shutdown(self) -> None:
        self.scheduler.request_shutdown()

    def toggle_debug(self) -> int:
        return self.control.toggle_debug()

    async def health(self) -> HealthStatus:
        return await self.scheduler.health()

    async def _telemetry_loop(self) -> None:
        assert self.exporter is not None
        while True:
            try:
                self.exporter.update(self.scheduler.status())
            except Exception:
                logger.exception("Failed to update Prometheus gauges.")
            await asyncio.sleep(self._telemetry_interval)


__all__ = ["Orchestrator"]
