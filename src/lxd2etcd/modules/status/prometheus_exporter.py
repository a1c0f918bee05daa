"""
Expose refresh scheduler telemetry via Prometheus.

The orchestrator pushes `SchedulerStatus` snapshots into the exporter and
renders them as gauges so operators can alert on stale refreshes or a
flapping connection without digging through logs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from prometheus_client import CollectorRegistry, Gauge, start_http_server

from ...core.contracts import SchedulerStatus

logger = logging.getLogger(__name__)

STATES = ("awaiting_connection", "running", "draining", "stopped")


def _default_server_factory(
    port: int, addr: str, registry: CollectorRegistry
) -> object:  # pragma: no cover - thin wrapper
    return start_http_server(port=port, addr=addr, registry=registry)


class PrometheusExporter:
    """Publishes scheduler status as gauges over HTTP."""

    def __init__(
        self,
        *,
        port: int = 9464,
        addr: str = "127.0.0.1",
        registry: CollectorRegistry | None = None,
        server_factory: Callable[[int, str, CollectorRegistry], object] | None = None,
    ) -> None:
        self._registry = registry or CollectorRegistry()
        self._server_factory = server_factory or _default_server_factory
        self._server: object | None = None
        self._port = port
        self._addr = addr
        self._state = Gauge(
            "lxd2etcd_scheduler_state",
            "1 for the current scheduler state, 0 otherwise.",
            ["state"],
            registry=self._registry,
        )
        self._generation = Gauge(
            "lxd2etcd_connection_generation",
            "Connection generations acquired since startup.",
            registry=self._registry,
        )
        self._initialized = Gauge(
            "lxd2etcd_initialized",
            "1 while LXD and etcd connections are established.",
            registry=self._registry,
        )
        self._refresh_ok = Gauge(
            "lxd2etcd_refresh_ok_total",
            "Successful refresh cycles.",
            registry=self._registry,
        )
        self._refresh_failed = Gauge(
            "lxd2etcd_refresh_failed_total",
            "Failed refresh cycles.",
            registry=self._registry,
        )
        self._triggers_offered = Gauge(
            "lxd2etcd_triggers_offered_total",
            "Refresh triggers accepted into the pending slot.",
            registry=self._registry,
        )
        self._triggers_dropped = Gauge(
            "lxd2etcd_triggers_coalesced_total",
            "Refresh triggers collapsed into an already pending refresh.",
            registry=self._registry,
        )
        self._signals_received = Gauge(
            "lxd2etcd_signals_received_total",
            "LXD lifecycle events that requested a refresh.",
            registry=self._registry,
        )
        self._signals_dropped = Gauge(
            "lxd2etcd_signals_dropped_total",
            "Refresh signals dropped because the channel was full.",
            registry=self._registry,
        )
        self._connect_failures = Gauge(
            "lxd2etcd_connect_failures_total",
            "Failed connection attempts.",
            registry=self._registry,
        )
        self._last_refresh = Gauge(
            "lxd2etcd_last_refresh_timestamp_seconds",
            "Unix time of the last successful refresh.",
            registry=self._registry,
        )

    def start(self) -> None:
        if self._server is None:
            self._server = self._server_factory(self._port, self._addr, self._registry)
            logger.info("Started Prometheus exporter on %s:%d", self._addr, self._port)

    def stop(self) -> None:
        # start_http_server returns (server, thread) on current prometheus_client
        server = self._server[0] if isinstance(self._server, tuple) else self._server
        shutdown = getattr(server, "shutdown", None)
        if callable(shutdown):
            shutdown()
        self._server = None

    def update(self, status: SchedulerStatus) -> None:
        for state in STATES:
            self._state.labels(state=state).set(1 if state == status.state else 0)
        self._generation.set(status.generation)
        self._initialized.set(1 if status.initialized else 0)
        self._refresh_ok.set(status.refresh_ok_total)
        self._refresh_failed.set(status.refresh_failed_total)
        self._triggers_offered.set(status.triggers_offered_total)
        self._triggers_dropped.set(status.triggers_dropped_total)
        self._signals_received.set(status.signals_received_total)
        self._signals_dropped.set(status.signals_dropped_total)
        self._connect_failures.set(status.connect_failures_total)
        if status.last_refresh_utc is not None:
            self._last_refresh.set(status.last_refresh_utc.timestamp())


__all__ = ["PrometheusExporter"]
