"""
Contracts shared by the lxd2etcd components.

The snapshot models mirror the JSON documents persisted in etcd, so field
order and serialized names are part of the wire format. Everything here is
immutable: a snapshot is built once per refresh cycle and discarded after
it has been published.
"""

from __future__ import annotations

import datetime as dt
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Lxd2EtcdError(RuntimeError):
    """Base class for errors raised by the synchronizer."""


class ConnectError(Lxd2EtcdError):
    """LXD or etcd could not be reached (or refused our credentials) during acquire."""


class DecodeError(Lxd2EtcdError):
    """An LXD event payload did not match the lifecycle event schema."""


class HostQueryError(Lxd2EtcdError):
    """Querying LXD failed while building a snapshot."""


class StoreWriteError(Lxd2EtcdError):
    """Writing a snapshot key to etcd failed."""


class NetworkInfo(BaseModel):
    """Published attributes of one LXD network."""

    model_config = ConfigDict(frozen=True)

    mac: str = ""


class NetDevice(BaseModel):
    """A network device (interface) of a container."""

    model_config = ConfigDict(frozen=True)

    network: str = ""
    port: str = ""
    mac: str = ""
    ipv4: tuple[str, ...] = ()
    ipv6: tuple[str, ...] = ()


class ContainerInfo(BaseModel):
    """Published attributes of one container."""

    model_config = ConfigDict(frozen=True)

    status: str = ""
    default_interface: str = ""
    default_ipv4: tuple[str, ...] = ()
    default_ipv6: tuple[str, ...] = ()
    node_ip: str = ""
    netdevs: dict[str, NetDevice] = Field(default_factory=dict)


class HostSnapshot(BaseModel):
    """One complete capture of LXD network and container state."""

    model_config = ConfigDict(frozen=True)

    networks: dict[str, NetworkInfo] = Field(default_factory=dict)
    containers: dict[str, ContainerInfo] = Field(default_factory=dict)
    captured_at: dt.datetime = Field(
        default_factory=lambda: dt.datetime.now(tz=dt.UTC),
        exclude=True,
        description="Capture timestamp in UTC; not part of the published documents.",
    )

    def networks_document(self) -> dict[str, Any]:
        return {name: self.networks[name].model_dump(mode="json") for name in sorted(self.networks)}

    def containers_document(self) -> dict[str, Any]:
        documents: dict[str, Any] = {}
        for name in sorted(self.containers):
            data = self.containers[name].model_dump(mode="json")
            data["netdevs"] = {dev: data["netdevs"][dev] for dev in sorted(data["netdevs"])}
            documents[name] = data
        return documents

    def pretty(self) -> str:
        """Human friendly, indented JSON rendering used in debug logs."""
        return json.dumps(
            {"networks": self.networks_document(), "containers": self.containers_document()},
            indent=2,
        )


class HealthStatus(BaseModel):
    """Structured health report for the service."""

    model_config = ConfigDict(extra="allow", frozen=True)

    status: str = Field(description="Health classification such as healthy/degraded/error.")
    details: dict[str, Any] = Field(default_factory=dict)


class SchedulerStatus(BaseModel):
    """Telemetry snapshot of the refresh scheduler."""

    model_config = ConfigDict(frozen=True)

    state: str = Field(description="Current scheduler state name.")
    generation: int = Field(ge=0, description="Connection generations acquired so far.")
    initialized: bool = Field(default=False)
    refresh_ok_total: int = Field(default=0, ge=0)
    refresh_failed_total: int = Field(default=0, ge=0)
    triggers_offered_total: int = Field(default=0, ge=0)
    triggers_dropped_total: int = Field(
        default=0, ge=0, description="Triggers collapsed because a refresh was already pending."
    )
    signals_received_total: int = Field(default=0, ge=0)
    signals_dropped_total: int = Field(
        default=0, ge=0, description="Classifier signals dropped because the channel was full."
    )
    connect_failures_total: int = Field(default=0, ge=0)
    last_error: str | None = Field(default=None)
    last_refresh_utc: dt.datetime | None = Field(default=None)


__all__ = [
    "ConnectError",
    "ContainerInfo",
    "DecodeError",
    "HealthStatus",
    "HostQueryError",
    "HostSnapshot",
    "Lxd2EtcdError",
    "NetDevice",
    "NetworkInfo",
    "SchedulerStatus",
    "StoreWriteError",
]
