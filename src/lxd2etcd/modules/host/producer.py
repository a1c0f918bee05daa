"""
Build a `HostSnapshot` from the current state of an LXD host.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from ...core.config import ContainerData
from ...core.contracts import (
    ContainerInfo,
    HostQueryError,
    HostSnapshot,
    NetDevice,
    NetworkInfo,
)
from ...core.control import TRACE

if TYPE_CHECKING:
    from .lxd_client import HostSession

logger = logging.getLogger(__name__)


class SnapshotProducer:
    """
    Capture networks and containers in one pass.

    Any host query failure aborts the capture so a partial snapshot is never
    handed to the publisher.
    """

    def __init__(self, containers: Mapping[str, ContainerData] | None = None) -> None:
        self._containers = dict(containers or {})

    def capture(self, host: HostSession) -> HostSnapshot:
        try:
            networks = self._capture_networks(host)
            containers = self._capture_containers(host)
        except (AttributeError, TypeError) as exc:
            raise HostQueryError(f"unexpected LXD response shape: {exc}") from exc
        return HostSnapshot(networks=networks, containers=containers)

    def _capture_networks(self, host: HostSession) -> dict[str, NetworkInfo]:
        logger.debug("retrieve network infos")
        networks: dict[str, NetworkInfo] = {}
        for name in host.list_networks():
            logger.log(TRACE, "processing network: <%s>", name)
            state = host.network_state(name)
            networks[name] = NetworkInfo(mac=str(state.get("hwaddr") or ""))
        return networks

    def _capture_containers(self, host: HostSession) -> dict[str, ContainerInfo]:
        logger.debug("retrieve container infos")
        containers: dict[str, ContainerInfo] = {}
        for container in host.list_containers_full():
            name = container.get("name")
            if not name:
                raise HostQueryError(f"container entry without a name: <{container!r}>")
            logger.log(TRACE, "processing container: <%s>", name)
            containers[name] = self._container_info(container, self._containers.get(name))
        return containers

    def _container_info(
        self, container: dict[str, Any], extra: ContainerData | None
    ) -> ContainerInfo:
        extra = extra or ContainerData()
        devices_config = container.get("expanded_devices") or {}
        state = container.get("state") or {}
        netdevs: dict[str, NetDevice] = {}
        for devname, net in (state.get("network") or {}).items():
            logger.log(TRACE, "processing container network <%s>: <%s>", devname, net)
            netdevs[devname] = self._net_device(net, devices_config.get(devname) or {})
        default = netdevs.get(extra.default_interface) if extra.default_interface else None
        return ContainerInfo(
            status=str(container.get("status") or ""),
            default_interface=extra.default_interface,
            default_ipv4=default.ipv4 if default else (),
            default_ipv6=default.ipv6 if default else (),
            node_ip=extra.node_ip,
            netdevs=netdevs,
        )

    @staticmethod
    def _net_device(net: dict[str, Any], device_config: dict[str, Any]) -> NetDevice:
        ipv4: list[str] = []
        ipv6: list[str] = []
        for address in net.get("addresses") or []:
            cidr = f"{address.get('address', '')}/{address.get('netmask', '')}"
            if address.get("family") == "inet":
                ipv4.append(cidr)
            else:
                ipv6.append(cidr)
        return NetDevice(
            network=str(device_config.get("network") or ""),
            port=str(net.get("host_name") or ""),
            mac=str(net.get("hwaddr") or ""),
            ipv4=tuple(ipv4),
            ipv6=tuple(ipv6),
        )


__all__ = ["SnapshotProducer"]
