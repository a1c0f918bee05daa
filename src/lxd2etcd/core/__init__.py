"""
Core infrastructure of lxd2etcd.

Configuration, shared contracts, the asyncio channels and the refresh
scheduler that ties the LXD and etcd sides together.
"""

from .config import ConfigError, ConfigService, ConfigSnapshot
from .connection import ConnectionHandle, ConnectionManager
from .contracts import (
    ConnectError,
    DecodeError,
    HealthStatus,
    HostQueryError,
    HostSnapshot,
    Lxd2EtcdError,
    SchedulerStatus,
    StoreWriteError,
)
from .control import TRACE, ServiceControl
from .orchestrator import Orchestrator
from .scheduler import RefreshScheduler, SchedulerState

__all__ = [
    "TRACE",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "ConnectError",
    "ConnectionHandle",
    "ConnectionManager",
    "DecodeError",
    "HealthStatus",
    "HostQueryError",
    "HostSnapshot",
    "Lxd2EtcdError",
    "Orchestrator",
    "RefreshScheduler",
    "SchedulerState",
    "SchedulerStatus",
    "ServiceControl",
    "StoreWriteError",
]
