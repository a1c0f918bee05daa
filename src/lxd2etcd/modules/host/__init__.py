"""LXD host access and snapshot capture."""

from .lxd_client import HostSession, LxdHostSession
from .producer import SnapshotProducer

__all__ = ["HostSession", "LxdHostSession", "SnapshotProducer"]
