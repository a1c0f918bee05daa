"""etcd access and snapshot publication."""

from .etcd_client import EtcdClient, StoreSession
from .publisher import SnapshotPublisher, containers_key, networks_key

__all__ = ["EtcdClient", "SnapshotPublisher", "StoreSession", "containers_key", "networks_key"]
