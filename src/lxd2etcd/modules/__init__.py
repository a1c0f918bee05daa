"""
lxd2etcd components grouped by responsibility.
"""

from .event.classifier import Classification, EventClassifier
from .host.producer import SnapshotProducer
from .status.prometheus_exporter import PrometheusExporter
from .store.etcd_client import EtcdClient
from .store.publisher import SnapshotPublisher

__all__ = [
    "Classification",
    "EtcdClient",
    "EventClassifier",
    "PrometheusExporter",
    "SnapshotProducer",
    "SnapshotPublisher",
]
