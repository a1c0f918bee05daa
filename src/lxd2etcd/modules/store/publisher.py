"""
Write a `HostSnapshot` to its two etcd keys.

The two puts are not transactional: when the second one fails the keys
disagree until the next successful refresh overwrites both.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from ...core.contracts import HostSnapshot, StoreWriteError

if TYPE_CHECKING:
    from .etcd_client import StoreSession

logger = logging.getLogger(__name__)

KEY_PREFIX = "/lxd"


def networks_key(hostname: str) -> str:
    return f"{KEY_PREFIX}/{hostname}/networks"


def containers_key(hostname: str) -> str:
    return f"{KEY_PREFIX}/{hostname}/containers"


def serialize(document: dict[str, Any]) -> str:
    """Compact JSON, matching the layout consumers already parse."""
    try:
        return json.dumps(document, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise StoreWriteError(f"fail to serialize <{document!r}>") from exc


class SnapshotPublisher:
    """Persist snapshots under ``/lxd/<hostname>/``."""

    def write(self, store: StoreSession, hostname: str, snapshot: HostSnapshot) -> None:
        for key, document in (
            (networks_key(hostname), snapshot.networks_document()),
            (containers_key(hostname), snapshot.containers_document()),
        ):
            value = serialize(document)
            store.put(key, value)
            logger.debug("persisted %s (%d bytes)", key, len(value))


__all__ = ["SnapshotPublisher", "containers_key", "networks_key", "serialize"]
