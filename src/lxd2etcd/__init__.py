"""
lxd2etcd - mirror LXD container and network state into etcd

A small daemon that watches LXD lifecycle events and keeps a per-host
snapshot of networks and containers published under ``/lxd/<hostname>/``.
"""

__version__ = "0.1.0"
__build__ = "source"

__all__ = ["__build__", "__version__"]
