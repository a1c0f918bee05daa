from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from fakes import FakeHostSession, FakeStoreSession, SessionFactory

from lxd2etcd.core.config import ConfigService


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


@pytest.fixture
def host_factory() -> SessionFactory:
    return SessionFactory(FakeHostSession)


@pytest.fixture
def store_factory() -> SessionFactory:
    return SessionFactory(FakeStoreSession)


@pytest.fixture
def sample_config_file(tmp_path: Path) -> Path:
    """
    Provide a temporary lxd2etcd.yml for tests.
    """

    config_file = tmp_path / "lxd2etcd.yml"
    _write_yaml(
        config_file,
        """
        debug: false
        hostname: "host1"

        lxd:
          socket: "/var/snap/lxd/common/lxd/unix.socket"
          wait_for_dhcp: "5s"
          refresh_interval: "2m"

        etcd:
          endpoints:
            - "10.0.0.1:2379"
            - "http://10.0.0.2:2379"
          dial_timeout: "1500ms"
          username: "lxd2etcd"
          password: "s3cret"

        containers:
          web1:
            node_ip: "10.0.0.5"
            default_interface: "eth0"
          db1:
            default_interface: "eth1"
        """,
    )
    return config_file


@pytest.fixture
def sample_config_service(sample_config_file: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_file=sample_config_file)
