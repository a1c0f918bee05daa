"""
Minimal etcd v3 client speaking the JSON gRPC-gateway with httpx.

Only what the publisher needs is implemented: endpoint probing,
username/password authentication and single-key puts. Keys and values are
base64 encoded on the wire as the gateway requires.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from ...core.config import EtcdSettings
from ...core.contracts import ConnectError, StoreWriteError

logger = logging.getLogger(__name__)


class StoreSession(Protocol):
    """Surface of the key-value store consumed by the publisher."""

    def put(self, key: str, value: str) -> None: ...

    def close(self) -> None: ...


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def normalize_endpoint(endpoint: str) -> str:
    endpoint = endpoint.strip().rstrip("/")
    if "://" not in endpoint:
        endpoint = f"http://{endpoint}"
    return endpoint


class EtcdClient:
    """A connected session against one etcd endpoint."""

    def __init__(self, client: httpx.Client, *, endpoint: str) -> None:
        self._client = client
        self.endpoint = endpoint

    @classmethod
    def connect(
        cls,
        endpoints: Sequence[str],
        *,
        username: str | None = None,
        password: str | None = None,
        dial_timeout: float = 5.0,
        request_timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> EtcdClient:
        """Return a session on the first endpoint that answers and accepts our credentials."""
        if not endpoints:
            raise ConnectError("no etcd endpoint configured")
        failures: list[str] = []
        timeout = httpx.Timeout(request_timeout, connect=dial_timeout)
        for raw_endpoint in endpoints:
            endpoint = normalize_endpoint(raw_endpoint)
            try:
                client = httpx.Client(base_url=endpoint, timeout=timeout, transport=transport)
            except httpx.InvalidURL as exc:
                failures.append(f"{endpoint}: {exc}")
                continue
            try:
                cls._request(client, "/v3/maintenance/status", {})
                if username:
                    token = cls._authenticate(client, username, password or "")
                    client.headers["Authorization"] = token
            except httpx.HTTPError as exc:
                client.close()
                failures.append(f"{endpoint}: {exc}")
                logger.debug("etcd endpoint %s unavailable: %s", endpoint, exc)
                continue
            logger.debug("etcd client connected to %s", endpoint)
            return cls(client, endpoint=endpoint)
        raise ConnectError("fail to connect to etcd: " + "; ".join(failures))

    @classmethod
    def from_settings(
        cls, settings: EtcdSettings, *, transport: httpx.BaseTransport | None = None
    ) -> EtcdClient:
        return cls.connect(
            settings.endpoints,
            username=settings.username,
            password=settings.password.get_secret_value() if settings.password else None,
            dial_timeout=settings.dial_timeout,
            request_timeout=settings.request_timeout,
            transport=transport,
        )

    def put(self, key: str, value: str) -> None:
        try:
            self._request(self._client, "/v3/kv/put", {"key": _b64(key), "value": _b64(value)})
        except httpx.HTTPError as exc:
            raise StoreWriteError(f"fail to put key <{key}> in etcd: {exc}") from exc

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _authenticate(client: httpx.Client, username: str, password: str) -> str:
        body = EtcdClient._request(
            client, "/v3/auth/authenticate", {"name": username, "password": password}
        )
        token = body.get("token")
        if not token:
            raise httpx.HTTPError("etcd authentication returned no token")
        return str(token)

    @staticmethod
    def _request(client: httpx.Client, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = client.post(path, json=payload)
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


__all__ = ["EtcdClient", "StoreSession", "normalize_endpoint"]
