"""
LXD host session built on pylxd.

The session bundles the REST client used to build snapshots and the
websocket subscribed to lifecycle events. Event frames are delivered on the
websocket's own thread; callers must hand them over to their event loop
without blocking.
"""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol
from urllib.parse import quote

import pylxd  # type: ignore[import-untyped]
import pylxd.exceptions  # type: ignore[import-untyped]
from ws4py.client.threadedclient import WebSocketClient  # type: ignore[import-untyped]
from ws4py.exc import WebSocketException  # type: ignore[import-untyped]

from ...core.config import LxdSettings
from ...core.contracts import ConnectError, HostQueryError

logger = logging.getLogger(__name__)

EventCallback = Callable[[str], None]
CloseCallback = Callable[[str], None]

_LXD_ERRORS = (
    pylxd.exceptions.LXDAPIException,
    pylxd.exceptions.ClientConnectionFailed,
    OSError,
    ValueError,
)


class HostSession(Protocol):
    """Surface of the LXD host consumed by the connection manager and producer."""

    def subscribe(self, on_event: EventCallback, on_close: CloseCallback) -> None: ...

    def disconnect(self) -> None: ...

    def list_networks(self) -> list[str]: ...

    def network_state(self, name: str) -> dict[str, Any]: ...

    def list_containers_full(self) -> list[dict[str, Any]]: ...


class LifecycleListener(WebSocketClient):
    """Threaded websocket client forwarding every text frame to a callback."""

    def __init__(
        self,
        url: str,
        *args: Any,
        on_event: EventCallback,
        on_close: CloseCallback,
        **kwargs: Any,
    ) -> None:
        super().__init__(url, *args, **kwargs)
        self._on_event = on_event
        self._on_close = on_close
        self._closing = threading.Event()

    def received_message(self, message: Any) -> None:
        if not getattr(message, "is_text", True):
            return
        data = message.data
        text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else str(data)
        self._on_event(text)

    def closed(self, code: int, reason: str | None = None) -> None:
        if self._closing.is_set():
            logger.debug("LXD event listener closed (%s).", code)
            return
        self._on_close(f"LXD event stream closed unexpectedly (code={code}, reason={reason})")

    def shutdown(self) -> None:
        self._closing.set()
        try:
            self.close()
        except (OSError, RuntimeError, WebSocketException) as exc:
            logger.debug("Closing LXD event listener failed: %s", exc)


def _endpoint_for(socket_path: str | None) -> str | None:
    if not socket_path:
        return None
    return "http+unix://" + quote(socket_path, safe="")


class LxdHostSession:
    """pylxd-backed implementation of `HostSession`."""

    def __init__(self, client: Any) -> None:
        self._client = client
        self._listener: LifecycleListener | None = None

    @classmethod
    def connect(cls, settings: LxdSettings) -> LxdHostSession:
        """Open the REST client against the configured unix socket."""
        try:
            client = pylxd.Client(endpoint=_endpoint_for(settings.socket))
        except _LXD_ERRORS as exc:
            raise ConnectError(f"fail to initialize lxd client: {exc}") from exc
        logger.debug("lxd client initialized")
        return cls(client)

    def subscribe(self, on_event: EventCallback, on_close: CloseCallback) -> None:
        """Open the lifecycle event feed and start delivering frames to ``on_event``."""
        listener_type = functools.partial(LifecycleListener, on_event=on_event, on_close=on_close)
        try:
            listener = self._client.events(
                websocket_client=listener_type,
                event_types={pylxd.EventType.Lifecycle},
            )
            listener.connect()
        except (*_LXD_ERRORS, WebSocketException) as exc:
            raise ConnectError(f"fail to initialize lxd event listener: {exc}") from exc
        self._listener = listener
        logger.debug("lxd event listener connected")

    def disconnect(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.shutdown()

    def list_networks(self) -> list[str]:
        response = self._get(self._client.api.networks, "fail to retrieve networks")
        names: list[str] = []
        for entry in response:
            if isinstance(entry, dict):
                names.append(str(entry.get("name", "")))
            else:
                names.append(str(entry).rstrip("/").rsplit("/", 1)[-1])
        return names

    def network_state(self, name: str) -> dict[str, Any]:
        node = self._client.api.networks[name].state
        state = self._get(node, f"fail to retrieve state of network <{name}>", recursion=None)
        return state if isinstance(state, dict) else {}

    def list_containers_full(self) -> list[dict[str, Any]]:
        containers = self._get(
            self._client.api.containers, "fail to retrieve containers", recursion=2
        )
        return [entry for entry in containers if isinstance(entry, dict)]

    @staticmethod
    def _get(node: Any, message: str, *, recursion: int | None = 1) -> Any:
        params = {"recursion": recursion} if recursion is not None else None
        try:
            response = node.get(params=params)
            return response.json()["metadata"]
        except (*_LXD_ERRORS, KeyError) as exc:
            raise HostQueryError(f"{message}: {exc}") from exc


__all__ = ["HostSession", "LifecycleListener", "LxdHostSession"]
