"""
Classify LXD lifecycle events into "refresh" or "ignore".

Only the lifecycle action matters: anything touching instances or networks
may change what we publish. Decoding is intentionally lenient about missing
fields; a payload that is not JSON or has the wrong shape means our model of
the event schema is stale and is surfaced as a `DecodeError`.
"""

from __future__ import annotations

import datetime as dt
import enum
import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ...core.contracts import DecodeError
from ...core.control import TRACE

logger = logging.getLogger(__name__)

REFRESH_ACTION_PREFIXES = ("instance-", "network-")


class Classification(enum.Enum):
    SIGNAL_REFRESH = "signal-refresh"
    IGNORE = "ignore"


class LifecycleMetadata(BaseModel):
    """The ``metadata`` object of a lifecycle event."""

    model_config = ConfigDict(extra="allow", frozen=True)

    action: str = ""
    source: str = ""
    context: dict[str, Any] | None = None


class HostEvent(BaseModel):
    """Envelope of one event received on the LXD event feed."""

    model_config = ConfigDict(extra="allow", frozen=True)

    type: str = ""
    timestamp: str = ""
    project: str = ""
    location: str = ""
    metadata: Any = Field(default=None)


def decode_event(raw: str | bytes | dict[str, Any]) -> HostEvent:
    if isinstance(raw, bytes | bytearray):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"event is not valid UTF-8: {exc}") from exc
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DecodeError(f"fail to decode event <{raw}>: {exc}") from exc
    if not isinstance(raw, dict):
        raise DecodeError(f"event envelope is not an object: <{raw!r}>")
    try:
        return HostEvent.model_validate(raw)
    except ValidationError as exc:
        raise DecodeError(f"fail to decode event envelope <{raw!r}>") from exc


def describe_event(event: HostEvent) -> str:
    """Human readable one-liner used by trace logging."""
    timestamp = event.timestamp
    try:
        parsed = dt.datetime.fromisoformat(event.timestamp)
    except ValueError:
        pass
    else:
        timestamp = parsed.strftime("%Y-%m-%d %H:%M:%S")
    metadata = json.dumps(event.metadata, separators=(",", ":"), default=str)
    return (
        f"Project:{event.project}, Location:{event.location}, Type:{event.type}, "
        f"Timestamp:{timestamp}, Metadata:{metadata}"
    )


class EventClassifier:
    """Stateless classifier for lifecycle events."""

    def __init__(self, *, prefixes: tuple[str, ...] = REFRESH_ACTION_PREFIXES) -> None:
        self._prefixes = prefixes

    def classify(self, raw: str | bytes | dict[str, Any]) -> Classification:
        event = decode_event(raw)
        if logger.isEnabledFor(TRACE):
            logger.log(TRACE, "event: %s", describe_event(event))
        lifecycle = self.lifecycle(event)
        if lifecycle.action.startswith(self._prefixes):
            logger.log(TRACE, "triggering refresh for action <%s>", lifecycle.action)
            return Classification.SIGNAL_REFRESH
        return Classification.IGNORE

    @staticmethod
    def lifecycle(event: HostEvent) -> LifecycleMetadata:
        metadata = event.metadata if event.metadata is not None else {}
        if not isinstance(metadata, dict):
            raise DecodeError(f"fail to unmarshal <{metadata!r}> into lifecycle event")
        try:
            return LifecycleMetadata.model_validate(metadata)
        except ValidationError as exc:
            raise DecodeError(f"fail to unmarshal <{metadata!r}> into lifecycle event") from exc


__all__ = [
    "Classification",
    "EventClassifier",
    "HostEvent",
    "LifecycleMetadata",
    "decode_event",
    "describe_event",
]
