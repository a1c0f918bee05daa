"""
Dynaconf-powered configuration loader with Pydantic validation.

The configuration service reads the daemon's YAML file, validates it and
exposes an immutable `ConfigSnapshot`. Components receive the sections they
need at construction time; nothing reads configuration through globals.
"""

from __future__ import annotations

import json
import re
import socket
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)

DEFAULT_CONFIG_FILE = Path("/etc/lxd2etcd.yml")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Case-insensitive dictionary lookup helper."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, dict):
        return value
    return {}


def _value(raw: dict[str, Any], key: str) -> Any:
    for candidate in (key, key.upper(), key.lower()):
        if candidate in raw:
            return raw[candidate]
    return None


def _lower_keys(section: dict[str, Any]) -> dict[str, Any]:
    return {str(key).lower(): value for key, value in section.items()}


def parse_duration(value: Any) -> float:
    """
    Convert a duration into seconds.

    Plain numbers are seconds. Strings may be numeric or use Go duration
    syntax such as ``"500ms"``, ``"5s"`` or ``"1m30s"``.
    """

    if isinstance(value, bool):
        raise ValueError("duration must be a number of seconds or a duration string")
    if isinstance(value, int | float):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration {value!r}")
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


class ConfigError(RuntimeError):
    """Raised when the configuration file is missing or invalid."""


class LxdSettings(BaseModel):
    """Connection and refresh-timing parameters for the LXD side."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    socket: str | None = Field(
        default=None, description="Path to the LXD unix socket (pylxd default when unset)."
    )
    refresh_interval: float = Field(default=300.0, description="Periodic safety refresh.")
    wait_for_dhcp: float = Field(
        default=10.0,
        description="Settle delay before the extra refresh that follows an event burst.",
    )
    debounce_window: float = Field(default=1.0)
    signal_queue_size: int = Field(default=64, ge=1)

    @field_validator("refresh_interval", "wait_for_dhcp", "debounce_window", mode="before")
    @classmethod
    def _coerce_duration(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("refresh_interval")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("refresh_interval must be positive")
        return value

    @field_validator("wait_for_dhcp", "debounce_window")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("delays cannot be negative")
        return value


class EtcdSettings(BaseModel):
    """Endpoints and credentials for the etcd cluster."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    endpoints: tuple[str, ...] = Field(min_length=1)
    dial_timeout: float = Field(default=5.0)
    request_timeout: float = Field(default=10.0)
    username: str | None = Field(default=None)
    password: SecretStr | None = Field(default=None)

    @field_validator("endpoints", mode="before")
    @classmethod
    def _coerce_endpoints(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @field_validator("dial_timeout", "request_timeout", mode="before")
    @classmethod
    def _coerce_timeout(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("dial_timeout", "request_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value


class ContainerData(BaseModel):
    """Per-container metadata merged into the published container document."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    node_ip: str = Field(default="")
    default_interface: str = Field(default="")

    @field_validator("node_ip", "default_interface", mode="before")
    @classmethod
    def _empty_when_null(cls, value: Any) -> Any:
        return "" if value is None else value


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    file: Path | None = Field(default=None)
    max_mb: int = Field(default=10, ge=1)
    backup_count: int = Field(default=3, ge=0)


class MetricsSettings(BaseModel):
    """Optional Prometheus exporter."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    enabled: bool = Field(default=False)
    addr: str = Field(default="127.0.0.1")
    port: int = Field(default=9464, gt=0, lt=65536)
    interval: float = Field(default=15.0)

    @field_validator("interval", mode="before")
    @classmethod
    def _coerce_interval(cls, value: Any) -> float:
        return parse_duration(value)


class ConfigSnapshot(BaseModel):
    """Validated, strongly typed view of the configuration file."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    debug: bool = Field(default=False)
    hostname: str = Field(default_factory=lambda: socket.gethostname())
    lxd: LxdSettings = Field(default_factory=LxdSettings)
    etcd: EtcdSettings
    containers: dict[str, ContainerData] = Field(default_factory=dict)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)

    @field_validator("hostname")
    @classmethod
    def _hostname_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value or "/" in value:
            raise ValueError("hostname must be non-empty and cannot contain '/'")
        return value

    @field_validator("containers", mode="before")
    @classmethod
    def _containers_default(cls, value: Any) -> Any:
        return value or {}

    def describe(self) -> str:
        """Indented dump with secrets masked, for debug logging."""
        return json.dumps(self.model_dump(mode="json"), indent=2, default=str)


class ConfigService:
    """
    Runtime facade for loading and validating configuration.
    """

    def __init__(
        self,
        *,
        config_file: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        if settings is None and not self._config_file.is_file():
            raise ConfigError(f"Configuration file {self._config_file} does not exist.")
        try:
            self._settings = settings or Dynaconf(
                envvar_prefix="LXD2ETCD",
                settings_files=[str(self._config_file)],
                environments=False,
            )
            raw = self._settings.as_dict()
        except Exception as exc:
            raise ConfigError(f"Failed to parse {self._config_file}: {exc}") from exc
        self._snapshot = self._build_snapshot(raw)

    @property
    def config_file(self) -> Path:
        return self._config_file

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Validated configuration snapshot."""
        return self._snapshot

    def _build_snapshot(self, raw: dict[str, Any]) -> ConfigSnapshot:
        data = self._extract_snapshot_data(raw)
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Configuration validation failed: {exc}") from exc

    def _extract_snapshot_data(self, raw: dict[str, Any]) -> dict[str, Any]:
        # Environment overrides may arrive with upper-cased nested keys.
        data: dict[str, Any] = {
            "lxd": _lower_keys(_section(raw, "lxd")),
            "etcd": _lower_keys(_section(raw, "etcd")),
            "containers": {
                name: _lower_keys(entry) if isinstance(entry, dict) else entry
                for name, entry in _section(raw, "containers").items()
            },
            "logging": _lower_keys(_section(raw, "logging")),
            "metrics": _lower_keys(_section(raw, "metrics")),
        }
        for key in ("debug", "hostname"):
            value = _value(raw, key)
            if value is not None:
                data[key] = value
        return data


__all__ = [
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "ContainerData",
    "EtcdSettings",
    "LoggingSettings",
    "LxdSettings",
    "MetricsSettings",
    "parse_duration",
]
