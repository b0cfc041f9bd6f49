from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import configparser

from board_tap.errors import ConfigError

MODULE_SECTION_PREFIX = "module:"
GROUP_SECTION_PREFIX = "group:"


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    base_topic: str
    client_id: str
    username: str | None
    password: str | None
    qos: int
    retain: bool
    tls_enabled: bool
    ca_cert: str | None
    keepalive: int = 60


@dataclass(frozen=True)
class PublishConfig:
    interval_s: float = 15.0
    min_interval_s: float = 1.0


@dataclass(frozen=True)
class CollectorConfig:
    modules_files: list[str] = field(default_factory=list)
    failure_threshold: int = 3
    backoff_max_s: float = 600.0
    backoff_max_factor: float = 10.0
    shutdown_grace_s: float = 5.0
    connection_window_s: float = 120.0


@dataclass(frozen=True)
class ModuleOverride:
    """Per-module or per-group settings; ``None`` means not configured."""

    enabled: bool | None = None
    interval_s: float | None = None


@dataclass(frozen=True)
class AppConfig:
    mqtt: MqttConfig
    publish: PublishConfig
    collector: CollectorConfig
    modules: dict[str, ModuleOverride] = field(default_factory=dict)
    groups: dict[str, ModuleOverride] = field(default_factory=dict)


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _get_list(value: str | None) -> list[str]:
    if value is None:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_override(section: configparser.SectionProxy) -> ModuleOverride:
    interval = section.getfloat("interval_s", fallback=None)
    if interval is not None and interval <= 0:
        raise ConfigError(f"[{section.name}] interval_s must be positive")
    return ModuleOverride(
        enabled=section.getboolean("enabled", fallback=None),
        interval_s=interval,
    )


def load_config(path: str | Path) -> AppConfig:
    parser = configparser.ConfigParser(interpolation=None)
    try:
        read_files = parser.read(path, encoding="utf-8")
    except configparser.Error as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc
    if not read_files:
        raise ConfigError(f"Config file not found: {path}")

    try:
        return _build_config(parser)
    except ValueError as exc:
        # getint/getfloat/getboolean raise ValueError on malformed values
        raise ConfigError(f"Invalid value in {path}: {exc}") from exc


def _build_config(parser: configparser.ConfigParser) -> AppConfig:
    mqtt = MqttConfig(
        host=parser.get("mqtt", "host", fallback="localhost"),
        port=parser.getint("mqtt", "port", fallback=1883),
        base_topic=parser.get("mqtt", "base_topic", fallback="board-tap").rstrip("/"),
        client_id=parser.get("mqtt", "client_id", fallback="board-tap"),
        username=_get_optional(parser.get("mqtt", "username", fallback=None)),
        password=_get_optional(parser.get("mqtt", "password", fallback=None)),
        qos=parser.getint("mqtt", "qos", fallback=0),
        retain=parser.getboolean("mqtt", "retain", fallback=True),
        tls_enabled=parser.getboolean("mqtt", "tls", fallback=False),
        ca_cert=_get_optional(parser.get("mqtt", "ca_cert", fallback=None)),
        keepalive=parser.getint("mqtt", "keepalive", fallback=60),
    )
    if mqtt.qos not in (0, 1, 2):
        raise ConfigError(f"[mqtt] qos must be 0, 1 or 2, got {mqtt.qos}")

    publish = PublishConfig(
        interval_s=parser.getfloat("publish", "interval_s", fallback=15.0),
        min_interval_s=parser.getfloat("publish", "min_interval_s", fallback=1.0),
    )
    if publish.min_interval_s <= 0:
        raise ConfigError("[publish] min_interval_s must be positive")

    collector = CollectorConfig(
        modules_files=_get_list(parser.get("collector", "modules_file", fallback=None)),
        failure_threshold=parser.getint("collector", "failure_threshold", fallback=3),
        backoff_max_s=parser.getfloat("collector", "backoff_max_s", fallback=600.0),
        backoff_max_factor=parser.getfloat("collector", "backoff_max_factor", fallback=10.0),
        shutdown_grace_s=parser.getfloat("collector", "shutdown_grace_s", fallback=5.0),
        connection_window_s=parser.getfloat("collector", "connection_window_s", fallback=120.0),
    )

    modules: dict[str, ModuleOverride] = {}
    groups: dict[str, ModuleOverride] = {}
    for name in parser.sections():
        if name.startswith(MODULE_SECTION_PREFIX):
            modules[name[len(MODULE_SECTION_PREFIX):].strip()] = _parse_override(parser[name])
        elif name.startswith(GROUP_SECTION_PREFIX):
            groups[name[len(GROUP_SECTION_PREFIX):].strip()] = _parse_override(parser[name])

    return AppConfig(
        mqtt=mqtt,
        publish=publish,
        collector=collector,
        modules=modules,
        groups=groups,
    )
