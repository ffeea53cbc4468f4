"""Configuration management for the session tracker."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping

DEFAULT_TOPICS: tuple[str, ...] = (
    "zigbee2mqtt/#",
    "zigbee2mqtt/livinglab/#",
    "zigbee2mqtt/+/get",
    "zigbee2mqtt/bridge/devices",
    "zigbee2mqtt/bridge/state",
    "livinglab/#",
    "sensors/#",
)

DEFAULT_NAMESPACES: tuple[str, ...] = ("zigbee2mqtt", "livinglab", "sensors")

DEFAULT_VIDEO_EXTENSIONS: tuple[str, ...] = (".mp4", ".mkv", ".avi", ".mov", ".webm", ".flv")
DEFAULT_IMAGE_EXTENSIONS: tuple[str, ...] = (".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp")

DEVICE_REQUEST_TOPIC = "zigbee2mqtt/bridge/request/devices"

ROOT_ENV = "SESSION_TRACKER_ROOT"
BROKER_HOST_ENV = "SESSION_TRACKER_BROKER_HOST"
BROKER_PORT_ENV = "SESSION_TRACKER_BROKER_PORT"


@dataclass(frozen=True, slots=True)
class BrokerSettings:
    """Connection details for the telemetry broker."""

    host: str = "localhost"
    port: int = 1883
    transport: str = "tcp"
    keepalive: int = 60
    client_id_prefix: str = "session-tracker"
    username: str | None = None
    password: str | None = None
    topics: tuple[str, ...] = DEFAULT_TOPICS
    device_request_topic: str = DEVICE_REQUEST_TOPIC
    device_refresh_interval: float = 300.0
    connect_timeout: float = 10.0

    def __post_init__(self) -> None:
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("Broker host must be a non-empty string")
        try:
            port = int(self.port)
        except (TypeError, ValueError) as exc:
            raise ValueError("Broker port must be an integer") from exc
        if not (0 < port < 65536):
            raise ValueError("Broker port must be between 1 and 65535")
        if self.transport not in {"tcp", "websockets"}:
            raise ValueError("Broker transport must be 'tcp' or 'websockets'")
        if int(self.keepalive) <= 0:
            raise ValueError("Broker keepalive must be positive")
        topics = tuple(str(topic).strip() for topic in self.topics if str(topic).strip())
        if not topics:
            raise ValueError("At least one subscription topic is required")
        if float(self.device_refresh_interval) <= 0:
            raise ValueError("Device refresh interval must be positive")
        if float(self.connect_timeout) <= 0:
            raise ValueError("Connect timeout must be positive")
        object.__setattr__(self, "host", self.host.strip())
        object.__setattr__(self, "port", port)
        object.__setattr__(self, "keepalive", int(self.keepalive))
        object.__setattr__(self, "topics", topics)
        object.__setattr__(self, "device_refresh_interval", float(self.device_refresh_interval))
        object.__setattr__(self, "connect_timeout", float(self.connect_timeout))

    def to_dict(self) -> dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "transport": self.transport,
            "keepalive": self.keepalive,
            "client_id_prefix": self.client_id_prefix,
            "username": self.username,
            "topics": list(self.topics),
            "device_request_topic": self.device_request_topic,
            "device_refresh_interval": self.device_refresh_interval,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True, slots=True)
class BackoffSettings:
    """Capped exponential backoff used when (re)connecting to the broker."""

    initial_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 5

    def __post_init__(self) -> None:
        values = (self.initial_delay, self.factor, self.max_delay)
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
            raise ValueError("Backoff values must be finite numbers")
        if self.initial_delay <= 0:
            raise ValueError("Initial backoff delay must be positive")
        if self.factor < 1:
            raise ValueError("Backoff factor must be at least 1")
        if self.max_delay < self.initial_delay:
            raise ValueError("Maximum backoff delay must not be below the initial delay")
        if int(self.max_attempts) < 1:
            raise ValueError("Maximum connection attempts must be at least 1")
        object.__setattr__(self, "max_attempts", int(self.max_attempts))

    def to_dict(self) -> dict[str, float | int]:
        return {
            "initial_delay": float(self.initial_delay),
            "factor": float(self.factor),
            "max_delay": float(self.max_delay),
            "max_attempts": int(self.max_attempts),
        }


@dataclass(frozen=True, slots=True)
class ConsolidationSettings:
    """Tuning values for the per-session consolidation writer."""

    flush_threshold: int = 20
    max_records: int = 100_000
    workers: int = 2

    def __post_init__(self) -> None:
        if int(self.flush_threshold) < 1:
            raise ValueError("Flush threshold must be at least 1")
        if int(self.max_records) < 1:
            raise ValueError("Maximum records must be at least 1")
        if int(self.workers) < 1:
            raise ValueError("Writer worker count must be at least 1")

    def to_dict(self) -> dict[str, int]:
        return {
            "flush_threshold": int(self.flush_threshold),
            "max_records": int(self.max_records),
            "workers": int(self.workers),
        }


@dataclass(frozen=True, slots=True)
class MatchingSettings:
    """Extensions and extra filename rules used by the recording matcher."""

    video_extensions: tuple[str, ...] = DEFAULT_VIDEO_EXTENSIONS
    image_extensions: tuple[str, ...] = DEFAULT_IMAGE_EXTENSIONS
    extra_rules: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "video_extensions", _normalise_extensions(self.video_extensions))
        object.__setattr__(self, "image_extensions", _normalise_extensions(self.image_extensions))
        rules: list[tuple[str, str]] = []
        for entry in self.extra_rules:
            name, template = entry
            if str(template).count("{id}") != 1:
                raise ValueError(f"Filename rule {name!r} needs exactly one {{id}} placeholder")
            rules.append((str(name), str(template)))
        object.__setattr__(self, "extra_rules", tuple(rules))

    def to_dict(self) -> dict[str, object]:
        return {
            "video_extensions": list(self.video_extensions),
            "image_extensions": list(self.image_extensions),
            "extra_rules": [{"name": name, "template": template} for name, template in self.extra_rules],
        }


def _normalise_extensions(values: Iterable[str]) -> tuple[str, ...]:
    cleaned: list[str] = []
    for value in values:
        text = str(value).strip().lower()
        if not text:
            continue
        if not text.startswith("."):
            text = f".{text}"
        if text not in cleaned:
            cleaned.append(text)
    if not cleaned:
        raise ValueError("At least one file extension is required")
    return tuple(cleaned)


@dataclass(frozen=True, slots=True)
class StoragePaths:
    """Directory layout derived from the application root."""

    root: Path

    @property
    def recordings_root(self) -> Path:
        return self.root / "recordings"

    @property
    def sessions_root(self) -> Path:
        return self.root / "sessions"

    @property
    def data_root(self) -> Path:
        return self.root / "data"

    @property
    def exports_root(self) -> Path:
        return self.root / "exports"

    def session_dir(self, session_id: int) -> Path:
        return self.sessions_root / f"Session{int(session_id)}"

    def session_recordings_dir(self, session_id: int) -> Path:
        return self.session_dir(session_id) / "recordings"

    def session_sensor_dir(self, session_id: int) -> Path:
        return self.session_dir(session_id) / "sensor_data"

    def session_data_dir(self, session_id: int) -> Path:
        return self.session_dir(session_id) / "data"

    def ensure(self) -> None:
        for path in (self.recordings_root, self.sessions_root, self.data_root, self.exports_root):
            path.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Complete configuration for one session tracker instance."""

    root: Path = Path(".")
    broker: BrokerSettings = field(default_factory=BrokerSettings)
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    consolidation: ConsolidationSettings = field(default_factory=ConsolidationSettings)
    matching: MatchingSettings = field(default_factory=MatchingSettings)
    namespaces: tuple[str, ...] = DEFAULT_NAMESPACES

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root))
        namespaces = tuple(str(ns).strip().strip("/") for ns in self.namespaces if str(ns).strip())
        if not namespaces:
            raise ValueError("At least one telemetry namespace is required")
        object.__setattr__(self, "namespaces", namespaces)

    @property
    def storage(self) -> StoragePaths:
        return StoragePaths(self.root)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": str(self.root),
            "broker": self.broker.to_dict(),
            "backoff": self.backoff.to_dict(),
            "consolidation": self.consolidation.to_dict(),
            "matching": self.matching.to_dict(),
            "namespaces": list(self.namespaces),
        }


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Configuration section {key!r} must be an object")
    return value


def _parse_broker(payload: Mapping[str, Any]) -> BrokerSettings:
    data = dict(payload)
    data.pop("password_set", None)
    if "topics" in data:
        topics = data["topics"]
        if isinstance(topics, str) or not isinstance(topics, Iterable):
            raise ValueError("Broker topics must be a list of strings")
        data["topics"] = tuple(str(topic) for topic in topics)
    try:
        return BrokerSettings(**data)
    except TypeError as exc:
        raise ValueError(f"Invalid broker settings: {exc}") from exc


def _parse_backoff(payload: Mapping[str, Any]) -> BackoffSettings:
    try:
        return BackoffSettings(**dict(payload))
    except TypeError as exc:
        raise ValueError(f"Invalid backoff settings: {exc}") from exc


def _parse_consolidation(payload: Mapping[str, Any]) -> ConsolidationSettings:
    try:
        return ConsolidationSettings(**{k: int(v) for k, v in payload.items()})
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid consolidation settings: {exc}") from exc


def _parse_matching(payload: Mapping[str, Any]) -> MatchingSettings:
    defaults = MatchingSettings()
    rules_payload = payload.get("extra_rules", [])
    if not isinstance(rules_payload, list):
        raise ValueError("Matching extra_rules must be a list")
    rules: list[tuple[str, str]] = []
    for entry in rules_payload:
        if isinstance(entry, Mapping):
            name = entry.get("name")
            template = entry.get("template")
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            name, template = entry
        else:
            raise ValueError("Filename rules must be {name, template} objects")
        if not isinstance(name, str) or not isinstance(template, str):
            raise ValueError("Filename rule name and template must be strings")
        rules.append((name, template))
    return MatchingSettings(
        video_extensions=tuple(payload.get("video_extensions", defaults.video_extensions)),
        image_extensions=tuple(payload.get("image_extensions", defaults.image_extensions)),
        extra_rules=tuple(rules),
    )


def parse_config(payload: Mapping[str, Any], *, root: Path | str | None = None) -> AppConfig:
    """Build an :class:`AppConfig` from a decoded JSON payload."""

    if not isinstance(payload, Mapping):
        raise ValueError("Configuration file must contain a JSON object")
    root_value = root if root is not None else payload.get("root", ".")
    namespaces = payload.get("namespaces", DEFAULT_NAMESPACES)
    if isinstance(namespaces, str):
        namespaces = [namespaces]
    return AppConfig(
        root=Path(root_value),
        broker=_parse_broker(_section(payload, "broker")),
        backoff=_parse_backoff(_section(payload, "backoff")),
        consolidation=_parse_consolidation(_section(payload, "consolidation")),
        matching=_parse_matching(_section(payload, "matching")),
        namespaces=tuple(namespaces),
    )


def apply_environment(config: AppConfig, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Return ``config`` with ``SESSION_TRACKER_*`` overrides applied."""

    env = os.environ if environ is None else environ
    root = config.root
    broker = config.broker
    root_env = env.get(ROOT_ENV)
    if root_env:
        root = Path(root_env)
    host_env = env.get(BROKER_HOST_ENV)
    port_env = env.get(BROKER_PORT_ENV)
    if host_env or port_env:
        broker_payload = broker.to_dict()
        broker_payload["password"] = broker.password
        if host_env:
            broker_payload["host"] = host_env
        if port_env:
            try:
                broker_payload["port"] = int(port_env)
            except ValueError as exc:
                raise ValueError(f"Invalid {BROKER_PORT_ENV} value {port_env!r}") from exc
        broker = _parse_broker(broker_payload)
    return AppConfig(
        root=root,
        broker=broker,
        backoff=config.backoff,
        consolidation=config.consolidation,
        matching=config.matching,
        namespaces=config.namespaces,
    )


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str, *, environ: Mapping[str, str] | None = None) -> None:
        self._path = Path(config_path).absolute()
        self._lock = Lock()
        self._environ = environ
        self._stored_root: str | None = None
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._config = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> AppConfig:
        if not self._path.exists():
            return apply_environment(AppConfig(root=self._path.parent), self._environ)
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            root = self._path.parent
            if isinstance(payload, Mapping) and payload.get("root"):
                # Relative roots are resolved against the config file location.
                self._stored_root = str(payload["root"])
                root = root / self._stored_root
            config = parse_config(payload, root=root)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc
        return apply_environment(config, self._environ)

    def _save(self) -> None:
        payload = self._config.to_dict()
        # Persist the root as written, never the resolved or overridden one.
        if self._stored_root is None:
            payload.pop("root")
        else:
            payload["root"] = self._stored_root
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)

    def get(self) -> AppConfig:
        with self._lock:
            return self._config

    def update_broker(self, data: Mapping[str, Any]) -> BrokerSettings:
        with self._lock:
            merged = {**self._config.broker.to_dict(), "password": self._config.broker.password, **dict(data)}
            broker = _parse_broker(merged)
            self._config = AppConfig(
                root=self._config.root,
                broker=broker,
                backoff=self._config.backoff,
                consolidation=self._config.consolidation,
                matching=self._config.matching,
                namespaces=self._config.namespaces,
            )
            self._save()
        return broker

    def update_matching(self, data: Mapping[str, Any]) -> MatchingSettings:
        with self._lock:
            merged = {**self._config.matching.to_dict(), **dict(data)}
            matching = _parse_matching(merged)
            self._config = AppConfig(
                root=self._config.root,
                broker=self._config.broker,
                backoff=self._config.backoff,
                consolidation=self._config.consolidation,
                matching=matching,
                namespaces=self._config.namespaces,
            )
            self._save()
        return matching


__all__ = [
    "AppConfig",
    "BackoffSettings",
    "BrokerSettings",
    "ConfigManager",
    "ConsolidationSettings",
    "DEFAULT_IMAGE_EXTENSIONS",
    "DEFAULT_NAMESPACES",
    "DEFAULT_TOPICS",
    "DEFAULT_VIDEO_EXTENSIONS",
    "DEVICE_REQUEST_TOPIC",
    "MatchingSettings",
    "StoragePaths",
    "apply_environment",
    "parse_config",
]
