"""Zigbee device directory used for display names and archive snapshots."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Executor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from .consolidation import atomic_write_json
from .topics import ControlKind, ControlMessage

logger = logging.getLogger(__name__)

DEVICES_FILENAME = "zigbee-devices.json"


@dataclass(slots=True)
class DeviceRecord:
    """One device announced by the zigbee bridge."""

    ieee_address: str
    friendly_name: str
    type: str | None = None
    model: str | None = None
    vendor: str | None = None
    description: str | None = None
    power_source: str | None = None
    last_seen: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_bridge(cls, payload: Mapping[str, Any]) -> "DeviceRecord | None":
        ieee = payload.get("ieee_address") or payload.get("ieeeAddr")
        if not isinstance(ieee, str) or not ieee.strip():
            return None
        ieee = ieee.strip().lower()
        definition = payload.get("definition")
        if not isinstance(definition, Mapping):
            definition = {}
        friendly = payload.get("friendly_name") or payload.get("friendlyName") or ieee
        last_seen = payload.get("last_seen")
        return cls(
            ieee_address=ieee,
            friendly_name=str(friendly),
            type=_text(payload.get("type")),
            model=_text(definition.get("model") or payload.get("model_id") or payload.get("modelID")),
            vendor=_text(definition.get("vendor") or payload.get("manufacturer")),
            description=_text(definition.get("description") or payload.get("description")),
            power_source=_text(payload.get("power_source")),
            last_seen=str(last_seen) if last_seen is not None else None,
        )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DeviceRecord | None":
        ieee = payload.get("ieee_address")
        name = payload.get("friendly_name")
        if not isinstance(ieee, str) or not isinstance(name, str):
            return None
        return cls(
            ieee_address=ieee,
            friendly_name=name,
            type=_text(payload.get("type")),
            model=_text(payload.get("model")),
            vendor=_text(payload.get("vendor")),
            description=_text(payload.get("description")),
            power_source=_text(payload.get("power_source")),
            last_seen=_text(payload.get("last_seen")),
        )


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class DeviceDirectory:
    """Tracks the bridge device list and state, persisted as JSON.

    With an ``executor`` the JSON file is written there, keeping message
    handling free of disk I/O.
    """

    def __init__(
        self,
        path: Path | str | None = Path("data") / DEVICES_FILENAME,
        *,
        base_topic: str = "zigbee2mqtt",
        executor: Executor | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._base_topic = base_topic.strip("/")
        self._executor = executor
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._devices: dict[str, DeviceRecord] = {}
        self._bridge_state: str | None = None
        self._updated_at: str | None = None
        self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def bridge_state(self) -> str | None:
        with self._lock:
            return self._bridge_state

    def devices(self) -> list[DeviceRecord]:
        with self._lock:
            return sorted(self._devices.values(), key=lambda device: device.friendly_name.lower())

    def name_for(self, ieee_address: str) -> str | None:
        with self._lock:
            device = self._devices.get(ieee_address.lower())
        return device.friendly_name if device else None

    def known_names(self) -> dict[str, str]:
        """Return friendly names keyed by the topics devices publish on."""

        names: dict[str, str] = {}
        with self._lock:
            for device in self._devices.values():
                names[f"{self._base_topic}/{device.ieee_address}"] = device.friendly_name
                names[f"{self._base_topic}/{device.friendly_name}"] = device.friendly_name
        return names

    def handle(self, message: ControlMessage) -> bool:
        """Apply ``message`` and return whether the directory changed."""

        if message.kind is ControlKind.DEVICE_LIST:
            return self.update_devices(message.payload)
        if message.kind is ControlKind.BRIDGE_STATE:
            return self.update_bridge_state(message.payload)
        logger.debug("Ignoring %s control message on %s", message.kind.value, message.topic)
        return False

    def update_devices(self, payload: Any) -> bool:
        if not isinstance(payload, list):
            logger.warning("Device list payload is not a list: %r", type(payload).__name__)
            return False
        devices: dict[str, DeviceRecord] = {}
        for entry in payload:
            if not isinstance(entry, Mapping):
                continue
            if str(entry.get("type", "")).lower() == "coordinator":
                continue
            record = DeviceRecord.from_bridge(entry)
            if record is not None:
                devices[record.ieee_address] = record
        with self._lock:
            self._devices = devices
            self._updated_at = datetime.now(timezone.utc).isoformat()
        logger.info("Device directory updated with %d devices", len(devices))
        self._schedule_save()
        return True

    def update_bridge_state(self, payload: Any) -> bool:
        state = payload.get("state") if isinstance(payload, Mapping) else payload
        if not isinstance(state, str) or not state.strip():
            return False
        state = state.strip().lower()
        with self._lock:
            if state == self._bridge_state:
                return False
            self._bridge_state = state
        logger.info("Zigbee bridge is %s", state)
        self._schedule_save()
        return True

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            devices = sorted(self._devices.values(), key=lambda device: device.ieee_address)
            return {
                "bridgeState": self._bridge_state,
                "updatedAt": self._updated_at,
                "devices": [device.to_dict() for device in devices],
            }

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unable to load device directory %s: %s", self._path, exc)
            return
        if not isinstance(payload, Mapping):
            return
        entries: Iterable[Any] = payload.get("devices") or []
        for entry in entries:
            if isinstance(entry, Mapping):
                record = DeviceRecord.from_dict(entry)
                if record is not None:
                    self._devices[record.ieee_address] = record
        state = payload.get("bridgeState")
        self._bridge_state = state if isinstance(state, str) else None
        updated = payload.get("updatedAt")
        self._updated_at = updated if isinstance(updated, str) else None

    def _schedule_save(self) -> None:
        if self._path is None:
            return
        if self._executor is not None:
            try:
                self._executor.submit(self._save)
                return
            except RuntimeError:
                logger.debug("Save executor stopped; writing device directory inline")
        self._save()

    def _save(self) -> None:
        # Each save writes the latest snapshot.
        with self._save_lock:
            try:
                atomic_write_json(self._path, self.snapshot())
            except OSError as exc:
                logger.warning("Unable to persist device directory: %s", exc)


__all__ = ["DEVICES_FILENAME", "DeviceDirectory", "DeviceRecord"]
