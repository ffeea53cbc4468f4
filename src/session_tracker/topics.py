"""Resolve raw telemetry topics and payloads into normalised readings."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Sequence

from .config import DEFAULT_NAMESPACES

SENSOR_MODEL_SUFFIX = "Sonoff-SNZB-04"
CONTACT_NEUTRAL = 0.0

NAME_FIELDS: tuple[str, ...] = ("friendly_name", "friendlyName", "name")
IEEE_FIELDS: tuple[str, ...] = ("ieee_address", "ieeeAddress", "ieeeAddr")

_IEEE_HEX = re.compile(r"^0x[0-9A-Fa-f]+$")
_IEEE_COLON = re.compile(r"^(?:[0-9A-Fa-f]{2}[:-]){7}[0-9A-Fa-f]{2}$")
_LIVINGLAB_DEVICE = re.compile(r"(?:^|/)livinglab/device/(\d+)/((?:0x)?[0-9A-Fa-f]+)(?:/|$)")
_NUMBERED_SENSOR = re.compile(r"^sensor-(\d+)$")
_NUMERIC_SEGMENT = re.compile(r"^\d+$")


class ControlKind(str, Enum):
    """Classes of non-telemetry broker traffic."""

    BRIDGE_STATE = "bridge-state"
    DEVICE_LIST = "device-list"
    BRIDGE_INFO = "bridge-info"
    BRIDGE_LOG = "bridge-log"
    BRIDGE_REQUEST = "bridge-request"
    BRIDGE_RESPONSE = "bridge-response"
    BRIDGE_EVENT = "bridge-event"
    BRIDGE_CONFIG = "bridge-config"
    BRIDGE_GROUPS = "bridge-groups"
    BRIDGE_EXTENSIONS = "bridge-extensions"
    BRIDGE_OTHER = "bridge-other"
    COMMAND = "command"


_BRIDGE_KINDS: dict[str, ControlKind] = {
    "state": ControlKind.BRIDGE_STATE,
    "devices": ControlKind.DEVICE_LIST,
    "info": ControlKind.BRIDGE_INFO,
    "logging": ControlKind.BRIDGE_LOG,
    "log": ControlKind.BRIDGE_LOG,
    "request": ControlKind.BRIDGE_REQUEST,
    "response": ControlKind.BRIDGE_RESPONSE,
    "event": ControlKind.BRIDGE_EVENT,
    "config": ControlKind.BRIDGE_CONFIG,
    "groups": ControlKind.BRIDGE_GROUPS,
    "extensions": ControlKind.BRIDGE_EXTENSIONS,
}

_COMMAND_SEGMENTS = frozenset({"get", "set"})


@dataclass(frozen=True, slots=True)
class TelemetryMessage:
    """One message as delivered by the broker connection."""

    topic: str
    payload: Any
    received_at: datetime


@dataclass(frozen=True, slots=True)
class NormalizedReading:
    """Canonical telemetry unit stored by the consolidation writer."""

    device_id: str
    friendly_name: str
    topic: str
    timestamp: datetime
    source: str
    numeric_fields: Mapping[str, float] = field(default_factory=dict)
    raw_payload: Any = None
    value_type: str | None = None
    primary_value: Any = None
    session_id: int | None = None

    def for_session(self, session_id: int) -> "NormalizedReading":
        return replace(self, session_id=int(session_id))

    def to_record(self) -> dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "deviceId": self.device_id,
            "friendlyName": self.friendly_name,
            "topic": self.topic,
            "source": self.source,
            "valueType": self.value_type,
            "value": self.primary_value,
            "numericFields": dict(self.numeric_fields),
            "rawPayload": self.raw_payload,
        }


@dataclass(frozen=True, slots=True)
class ControlMessage:
    """Bridge or command traffic routed away from the telemetry store."""

    kind: ControlKind
    topic: str
    payload: Any


@dataclass(frozen=True, slots=True)
class Discard:
    """A message that is intentionally not processed further."""

    topic: str
    reason: str


Resolution = NormalizedReading | ControlMessage | Discard


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def decode_payload(raw: Any) -> Any:
    """Return the JSON value carried by ``raw`` or its text when not JSON.

    Raises :class:`ValueError` when ``raw`` is bytes that are not UTF-8.
    """

    if isinstance(raw, (bytes, bytearray, memoryview)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValueError("payload is not valid UTF-8") from exc
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return ""
        try:
            return json.loads(text)
        except ValueError:
            return text
    return raw


# ----------------------------- numeric extraction -----------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_numeric(value: Any) -> bool:
    if _is_number(value):
        return True
    if isinstance(value, str):
        try:
            return math.isfinite(float(value))
        except ValueError:
            return False
    return False


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool)


def _bool_to_float(value: bool) -> float:
    return 1.0 if value else 0.0


def _string_in(options: Iterable[str]) -> Callable[[Any], bool]:
    wanted = frozenset(option.lower() for option in options)
    return lambda value: isinstance(value, str) and value.strip().lower() in wanted


def _constant(result: float) -> Callable[[Any], float]:
    return lambda _value: result


@dataclass(frozen=True, slots=True)
class ExtractionRule:
    """Reads one payload key and maps it to a numeric value when it applies."""

    source: str
    predicate: Callable[[Any], bool]
    transform: Callable[[Any], float]

    def apply(self, payload: Mapping[str, Any]) -> float | None:
        if self.source not in payload:
            return None
        value = payload[self.source]
        if not self.predicate(value):
            return None
        try:
            result = float(self.transform(value))
        except (TypeError, ValueError):
            return None
        return result if math.isfinite(result) else None


def _numeric_rules(*sources: str) -> tuple[ExtractionRule, ...]:
    return tuple(ExtractionRule(source, _is_numeric, float) for source in sources)


def _flag_rules(*sources: str) -> tuple[ExtractionRule, ...]:
    rules: list[ExtractionRule] = []
    for source in sources:
        rules.append(ExtractionRule(source, _is_bool, _bool_to_float))
        rules.append(ExtractionRule(source, lambda v: _is_number(v) and v in (0, 1), float))
    return tuple(rules)


CONTACT_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule("contact", _is_bool, _bool_to_float),
    ExtractionRule("contact", _string_in(("true", "closed", "on")), _constant(1.0)),
    ExtractionRule("contact", _string_in(("false", "open", "off")), _constant(0.0)),
    ExtractionRule("contact", lambda v: _is_number(v) and v in (0, 1), float),
    ExtractionRule("state", lambda v: v is True or (isinstance(v, str) and v.upper() == "ON"), _constant(1.0)),
    ExtractionRule("state", lambda v: v is False or (isinstance(v, str) and v.upper() == "OFF"), _constant(0.0)),
    # Any other contact shape reads as open.
    ExtractionRule("contact", _constant(True), _constant(CONTACT_NEUTRAL)),
)

FIELD_RULES: dict[str, tuple[ExtractionRule, ...]] = {
    "contact": CONTACT_RULES,
    "battery": _numeric_rules("battery", "battery_level", "battery_percentage"),
    "linkquality": _numeric_rules("linkquality", "link_quality", "lqi"),
    "occupancy": _flag_rules("occupancy", "motion", "presence"),
    "water_leak": _flag_rules("water_leak"),
    "smoke": _flag_rules("smoke"),
    "tamper": _flag_rules("tamper"),
    "battery_low": _flag_rules("battery_low"),
    "temperature": _numeric_rules("temperature"),
    "humidity": _numeric_rules("humidity"),
    "pressure": _numeric_rules("pressure"),
    "illuminance": _numeric_rules("illuminance_lux", "illuminance"),
    "voltage": _numeric_rules("voltage"),
    "power": _numeric_rules("power"),
    "energy": _numeric_rules("energy"),
}

# Fields considered for the single value/type pair of the tabular mirror.
PRIMARY_FIELDS: tuple[str, ...] = (
    "contact",
    "occupancy",
    "water_leak",
    "smoke",
    "tamper",
    "temperature",
    "humidity",
    "illuminance",
    "pressure",
    "power",
    "voltage",
    "energy",
    "value",
)


def extract_numeric_fields(
    payload: Any,
    rules: Mapping[str, Sequence[ExtractionRule]] = FIELD_RULES,
) -> dict[str, float]:
    """Return the numeric fields found in ``payload``.

    Unrecognised shapes never raise; a ``contact`` key of unknown shape reads
    as :data:`CONTACT_NEUTRAL`.
    """

    if _is_number(payload):
        return {"value": float(payload)}
    if not isinstance(payload, Mapping):
        return {}
    fields: dict[str, float] = {}
    for name, candidates in rules.items():
        for rule in candidates:
            value = rule.apply(payload)
            if value is not None:
                fields[name] = value
                break
    return fields


def _primary(numeric_fields: Mapping[str, float], payload: Any) -> tuple[str | None, Any]:
    for name in PRIMARY_FIELDS:
        if name in numeric_fields:
            return name, numeric_fields[name]
    if isinstance(payload, str) and payload:
        return "text", payload
    return None, None


# ------------------------------- identity ------------------------------------


def _is_ieee(segment: str) -> bool:
    return bool(_IEEE_HEX.match(segment) or _IEEE_COLON.match(segment))


def payload_name(payload: Any) -> str | None:
    """Explicit name carried by ``payload`` or its ``device`` object."""

    if not isinstance(payload, Mapping):
        return None
    sources: list[Any] = [payload, payload.get("device")]
    for source in sources:
        if not isinstance(source, Mapping):
            continue
        for key in NAME_FIELDS:
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def resolve_friendly_name(
    topic: str,
    payload: Any,
    known_names: Mapping[str, str] | None = None,
) -> str:
    """Return the display name for ``topic`` using the fallback chain."""

    if known_names:
        cached = known_names.get(topic)
        if isinstance(cached, str) and cached:
            return cached
    explicit = payload_name(payload)
    if explicit is not None:
        return explicit
    match = _LIVINGLAB_DEVICE.search(topic)
    if match:
        return f"Sensor-{match.group(1)}-{SENSOR_MODEL_SUFFIX}"
    segments = [segment for segment in topic.split("/") if segment]
    if not segments:
        return topic
    last = segments[-1]
    if _is_ieee(last):
        number = next((s for s in segments[1:-1] if _NUMERIC_SEGMENT.match(s)), None)
        return f"Sensor-{number or last[-1]}-{SENSOR_MODEL_SUFFIX}"
    numbered = _NUMBERED_SENSOR.match(last)
    if numbered:
        return f"Sensor-{numbered.group(1)}-{SENSOR_MODEL_SUFFIX}"
    if len(segments) > 1:
        return last
    return topic


def derive_device_id(suffix: str, payload: Any) -> str:
    """Return a device identity that is stable across messages."""

    for segment in reversed(suffix.split("/")):
        if segment and _is_ieee(segment):
            return segment.lower()
    if isinstance(payload, Mapping):
        candidates: list[Any] = [payload.get(key) for key in IEEE_FIELDS]
        device = payload.get("device")
        if isinstance(device, Mapping):
            candidates.extend(device.get(key) for key in IEEE_FIELDS)
        for candidate in candidates:
            if isinstance(candidate, str) and _is_ieee(candidate):
                return candidate.lower()
    return suffix


# ------------------------------- resolver ------------------------------------


class TopicResolver:
    """Classify broker messages into readings, control traffic or discards."""

    def __init__(self, namespaces: Iterable[str] = DEFAULT_NAMESPACES) -> None:
        cleaned = tuple(ns.strip("/") for ns in namespaces if ns and ns.strip("/"))
        if not cleaned:
            raise ValueError("At least one namespace is required")
        self._namespaces = cleaned

    @property
    def namespaces(self) -> tuple[str, ...]:
        return self._namespaces

    def split(self, topic: str) -> tuple[str, str] | None:
        """Return ``(namespace, device path)`` or ``None`` when unrecognised."""

        for namespace in self._namespaces:
            prefix = f"{namespace}/"
            if topic.startswith(prefix):
                return namespace, topic[len(prefix):].strip("/")
        return None

    @staticmethod
    def control_kind(suffix: str) -> ControlKind | None:
        segments = [segment for segment in suffix.split("/") if segment]
        if "bridge" in segments:
            index = segments.index("bridge")
            if index + 1 >= len(segments):
                return ControlKind.BRIDGE_OTHER
            return _BRIDGE_KINDS.get(segments[index + 1], ControlKind.BRIDGE_OTHER)
        if segments and segments[-1] in _COMMAND_SEGMENTS:
            return ControlKind.COMMAND
        return None

    def resolve(
        self,
        topic: str,
        payload: Any,
        *,
        received_at: datetime | None = None,
        known_names: Mapping[str, str] | None = None,
    ) -> Resolution:
        if not isinstance(topic, str) or not topic.strip():
            return Discard(str(topic), "empty topic")
        parts = self.split(topic)
        if parts is None:
            return Discard(topic, "unrecognised namespace")
        namespace, suffix = parts
        if not suffix:
            return Discard(topic, "missing device path")
        try:
            decoded = decode_payload(payload)
        except ValueError as exc:
            return Discard(topic, f"malformed payload: {exc}")
        kind = self.control_kind(suffix)
        if kind is not None:
            return ControlMessage(kind, topic, decoded)
        numeric_fields = extract_numeric_fields(decoded)
        value_type, primary_value = _primary(numeric_fields, decoded)
        timestamp = received_at if received_at is not None else datetime.now(timezone.utc)
        return NormalizedReading(
            device_id=derive_device_id(suffix, decoded),
            friendly_name=resolve_friendly_name(topic, decoded, known_names),
            topic=topic,
            timestamp=timestamp,
            source=namespace,
            numeric_fields=numeric_fields,
            raw_payload=decoded,
            value_type=value_type,
            primary_value=primary_value,
        )


_DEFAULT_RESOLVER = TopicResolver()


def resolve(
    topic: str,
    payload: Any,
    *,
    received_at: datetime | None = None,
    known_names: Mapping[str, str] | None = None,
) -> Resolution:
    """Resolve ``topic``/``payload`` using the default namespaces."""

    return _DEFAULT_RESOLVER.resolve(topic, payload, received_at=received_at, known_names=known_names)


__all__ = [
    "CONTACT_NEUTRAL",
    "CONTACT_RULES",
    "ControlKind",
    "ControlMessage",
    "Discard",
    "ExtractionRule",
    "FIELD_RULES",
    "NormalizedReading",
    "Resolution",
    "TelemetryMessage",
    "TopicResolver",
    "decode_payload",
    "derive_device_id",
    "extract_numeric_fields",
    "format_timestamp",
    "payload_name",
    "resolve",
    "resolve_friendly_name",
]
