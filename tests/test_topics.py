from __future__ import annotations

from datetime import datetime, timezone

import pytest

from session_tracker.topics import (
    CONTACT_NEUTRAL,
    ControlKind,
    ControlMessage,
    Discard,
    NormalizedReading,
    TopicResolver,
    decode_payload,
    extract_numeric_fields,
    format_timestamp,
    resolve,
    resolve_friendly_name,
)


RECEIVED_AT = datetime(2025, 5, 2, 12, 30, 0, tzinfo=timezone.utc)


def test_contact_sensor_reading_is_normalised():
    result = resolve(
        "zigbee2mqtt/Sensor-3-Sonoff-SNZB-04",
        b'{"contact": false, "battery": 87, "linkquality": 120}',
        received_at=RECEIVED_AT,
    )

    assert isinstance(result, NormalizedReading)
    assert result.source == "zigbee2mqtt"
    assert result.friendly_name == "Sensor-3-Sonoff-SNZB-04"
    assert result.numeric_fields == {"contact": 0.0, "battery": 87.0, "linkquality": 120.0}
    assert result.value_type == "contact"
    assert result.primary_value == 0.0
    assert result.timestamp == RECEIVED_AT
    assert result.session_id is None


def test_livinglab_device_topic_uses_sensor_number():
    result = resolve(
        "livinglab/device/7/0x00124B0012345678",
        '{"contact": true}',
        received_at=RECEIVED_AT,
    )

    assert isinstance(result, NormalizedReading)
    assert result.friendly_name == "Sensor-7-Sonoff-SNZB-04"
    assert result.device_id == "0x00124b0012345678"
    assert result.source == "livinglab"
    assert result.numeric_fields["contact"] == 1.0


def test_payload_name_wins_over_topic_segments():
    name = resolve_friendly_name("zigbee2mqtt/0x00124b0000000001", {"friendly_name": "Kitchen door"})
    assert name == "Kitchen door"

    nested = resolve_friendly_name("sensors/abc", {"device": {"friendlyName": "Hallway"}})
    assert nested == "Hallway"


def test_known_names_take_precedence():
    topic = "zigbee2mqtt/0x00124b0000000001"
    name = resolve_friendly_name(topic, {"friendly_name": "ignored"}, {topic: "Front door"})
    assert name == "Front door"


def test_numbered_sensor_segment_is_expanded():
    assert resolve_friendly_name("sensors/sensor-12", {}) == "Sensor-12-Sonoff-SNZB-04"


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"contact": True}, 1.0),
        ({"contact": False}, 0.0),
        ({"contact": "closed"}, 1.0),
        ({"contact": "open"}, 0.0),
        ({"contact": "on"}, 1.0),
        ({"contact": "OFF"}, 0.0),
        ({"contact": 1}, 1.0),
        ({"state": "ON"}, 1.0),
        ({"state": "OFF"}, 0.0),
        ({"contact": None, "state": "ON"}, 1.0),
    ],
)
def test_contact_shapes(payload, expected):
    assert extract_numeric_fields(payload)["contact"] == expected


def test_unrecognised_contact_shape_reads_as_neutral():
    fields = extract_numeric_fields({"contact": "ajar", "battery": "55"})
    assert fields["contact"] == CONTACT_NEUTRAL
    assert fields["battery"] == 55.0


def test_field_aliases_and_flags():
    fields = extract_numeric_fields(
        {"battery_percentage": 40, "lqi": 99, "motion": True, "illuminance_lux": 310, "water_leak": False}
    )
    assert fields == {
        "battery": 40.0,
        "linkquality": 99.0,
        "occupancy": 1.0,
        "water_leak": 0.0,
        "illuminance": 310.0,
    }


def test_scalar_and_text_payloads():
    scalar = resolve("sensors/kitchen/temperature", b"21.5", received_at=RECEIVED_AT)
    assert isinstance(scalar, NormalizedReading)
    assert scalar.numeric_fields == {"value": 21.5}
    assert scalar.value_type == "value"

    text = resolve("sensors/kitchen/status", b"idle", received_at=RECEIVED_AT)
    assert isinstance(text, NormalizedReading)
    assert text.numeric_fields == {}
    assert text.value_type == "text"
    assert text.primary_value == "idle"


def test_bridge_and_command_topics_are_control_traffic():
    devices = resolve("zigbee2mqtt/bridge/devices", b"[]")
    assert isinstance(devices, ControlMessage)
    assert devices.kind is ControlKind.DEVICE_LIST
    assert devices.payload == []

    state = resolve("zigbee2mqtt/bridge/state", b'{"state": "online"}')
    assert isinstance(state, ControlMessage)
    assert state.kind is ControlKind.BRIDGE_STATE

    command = resolve("zigbee2mqtt/Front door/set", b'{"state": "ON"}')
    assert isinstance(command, ControlMessage)
    assert command.kind is ControlKind.COMMAND


@pytest.mark.parametrize(
    "topic, payload, reason",
    [
        ("", b"{}", "empty topic"),
        ("homeassistant/sensor/x", b"{}", "unrecognised namespace"),
        ("zigbee2mqtt/", b"{}", "missing device path"),
    ],
)
def test_discarded_topics(topic, payload, reason):
    result = resolve(topic, payload)
    assert isinstance(result, Discard)
    assert result.reason == reason


def test_invalid_utf8_payload_is_discarded_as_malformed():
    result = resolve("zigbee2mqtt/door", b"\xff\xfe\x00")
    assert isinstance(result, Discard)
    assert result.reason.startswith("malformed payload")


def test_resolution_is_deterministic():
    resolver = TopicResolver(("zigbee2mqtt",))
    first = resolver.resolve("zigbee2mqtt/door", b'{"contact": true}', received_at=RECEIVED_AT)
    second = resolver.resolve("zigbee2mqtt/door", b'{"contact": true}', received_at=RECEIVED_AT)
    assert first == second

    # Namespaces outside the configured set are not recognised.
    assert isinstance(resolver.resolve("livinglab/device/1/0x01", b"{}"), Discard)


def test_resolver_requires_a_namespace():
    with pytest.raises(ValueError):
        TopicResolver(["", "/"])


def test_record_shape_and_timestamp_format():
    reading = resolve("zigbee2mqtt/door", b'{"contact": true}', received_at=RECEIVED_AT)
    assert isinstance(reading, NormalizedReading)
    record = reading.for_session(4).to_record()
    assert record["timestamp"] == "2025-05-02T12:30:00.000Z"
    assert record["deviceId"] == "door"
    assert record["value"] == 1.0
    assert record["rawPayload"] == {"contact": True}
    assert format_timestamp(datetime(2025, 1, 1)) == "2025-01-01T00:00:00.000Z"


def test_decode_payload_variants():
    assert decode_payload(b' {"a": 1} ') == {"a": 1}
    assert decode_payload("plain text") == "plain text"
    assert decode_payload(b"") == ""
    assert decode_payload({"already": "decoded"}) == {"already": "decoded"}
    with pytest.raises(ValueError):
        decode_payload(b"\xc3\x28")
