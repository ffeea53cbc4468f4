from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from session_tracker.errors import SessionNotFoundError, SessionStateError
from session_tracker.sessions import SessionRecord, SessionStore


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 5, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_session_lifecycle(tmp_path):
    clock = _Clock()
    store = SessionStore(tmp_path / "sessions.db", clock=clock)

    session = store.create_session(
        "Kitchen trial",
        researcher="Dr. Rivera",
        participants=["P01", "P02", "P01"],
        tags=["pilot"],
        sensor_ids=["Sensor-1"],
    )
    assert session.active
    assert session.participants == ["P01", "P02"]
    assert store.active_session().id == session.id

    # Only one session may be active at a time.
    with pytest.raises(SessionStateError):
        store.create_session("Overlap")

    clock.now += timedelta(minutes=90)
    ended = store.end_session(session.id)
    assert ended.status == "completed"
    assert ended.duration_s == 5400
    assert store.active_session() is None

    # Ending twice keeps the original end time.
    clock.now += timedelta(minutes=5)
    assert store.end_session(session.id).end_time == ended.end_time


def test_default_session_name_uses_identifier(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    session = store.create_session()
    assert session.name == f"Session{session.id}"


def test_unknown_session_lookup(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    with pytest.raises(SessionNotFoundError) as excinfo:
        store.get_session(41)
    assert isinstance(excinfo.value, LookupError)
    assert "41" in str(excinfo.value)


def test_sessions_are_listed_newest_first_and_persist(tmp_path):
    path = tmp_path / "sessions.db"
    store = SessionStore(path)
    first = store.create_session("First")
    store.end_session(first.id)
    second = store.create_session("Second")

    reopened = SessionStore(path)
    assert [record.name for record in reopened.list_sessions()] == ["Second", "First"]
    assert reopened.get_session(second.id).active


def test_sensor_selection_controls_accepted_topics():
    everything = SessionRecord(id=1, name="All", status="active", start_time=datetime.now(timezone.utc))
    assert everything.accepts_topic("zigbee2mqtt/anything")

    selected = SessionRecord(
        id=2,
        name="Selected",
        status="active",
        start_time=datetime.now(timezone.utc),
        sensor_ids=["0x00124b0000000001"],
    )
    assert selected.accepts_topic("zigbee2mqtt/0x00124b0000000001")
    assert not selected.accepts_topic("zigbee2mqtt/0x00124b0000000002")
    payload = selected.to_dict()
    assert payload["sensor_ids"] == ["0x00124b0000000001"]
    assert payload["end_time"] is None
