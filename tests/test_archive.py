from __future__ import annotations

import json
import os
import time
import zipfile
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from session_tracker.archive import ArchiveAssembler, ManifestInputs
from session_tracker.config import StoragePaths
from session_tracker.consolidation import ConsolidationWriter
from session_tracker.devices import DeviceDirectory
from session_tracker.errors import ArchiveError, SessionNotFoundError
from session_tracker.matcher import MatchResult, RecordingFile, SearchRoot
from session_tracker.sessions import SessionStore
from session_tracker.system_log import SystemLog
from session_tracker.topics import NormalizedReading, TopicResolver


class _InlineExecutor:
    def submit(self, fn, *args):
        future: Future = Future()
        future.set_result(fn(*args))
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None


EXPORTED_AT = datetime(2025, 5, 2, 18, 0, 0, tzinfo=timezone.utc)


def _touch(path: Path, content: bytes = b"video-bytes") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def _assembler(tmp_path: Path, **kwargs) -> tuple[ArchiveAssembler, SessionStore]:
    storage = StoragePaths(tmp_path)
    store = SessionStore(storage.data_root / "sessions.db")
    assembler = ArchiveAssembler(storage, store, clock=lambda: EXPORTED_AT, version="test", **kwargs)
    return assembler, store


def _reading(index: int, session_id: int) -> NormalizedReading:
    resolved = TopicResolver().resolve(
        "zigbee2mqtt/Sensor-1-Sonoff-SNZB-04",
        json.dumps({"contact": bool(index % 2), "battery": 80}),
        received_at=EXPORTED_AT - timedelta(minutes=30 - index),
    )
    assert isinstance(resolved, NormalizedReading)
    return resolved.for_session(session_id)


def test_archive_contains_every_category(tmp_path):
    storage = StoragePaths(tmp_path)
    writer = ConsolidationWriter(storage, executor=_InlineExecutor())
    devices = DeviceDirectory(storage.data_root / "zigbee-devices.json")
    devices.update_devices(
        [{"ieee_address": "0x00124B0000000001", "friendly_name": "Sensor-1-Sonoff-SNZB-04", "type": "EndDevice"}]
    )
    assembler, store = _assembler(tmp_path, writer=writer, devices=devices)
    session = store.create_session("Kitchen Trial", researcher="Dr. Rivera", tags=["pilot"])

    for index in range(12):
        writer.consolidate(_reading(index, session.id))
    _touch(storage.recordings_root / f"cam1_session{session.id}_20250502.mp4")
    _touch(storage.recordings_root / f"cam1_session{session.id}_20250502.jpg", b"jpeg")
    _touch(storage.session_recordings_dir(session.id) / "overhead.mkv")
    _touch(storage.session_sensor_dir(session.id) / "raw_contact.csv", b"timestamp,value\n")
    _touch(storage.data_root / f"zigbee_session{session.id}.json", b"{}")

    handle = assembler.assemble(session.id, ManifestInputs(requested_by="tests"))

    assert handle.path.name == f"kitchen_trial_session{session.id}_20250502T180000Z.zip"
    assert not list(handle.path.parent.glob("*.partial"))

    with zipfile.ZipFile(handle.path) as archive:
        names = set(archive.namelist())
        recording_info = archive.getinfo(f"recordings/cam1_session{session.id}_20250502.mp4")
        records = json.loads(archive.read("data/zigbee-data.json"))
        csv_lines = archive.read("data/zigbee-sensors.csv").decode("utf-8").splitlines()
        metadata = json.loads(archive.read("data/session_metadata.json"))
        devices_payload = json.loads(archive.read("data/devices.json"))
        readme = archive.read("README.txt").decode("utf-8")

    assert names == {
        "data/zigbee-data.json",
        "data/zigbee-sensors.csv",
        f"recordings/cam1_session{session.id}_20250502.mp4",
        "recordings/overhead.mkv",
        f"recordings/thumbnails/cam1_session{session.id}_20250502.jpg",
        "data/sensor_data/raw_contact.csv",
        f"data/sensor_data/zigbee_session{session.id}.json",
        "data/devices.json",
        "data/session_metadata.json",
        "README.txt",
    }
    assert recording_info.compress_type == zipfile.ZIP_STORED

    # Unfinished sessions are exported with everything buffered so far.
    assert records["recordCount"] == 12
    assert len(csv_lines) == 13

    assert metadata["requestedBy"] == "tests"
    assert metadata["counts"]["recordings"] == 2
    assert metadata["counts"]["devices"] == 1
    assert metadata["emptyCategories"] == []
    assert devices_payload["devices"][0]["ieee_address"] == "0x00124b0000000001"

    assert f"Session ID: {session.id}" in readme
    assert "Researcher: Dr. Rivera" in readme
    assert "session: session{id}" in readme

    handle.release()
    assert not handle.path.exists()
    assert not handle.path.parent.exists()
    assert assembler.outstanding() == []


def test_missing_telemetry_still_produces_archive(tmp_path):
    assembler, store = _assembler(tmp_path)
    session = store.create_session()

    with assembler.assemble(session.id) as handle:
        with zipfile.ZipFile(handle.path) as archive:
            names = set(archive.namelist())
        manifest = handle.manifest

    assert names == {"data/devices.json", "data/session_metadata.json", "README.txt"}
    for category in ("recordings", "thumbnails", "structured_data", "tabular_data", "sensor_data", "devices"):
        assert category in manifest.empty_categories
    assert handle.released


def test_unknown_session_produces_no_archive(tmp_path):
    assembler, _ = _assembler(tmp_path)

    with pytest.raises(SessionNotFoundError):
        assembler.assemble(999)

    exports = tmp_path / "exports"
    assert not exports.exists() or list(exports.iterdir()) == []
    progress = assembler.progress(999)
    assert progress is not None
    assert progress.status == "error"


def test_failed_export_leaves_nothing_behind(tmp_path):
    class _BrokenMatcher:
        def match(self, session_id, roots):
            missing = tmp_path / "gone" / "cam_session1.mp4"
            return MatchResult(
                session_id=session_id,
                recordings=(RecordingFile(missing, 10, tmp_path / "gone", "filename:session"),),
                thumbnails=(),
                ambiguous=(),
                roots=tuple(SearchRoot.coerce(root) for root in roots),
                rules=(),
            )

    log = SystemLog(tmp_path / "log.jsonl")
    assembler, store = _assembler(tmp_path, matcher=_BrokenMatcher(), system_log=log)
    session = store.create_session("Broken")

    with pytest.raises(ArchiveError):
        assembler.assemble(session.id)

    assert list((tmp_path / "exports").iterdir()) == []
    assert assembler.progress(session.id).status == "error"
    assert log.tail(category="export")[-1].event == "failed"


def test_name_collisions_keep_the_first_file(tmp_path):
    storage = StoragePaths(tmp_path)
    assembler, store = _assembler(tmp_path)
    session = store.create_session()
    first = _touch(storage.recordings_root / "a" / f"cam_session{session.id}.mp4", b"first")
    _touch(storage.recordings_root / "b" / f"cam_session{session.id}.mp4", b"second")

    handle = assembler.assemble(session.id)
    try:
        with zipfile.ZipFile(handle.path) as archive:
            assert archive.read(f"recordings/{first.name}") == b"first"
        assert len(handle.manifest.collisions) == 1
        assert handle.manifest.counts["recordings"] == 1
    finally:
        handle.release()


def test_cleanup_stale_keeps_outstanding_exports(tmp_path):
    assembler, store = _assembler(tmp_path)
    session = store.create_session()
    handle = assembler.assemble(session.id)

    abandoned = tmp_path / "exports" / "session99-abandoned"
    abandoned.mkdir()
    (abandoned / "old.zip.partial").write_bytes(b"partial")

    old = time.time() - 7200
    os.utime(abandoned, (old, old))
    os.utime(handle.path.parent, (old, old))

    removed = assembler.cleanup_stale(max_age_s=3600)

    assert removed == 1
    assert not abandoned.exists()
    assert handle.path.exists()

    handle.release()
    handle.release()
    assert not handle.path.exists()


def test_progress_reports_completion(tmp_path):
    assembler, store = _assembler(tmp_path)
    session = store.create_session()
    assert assembler.progress(session.id) is None

    handle = assembler.assemble(session.id)
    progress = assembler.progress(session.id)
    assert progress.status == "completed"
    assert progress.progress == 100
    assert progress.filename == handle.filename
    handle.release()
