from __future__ import annotations

import json
import zipfile
from pathlib import Path

from session_tracker import cli
from session_tracker.sessions import SessionStore


def _config(tmp_path: Path) -> Path:
    return tmp_path / "session-tracker.json"


def test_match_command_lists_recordings_as_json(tmp_path: Path, capsys):
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    (recordings / "cam1_session42_20250502.mp4").write_bytes(b"video")
    (recordings / "cam1_session420_20250502.mp4").write_bytes(b"video")

    exit_code = cli.run(["--config", str(_config(tmp_path)), "--json", "match", "42"])

    assert exit_code == cli.EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    assert [item["name"] for item in payload["recordings"]] == ["cam1_session42_20250502.mp4"]


def test_match_command_accepts_explicit_roots(tmp_path: Path, capsys):
    camera = tmp_path / "camera"
    camera.mkdir()
    (camera / "front.mp4").write_bytes(b"video")

    exit_code = cli.run(
        ["--config", str(_config(tmp_path)), "match", "7", "--session-root", str(camera)]
    )

    assert exit_code == cli.EXIT_OK
    output = capsys.readouterr().out
    assert "Recordings (1):" in output
    assert "front.mp4" in output


def test_export_command_writes_archive(tmp_path: Path, capsys):
    store = SessionStore(tmp_path / "data" / "sessions.db")
    session = store.create_session("Pilot")
    output_dir = tmp_path / "out"

    exit_code = cli.run(
        ["--config", str(_config(tmp_path)), "--json", "export", str(session.id), "--output", str(output_dir)]
    )

    assert exit_code == cli.EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    archive_path = Path(payload["archive"])
    assert archive_path.parent == output_dir
    with zipfile.ZipFile(archive_path) as archive:
        assert "README.txt" in archive.namelist()
    assert "recordings" in payload["empty_categories"]
    # Nothing is left behind in the export staging area.
    assert list((tmp_path / "exports").iterdir()) == []


def test_export_of_unknown_session_fails(tmp_path: Path, capsys):
    exit_code = cli.run(["--config", str(_config(tmp_path)), "export", "12"])

    assert exit_code == cli.EXIT_NOT_FOUND
    assert "Session 12 not found" in capsys.readouterr().err


def test_broken_config_is_reported(tmp_path: Path, capsys):
    config = _config(tmp_path)
    config.write_text("[]")

    assert cli.run(["--config", str(config), "match", "1"]) == cli.EXIT_FAILED
    assert "Failed to load configuration" in capsys.readouterr().err
