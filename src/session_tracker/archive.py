"""Build portable zip archives for a session."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
import threading
import time
import zipfile
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from string import Template
from typing import Any, Callable, Iterable, Mapping, Sequence

from .config import StoragePaths
from .consolidation import CSV_FILENAME, DATA_FILENAME, ArtifactPaths, ConsolidationWriter
from .devices import DeviceDirectory
from .errors import ArchiveError, SessionNotFoundError
from .matcher import (
    MatchResult,
    RecordingMatcher,
    SearchRoot,
    default_search_roots,
    is_session_tagged,
)
from .sessions import SessionRecord, SessionRegistry
from .system_log import SystemLog

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"
SENSOR_DATA_SUFFIXES = (".csv", ".json")

CATEGORY_RECORDINGS = "recordings"
CATEGORY_THUMBNAILS = "thumbnails"
CATEGORY_STRUCTURED = "structured_data"
CATEGORY_TABULAR = "tabular_data"
CATEGORY_SENSOR_FILES = "sensor_data"
CATEGORY_DEVICES = "devices"

CATEGORIES: tuple[str, ...] = (
    CATEGORY_RECORDINGS,
    CATEGORY_THUMBNAILS,
    CATEGORY_STRUCTURED,
    CATEGORY_TABULAR,
    CATEGORY_SENSOR_FILES,
    CATEGORY_DEVICES,
)

README_TEMPLATE = Template(
    """Session Tracker - Session Export
================================

Session ID: $session_id
Session Name: $session_name
Status: $status
Export Date: $exported_at

Session Details:
- Researcher: $researcher
- Participants: $participants
- Tags: $tags
- Start Time: $start_time
- End Time: $end_time
- Duration: $duration
- Description: $description

Notes:
$notes

Contents:
- recordings/: $recordings_count video recording(s)
- recordings/thumbnails/: $thumbnails_count image(s)
- data/zigbee-data.json: $structured_count consolidated telemetry file(s)
- data/zigbee-sensors.csv: $tabular_count tabular telemetry file(s)
- data/sensor_data/: $sensor_data_count raw sensor file(s)
- data/devices.json: $devices_count device(s) known to the zigbee bridge
- data/session_metadata.json: machine readable copy of this summary

Empty categories: $empty_categories

Search roots consulted:
$roots

Matching rules applied (a video is included when its name matches one of
these patterns for session $session_id, or when it lives in a directory
dedicated to the session):
$rules

Ambiguous filenames (included, but they also name another session):
$ambiguous

Name collisions (first file kept, later ones skipped):
$collisions

This archive was generated by session-tracker $version.
"""
)


class ExportStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ExportProgress:
    session_id: int
    status: str
    progress: int = 0
    message: str | None = None
    filename: str | None = None
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "filename": self.filename,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True, slots=True)
class ManifestInputs:
    """Caller supplied context for one export."""

    search_roots: Sequence[SearchRoot | Path | str] | None = None
    requested_by: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SessionExportManifest:
    """Description of an archive's provenance and contents."""

    session: Mapping[str, Any]
    exported_at: str
    counts: Mapping[str, int]
    empty_categories: tuple[str, ...]
    files: Mapping[str, tuple[str, ...]]
    search_roots: tuple[Mapping[str, Any], ...]
    rules: tuple[Mapping[str, str], ...]
    ambiguous: tuple[str, ...] = ()
    collisions: tuple[str, ...] = ()
    requested_by: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session": dict(self.session),
            "exportedAt": self.exported_at,
            "requestedBy": self.requested_by,
            "counts": dict(self.counts),
            "emptyCategories": list(self.empty_categories),
            "files": {key: list(value) for key, value in self.files.items()},
            "searchRoots": [dict(root) for root in self.search_roots],
            "rules": [dict(rule) for rule in self.rules],
            "ambiguous": list(self.ambiguous),
            "collisions": list(self.collisions),
            "metadata": dict(self.metadata),
        }


class ArchiveHandle:
    """A finished archive plus the obligation to delete it after delivery."""

    def __init__(
        self,
        path: Path,
        *,
        session_id: int,
        manifest: SessionExportManifest,
        on_release: Callable[["ArchiveHandle"], None] | None = None,
    ) -> None:
        self._path = Path(path)
        self._session_id = int(session_id)
        self._manifest = manifest
        self._on_release = on_release
        self._released = False
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def filename(self) -> str:
        return self._path.name

    @property
    def session_id(self) -> int:
        return self._session_id

    @property
    def manifest(self) -> SessionExportManifest:
        return self._manifest

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Delete the archive and its private directory. Safe to repeat."""

        with self._lock:
            if self._released:
                return
            self._released = True
        shutil.rmtree(self._path.parent, ignore_errors=True)
        logger.debug("Released export %s", self._path)
        if self._on_release is not None:
            self._on_release(self)

    def __enter__(self) -> "ArchiveHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def _safe_name(value: str) -> str:
    cleaned = re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")
    return cleaned or "session"


def _format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "N/A"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours}h {minutes}m {secs}s"


def _bullets(lines: Iterable[str], empty: str = "- none") -> str:
    items = [f"- {line}" for line in lines]
    return "\n".join(items) if items else empty


class ArchiveAssembler:
    """Collect a session's recordings and telemetry into one zip file."""

    def __init__(
        self,
        storage: StoragePaths,
        registry: SessionRegistry,
        *,
        matcher: RecordingMatcher | None = None,
        writer: ConsolidationWriter | None = None,
        devices: DeviceDirectory | None = None,
        system_log: SystemLog | None = None,
        clock: Callable[[], datetime] | None = None,
        version: str | None = None,
    ) -> None:
        self._storage = storage
        self._registry = registry
        self._matcher = matcher or RecordingMatcher()
        self._writer = writer
        self._devices = devices
        self._system_log = system_log
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        if version is None:
            from .version import APP_VERSION

            version = APP_VERSION
        self._version = version
        self._lock = threading.Lock()
        self._outstanding: dict[Path, ArchiveHandle] = {}
        self._progress: dict[int, ExportProgress] = {}

    @property
    def exports_root(self) -> Path:
        return self._storage.exports_root

    @property
    def matcher(self) -> RecordingMatcher:
        return self._matcher

    @matcher.setter
    def matcher(self, matcher: RecordingMatcher) -> None:
        self._matcher = matcher

    # ------------------------------ progress -------------------------------
    def progress(self, session_id: int) -> ExportProgress | None:
        with self._lock:
            return self._progress.get(int(session_id))

    def _set_progress(self, session_id: int, status: str, progress: int, message: str | None = None, filename: str | None = None) -> None:
        with self._lock:
            self._progress[session_id] = ExportProgress(session_id, status, max(0, min(100, progress)), message, filename)

    # ------------------------------ handles --------------------------------
    def outstanding(self) -> list[ArchiveHandle]:
        with self._lock:
            return list(self._outstanding.values())

    def _forget(self, handle: ArchiveHandle) -> None:
        with self._lock:
            self._outstanding.pop(handle.path, None)

    def cleanup_stale(self, max_age_s: float = 3600.0) -> int:
        """Remove abandoned export directories older than ``max_age_s``.

        Directories holding an archive with an outstanding handle are kept.
        """

        root = self.exports_root
        if not root.is_dir():
            return 0
        with self._lock:
            protected = {handle.path.parent.resolve() for handle in self._outstanding.values()}
        cutoff = time.time() - max_age_s
        removed = 0
        for entry in sorted(root.iterdir()):
            try:
                if entry.resolve() in protected or entry.stat().st_mtime > cutoff:
                    continue
            except OSError:
                continue
            if entry.is_dir():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info("Removed %d stale export(s) from %s", removed, root)
        return removed

    # ------------------------------ assembly -------------------------------
    def assemble(self, session_id: int, manifest_inputs: ManifestInputs | None = None) -> ArchiveHandle:
        """Write the archive for ``session_id`` and return its handle.

        Raises :class:`SessionNotFoundError` without writing anything when the
        registry does not know the session.
        """

        session_id = int(session_id)
        inputs = manifest_inputs or ManifestInputs()
        self._set_progress(session_id, ExportStatus.PENDING, 0)
        try:
            session = self._registry.get_session(session_id)
        except SessionNotFoundError as exc:
            self._set_progress(session_id, ExportStatus.ERROR, 0, str(exc))
            logger.warning("Export refused: %s", exc)
            raise
        self._set_progress(session_id, ExportStatus.PROCESSING, 5, "Collecting files")

        roots = inputs.search_roots or default_search_roots(self._storage, session_id)
        match = self._matcher.match(session_id, roots)
        sensor_files = self.sensor_data_files(session_id)

        exported_at = self._clock()
        stamp = exported_at.strftime("%Y%m%dT%H%M%SZ")
        final_name = f"{_safe_name(session.name)}_session{session_id}_{stamp}.zip"
        self.exports_root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"session{session_id}-", dir=self.exports_root))
        partial = work_dir / f"{final_name}{PARTIAL_SUFFIX}"
        try:
            manifest = self._write_archive(
                partial,
                session=session,
                match=match,
                sensor_files=sensor_files,
                exported_at=exported_at,
                inputs=inputs,
            )
            final_path = work_dir / final_name
            os.replace(partial, final_path)
        except Exception as exc:
            shutil.rmtree(work_dir, ignore_errors=True)
            self._set_progress(session_id, ExportStatus.ERROR, 0, str(exc))
            logger.exception("Export of session %s failed", session_id)
            if self._system_log is not None:
                self._system_log.record(
                    "export",
                    "failed",
                    f"Export of session {session_id} failed",
                    session_id=session_id,
                    metadata={"error": str(exc)},
                )
            raise ArchiveError(f"Export of session {session_id} failed: {exc}") from exc

        handle = ArchiveHandle(final_path, session_id=session_id, manifest=manifest, on_release=self._forget)
        with self._lock:
            self._outstanding[final_path] = handle
        self._set_progress(session_id, ExportStatus.COMPLETED, 100, "Archive ready", final_name)
        logger.info(
            "Exported session %s to %s (%d recordings, %d thumbnails, %d sensor files)",
            session_id,
            final_path,
            manifest.counts[CATEGORY_RECORDINGS],
            manifest.counts[CATEGORY_THUMBNAILS],
            manifest.counts[CATEGORY_SENSOR_FILES],
        )
        if self._system_log is not None:
            self._system_log.record(
                "export",
                "completed",
                f"Session {session_id} exported",
                session_id=session_id,
                metadata={"file": final_name, **manifest.counts},
            )
        return handle

    def sensor_data_files(self, session_id: int) -> list[Path]:
        """Raw sensor files stored for ``session_id`` outside the consolidated pair."""

        files: list[Path] = []
        session_dir = self._storage.session_sensor_dir(session_id)
        if session_dir.is_dir():
            files.extend(path for path in sorted(session_dir.iterdir()) if path.is_file())
        data_root = self._storage.data_root
        if data_root.is_dir():
            for path in sorted(data_root.iterdir()):
                if (
                    path.is_file()
                    and path.suffix.lower() in SENSOR_DATA_SUFFIXES
                    and is_session_tagged(path.name, session_id)
                ):
                    files.append(path)
        return files

    def _artifacts(self, session_id: int):
        if self._writer is not None:
            return self._writer.locked_artifacts(session_id)
        data_dir = self._storage.session_data_dir(session_id)
        return nullcontext(ArtifactPaths(session_id, data_dir / DATA_FILENAME, data_dir / CSV_FILENAME))

    def _write_archive(
        self,
        target: Path,
        *,
        session: SessionRecord,
        match: MatchResult,
        sensor_files: Sequence[Path],
        exported_at: datetime,
        inputs: ManifestInputs,
    ) -> SessionExportManifest:
        files: dict[str, list[str]] = {category: [] for category in CATEGORIES}
        collisions: list[str] = []
        used: set[str] = set()
        total = max(1, len(match.recordings) + len(match.thumbnails) + len(sensor_files) + 2)
        done = 0

        def _add(archive: zipfile.ZipFile, source: Path, arcname: str, category: str, compress: int) -> None:
            nonlocal done
            if arcname in used:
                collisions.append(f"{arcname} <- {source}")
                logger.warning("Archive name collision for %s; keeping the first file", arcname)
                return
            archive.write(source, arcname=arcname, compress_type=compress)
            used.add(arcname)
            files[category].append(arcname)
            done += 1
            self._set_progress(session.id, ExportStatus.PROCESSING, 5 + int(90 * done / total))

        with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            with self._artifacts(session.id) as artifacts:
                if artifacts.data_json.is_file():
                    _add(archive, artifacts.data_json, f"data/{DATA_FILENAME}", CATEGORY_STRUCTURED, zipfile.ZIP_DEFLATED)
                if artifacts.sensors_csv.is_file():
                    _add(archive, artifacts.sensors_csv, f"data/{CSV_FILENAME}", CATEGORY_TABULAR, zipfile.ZIP_DEFLATED)
            for recording in match.recordings:
                _add(archive, recording.path, f"recordings/{recording.path.name}", CATEGORY_RECORDINGS, zipfile.ZIP_STORED)
            for thumbnail in match.thumbnails:
                _add(
                    archive,
                    thumbnail.path,
                    f"recordings/thumbnails/{thumbnail.path.name}",
                    CATEGORY_THUMBNAILS,
                    zipfile.ZIP_STORED,
                )
            for path in sensor_files:
                _add(archive, path, f"data/sensor_data/{path.name}", CATEGORY_SENSOR_FILES, zipfile.ZIP_DEFLATED)

            devices = self._devices.snapshot() if self._devices is not None else {"bridgeState": None, "updatedAt": None, "devices": []}
            archive.writestr("data/devices.json", json.dumps(devices, indent=2))
            device_count = len(devices.get("devices") or [])
            files[CATEGORY_DEVICES].append("data/devices.json")

            counts = {category: len(files[category]) for category in CATEGORIES}
            counts[CATEGORY_DEVICES] = device_count
            manifest = SessionExportManifest(
                session=session.to_dict(),
                exported_at=exported_at.isoformat(),
                counts=counts,
                empty_categories=tuple(category for category in CATEGORIES if counts[category] == 0),
                files={category: tuple(names) for category, names in files.items()},
                search_roots=tuple(root.to_dict() for root in match.roots),
                rules=tuple({"name": rule.name, "template": rule.template} for rule in match.rules),
                ambiguous=match.ambiguous,
                collisions=tuple(collisions),
                requested_by=inputs.requested_by,
                metadata=dict(inputs.metadata),
            )
            archive.writestr("data/session_metadata.json", json.dumps(manifest.to_dict(), indent=2))
            archive.writestr("README.txt", self.render_readme(session, manifest, match))
        return manifest

    def render_readme(self, session: SessionRecord, manifest: SessionExportManifest, match: MatchResult) -> str:
        counts = manifest.counts
        roots = [
            f"{root.path} ({root.scope.value}{'' if root.path.is_dir() else ', missing'})"
            for root in match.roots
        ]
        rules = [f"{rule.name}: {rule.template}" for rule in match.rules]
        return README_TEMPLATE.substitute(
            session_id=session.id,
            session_name=session.name,
            status=session.status,
            exported_at=manifest.exported_at,
            researcher=session.researcher or "Not specified",
            participants=", ".join(session.participants) or "None",
            tags=", ".join(session.tags) or "None",
            start_time=session.start_time.isoformat(),
            end_time=session.end_time.isoformat() if session.end_time else "N/A",
            duration=_format_duration(session.duration_s),
            description=session.description or "No description provided",
            notes=session.notes or "No notes provided",
            recordings_count=counts[CATEGORY_RECORDINGS],
            thumbnails_count=counts[CATEGORY_THUMBNAILS],
            structured_count=counts[CATEGORY_STRUCTURED],
            tabular_count=counts[CATEGORY_TABULAR],
            sensor_data_count=counts[CATEGORY_SENSOR_FILES],
            devices_count=counts[CATEGORY_DEVICES],
            empty_categories=", ".join(manifest.empty_categories) or "none",
            roots=_bullets(roots),
            rules=_bullets(rules),
            ambiguous=_bullets(manifest.ambiguous),
            collisions=_bullets(manifest.collisions),
            version=self._version,
        )


__all__ = [
    "ArchiveAssembler",
    "ArchiveHandle",
    "CATEGORIES",
    "ExportProgress",
    "ExportStatus",
    "ManifestInputs",
    "README_TEMPLATE",
    "SessionExportManifest",
]
