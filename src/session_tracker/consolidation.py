"""Per-session consolidation of telemetry into durable JSON and CSV artifacts."""

from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from .config import ConsolidationSettings, StoragePaths
from .errors import ConsolidationError
from .system_log import SystemLog
from .topics import NormalizedReading, format_timestamp

logger = logging.getLogger(__name__)

DATA_FILENAME = "zigbee-data.json"
CSV_FILENAME = "zigbee-sensors.csv"
CSV_HEADER: tuple[str, ...] = (
    "timestamp",
    "sensor_id",
    "topic",
    "value",
    "type",
    "battery",
    "linkquality",
    "source",
)

STATUS_ACTIVE = "active"
STATUS_FINALIZED = "finalized"


@dataclass(frozen=True, slots=True)
class ArtifactPaths:
    """Locations of the consolidated artifact pair for one session."""

    session_id: int
    data_json: Path
    sensors_csv: Path

    def exists(self) -> bool:
        return self.data_json.is_file() or self.sensors_csv.is_file()


@dataclass(slots=True)
class _SessionBuffer:
    session_id: int
    paths: ArtifactPaths
    records: list[dict[str, Any]] = field(default_factory=list)
    pending_rows: list[list[str]] = field(default_factory=list)
    dropped: int = 0
    record_count: int = 0
    loaded: bool = False
    closing: bool = False
    finalized: bool = False
    end_time: str | None = None
    flush_scheduled: bool = False
    memory_lock: threading.Lock = field(default_factory=threading.Lock)
    write_lock: threading.Lock = field(default_factory=threading.Lock)


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return str(value)


def reading_to_row(reading: NormalizedReading) -> list[str]:
    """Return the tabular mirror row for ``reading``."""

    fields = reading.numeric_fields
    return [
        format_timestamp(reading.timestamp),
        reading.device_id,
        reading.topic,
        _format_cell(reading.primary_value),
        reading.value_type or "",
        _format_cell(fields.get("battery")),
        _format_cell(fields.get("linkquality")),
        reading.source,
    ]


def atomic_write_json(path: Path, payload: Any) -> None:
    """Replace ``path`` with ``payload`` so readers never see a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        ) as handle:
            tmp_path = Path(handle.name)
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_path is not None:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass


def append_csv_rows(path: Path, rows: list[list[str]]) -> None:
    """Append ``rows`` to ``path`` writing the header only when creating it."""

    path.parent.mkdir(parents=True, exist_ok=True)
    write_header = not path.exists() or path.stat().st_size == 0
    with path.open("a", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        if write_header:
            writer.writerow(CSV_HEADER)
        writer.writerows(rows)
        handle.flush()
        os.fsync(handle.fileno())


class ConsolidationWriter:
    """Owns the consolidated artifacts of every session receiving telemetry.

    ``consolidate`` only appends to memory; disk writes happen in ``flush``,
    either on the background executor once ``flush_threshold`` readings are
    pending or explicitly. Writes for one session are serialized while
    different sessions flush independently.
    """

    def __init__(
        self,
        storage: StoragePaths,
        settings: ConsolidationSettings | None = None,
        *,
        executor: Executor | None = None,
        system_log: SystemLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._storage = storage
        self._settings = settings or ConsolidationSettings()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self._settings.workers,
            thread_name_prefix="consolidation",
        )
        self._system_log = system_log
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._buffers: dict[int, _SessionBuffer] = {}
        self._registry_lock = threading.Lock()
        self._degraded: dict[int, str] = {}
        self._pending_futures: set[Future] = set()
        self._closed = False

    # ------------------------------ properties -----------------------------
    @property
    def settings(self) -> ConsolidationSettings:
        return self._settings

    @property
    def executor(self) -> Executor:
        return self._executor

    def artifact_paths(self, session_id: int) -> ArtifactPaths:
        data_dir = self._storage.session_data_dir(session_id)
        return ArtifactPaths(
            session_id=int(session_id),
            data_json=data_dir / DATA_FILENAME,
            sensors_csv=data_dir / CSV_FILENAME,
        )

    def degraded_sessions(self) -> dict[int, str]:
        with self._registry_lock:
            return dict(self._degraded)

    def stats(self, session_id: int) -> dict[str, object]:
        buffer = self._buffers.get(int(session_id))
        if buffer is None:
            return {"session_id": int(session_id), "records": 0, "pending": 0, "dropped": 0, "finalized": False}
        with buffer.memory_lock:
            return {
                "session_id": buffer.session_id,
                "records": buffer.record_count if buffer.finalized else len(buffer.records),
                "pending": len(buffer.pending_rows),
                "dropped": buffer.dropped,
                "finalized": buffer.finalized,
            }

    # ------------------------------ operations -----------------------------
    def consolidate(self, reading: NormalizedReading) -> bool:
        """Buffer ``reading`` for its session.

        Returns ``False`` when the reading is discarded: no session, session
        already finalized, or the session reached ``max_records``.
        """

        if reading.session_id is None:
            return False
        buffer = self._buffer(reading.session_id)
        schedule = False
        with buffer.memory_lock:
            if buffer.closing or buffer.finalized:
                logger.warning(
                    "Rejected reading for finalized session %s from %s",
                    buffer.session_id,
                    reading.topic,
                )
                return False
            if len(buffer.records) >= self._settings.max_records:
                buffer.dropped += 1
                if buffer.dropped == 1:
                    logger.warning(
                        "Session %s reached %d records; dropping further readings",
                        buffer.session_id,
                        self._settings.max_records,
                    )
                return False
            buffer.records.append(reading.to_record())
            buffer.pending_rows.append(reading_to_row(reading))
            first = len(buffer.records) == 1
            if not buffer.flush_scheduled and (
                first or len(buffer.pending_rows) >= self._settings.flush_threshold
            ):
                buffer.flush_scheduled = True
                schedule = True
        if schedule:
            self._schedule_flush(buffer.session_id)
        return True

    def flush(self, session_id: int) -> None:
        """Write the buffered state of ``session_id`` to disk."""

        buffer = self._buffers.get(int(session_id))
        if buffer is None:
            return
        with buffer.write_lock:
            if buffer.finalized:
                return
            self._write(buffer, finalize=False)

    def finalize(self, session_id: int) -> None:
        """Flush ``session_id`` one last time and mark its artifacts final.

        Waits for any in-flight flush of the session. Calling it again is a
        no-op, leaving both artifacts byte-identical.
        """

        buffer = self._buffer(int(session_id))
        with buffer.memory_lock:
            buffer.closing = True
        with buffer.write_lock:
            if buffer.finalized:
                return
            self._write(buffer, finalize=True)
        if self._system_log is not None:
            self._system_log.record(
                "consolidation",
                "finalized",
                f"Session {buffer.session_id} consolidated {buffer.record_count} readings",
                session_id=buffer.session_id,
                metadata={"records": buffer.record_count, "dropped": buffer.dropped or None},
            )

    @contextmanager
    def locked_artifacts(self, session_id: int) -> Iterator[ArtifactPaths]:
        """Flush ``session_id`` and hold its write lock while the caller reads."""

        buffer = self._buffers.get(int(session_id))
        paths = self.artifact_paths(session_id)
        if buffer is None:
            yield paths
            return
        with buffer.write_lock:
            if not buffer.finalized:
                try:
                    self._write(buffer, finalize=False)
                except ConsolidationError:
                    logger.warning("Reading last good artifacts for degraded session %s", session_id)
            yield paths

    def close(self) -> None:
        """Flush every session and stop the background executor."""

        if self._closed:
            return
        self._closed = True
        for future in list(self._pending_futures):
            future.result()
        with self._registry_lock:
            buffers = list(self._buffers.values())
        for buffer in buffers:
            try:
                self.flush(buffer.session_id)
            except ConsolidationError:
                logger.exception("Final flush failed for session %s", buffer.session_id)
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    # ----------------------------- implementation --------------------------
    def _buffer(self, session_id: int) -> _SessionBuffer:
        session_id = int(session_id)
        with self._registry_lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                buffer = _SessionBuffer(session_id, self.artifact_paths(session_id))
                self._buffers[session_id] = buffer
            return buffer

    def _schedule_flush(self, session_id: int) -> None:
        if self._closed:
            return
        try:
            future = self._executor.submit(self._background_flush, session_id)
        except RuntimeError:
            logger.warning("Flush executor unavailable; session %s will flush on finalize", session_id)
            return
        self._pending_futures.add(future)
        future.add_done_callback(self._pending_futures.discard)

    def _background_flush(self, session_id: int) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return
        with buffer.memory_lock:
            buffer.flush_scheduled = False
        try:
            with buffer.write_lock:
                if buffer.finalized:
                    return
                self._write(buffer, finalize=False)
        except ConsolidationError:
            logger.exception("Background flush failed for session %s", session_id)

    def _load_existing(self, buffer: _SessionBuffer) -> None:
        buffer.loaded = True
        path = buffer.paths.data_json
        if not path.is_file():
            return
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConsolidationError(buffer.session_id, f"unreadable artifact {path}: {exc}") from exc
        records = document.get("records") if isinstance(document, dict) else None
        if not isinstance(records, list):
            raise ConsolidationError(buffer.session_id, f"artifact {path} has no record list")
        if document.get("status") == STATUS_FINALIZED:
            logger.warning("Session %s artifacts are already finalized", buffer.session_id)
            buffer.end_time = document.get("endTime")
            self._release_memory(buffer, len(records))
            return
        with buffer.memory_lock:
            buffer.records[:0] = records
        logger.info("Restored %d records for session %s", len(records), buffer.session_id)

    def _document(self, buffer: _SessionBuffer, records: list[dict[str, Any]], status: str) -> dict[str, Any]:
        return {
            "sessionId": buffer.session_id,
            "status": status,
            "startTime": records[0].get("timestamp") if records else None,
            "endTime": buffer.end_time,
            "recordCount": len(records),
            "droppedCount": buffer.dropped,
            "records": records,
        }

    def _write(self, buffer: _SessionBuffer, *, finalize: bool) -> None:
        # Caller holds buffer.write_lock.
        if not buffer.loaded:
            self._load_existing(buffer)
            if buffer.finalized:
                return
        with buffer.memory_lock:
            rows = buffer.pending_rows
            buffer.pending_rows = []
            records = list(buffer.records)
            end_time = buffer.end_time
            if finalize:
                buffer.closing = True
        if not records and not finalize:
            return
        if not records and finalize and not buffer.paths.exists():
            self._release_memory(buffer, 0)
            return
        if finalize and end_time is None:
            buffer.end_time = format_timestamp(self._clock())
        status = STATUS_FINALIZED if finalize else STATUS_ACTIVE
        try:
            atomic_write_json(buffer.paths.data_json, self._document(buffer, records, status))
        except OSError as exc:
            buffer.end_time = end_time
            self._restore_rows(buffer, rows)
            self._mark_degraded(buffer.session_id, f"structured artifact write failed: {exc}")
            raise ConsolidationError(buffer.session_id, f"failed to write {buffer.paths.data_json}: {exc}") from exc
        if rows:
            try:
                append_csv_rows(buffer.paths.sensors_csv, rows)
            except OSError as exc:
                self._restore_rows(buffer, rows)
                self._mark_degraded(buffer.session_id, f"tabular mirror append failed: {exc}")
                raise ConsolidationError(
                    buffer.session_id, f"failed to append {buffer.paths.sensors_csv}: {exc}"
                ) from exc
        if finalize:
            self._release_memory(buffer, len(records))
        logger.debug(
            "Flushed session %s: %d records, %d new rows", buffer.session_id, len(records), len(rows)
        )

    @staticmethod
    def _release_memory(buffer: _SessionBuffer, record_count: int) -> None:
        # Finalized sessions only keep their counts.
        with buffer.memory_lock:
            buffer.closing = True
            buffer.record_count = record_count
            buffer.records = []
            buffer.pending_rows = []
            buffer.finalized = True

    @staticmethod
    def _restore_rows(buffer: _SessionBuffer, rows: list[list[str]]) -> None:
        with buffer.memory_lock:
            buffer.pending_rows[:0] = rows

    def _mark_degraded(self, session_id: int, reason: str) -> None:
        with self._registry_lock:
            self._degraded[session_id] = reason
        logger.error("Session %s degraded: %s", session_id, reason)
        if self._system_log is not None:
            self._system_log.record(
                "consolidation",
                "degraded",
                f"Session {session_id} consolidation degraded",
                session_id=session_id,
                metadata={"reason": reason},
            )


__all__ = [
    "ArtifactPaths",
    "CSV_FILENAME",
    "CSV_HEADER",
    "ConsolidationWriter",
    "DATA_FILENAME",
    "append_csv_rows",
    "atomic_write_json",
    "reading_to_row",
]
