"""Persistent event log for broker, writer and export activity."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SystemLogEntry:
    """A single operational event, optionally tied to a session."""

    timestamp: float
    category: str
    event: str
    message: str
    session_id: int | None = None
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.session_id is not None:
            payload["session_id"] = self.session_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "SystemLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        cleaned_category = category.strip() if isinstance(category, str) and category.strip() else "general"
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        session_id = payload.get("session_id")
        if isinstance(session_id, bool) or not isinstance(session_id, int):
            session_id = None
        metadata = payload.get("metadata")
        if not isinstance(metadata, dict):
            metadata = None
        return cls(
            timestamp=timestamp,
            category=cleaned_category,
            event=event,
            message=message,
            session_id=session_id,
            metadata=metadata,
        )


class SystemLog:
    """Append-only JSON-lines log with an in-memory tail."""

    def __init__(
        self,
        path: Path | str | None = Path("data/system_log.jsonl"),
        *,
        max_entries: int = 1000,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare system log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        session_id: int | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> SystemLogEntry:
        """Append a new event and return the stored entry."""

        cleaned_category = category.strip() if isinstance(category, str) else ""
        entry = SystemLogEntry(
            timestamp=time.time(),
            category=cleaned_category or "general",
            event=event,
            message=message,
            session_id=session_id,
            metadata=self._clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        session_id: int | None = None,
    ) -> list[SystemLogEntry]:
        """Return the most recent entries, optionally filtered."""

        with self._lock:
            entries: Iterable[SystemLogEntry] = list(self._entries)
        if category is not None and category.strip():
            wanted = category.strip()
            entries = [entry for entry in entries if entry.category == wanted]
        if session_id is not None:
            entries = [entry for entry in entries if entry.session_id == session_id]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            entries = entries[-limit_value:]
        return entries

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load system log: %s", exc)
            return
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = SystemLogEntry.from_dict(payload)
            if entry is not None:
                self._entries.append(entry)

    def _append_persistent(self, entry: SystemLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist system log: %s", exc)

    @staticmethod
    def _clean_metadata(
        metadata: dict[str, object | None] | None,
    ) -> dict[str, object | None] | None:
        if not metadata:
            return None
        cleaned = {key: value for key, value in metadata.items() if value is not None}
        return cleaned or None


__all__ = ["SystemLog", "SystemLogEntry"]
