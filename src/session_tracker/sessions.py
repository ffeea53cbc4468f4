"""Session registry backed by a small sqlite index."""
from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Callable, Iterable, Protocol, Sequence

from .errors import SessionNotFoundError, SessionStateError

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"


@dataclass(slots=True)
class SessionRecord:
    id: int
    name: str
    status: str
    start_time: datetime
    end_time: datetime | None = None
    description: str | None = None
    notes: str | None = None
    researcher: str | None = None
    participants: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    sensor_ids: list[str] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.status == STATUS_ACTIVE

    @property
    def duration_s(self) -> float | None:
        if self.end_time is None:
            return None
        return max(0.0, (self.end_time - self.start_time).total_seconds())

    def accepts_topic(self, topic: str) -> bool:
        """Return whether telemetry on ``topic`` belongs to this session."""

        if not self.sensor_ids:
            return True
        return any(sensor_id and sensor_id in topic for sensor_id in self.sensor_ids)

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["start_time"] = self.start_time.isoformat()
        payload["end_time"] = self.end_time.isoformat() if self.end_time else None
        payload["duration_s"] = self.duration_s
        return payload


class SessionRegistry(Protocol):
    """Lookup surface consumed by the archive assembler."""

    def get_session(self, session_id: int) -> SessionRecord: ...


def _clean_list(values: Iterable[object] | None) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    cleaned: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned


class SessionStore:
    """Create, end and look up monitoring sessions.

    At most one session is active at a time so every reading maps to a single
    session.
    """

    def __init__(
        self,
        db_path: Path | str = Path("data/sessions.db"),
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._mutex = RLock()
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_session(
        self,
        name: str | None = None,
        *,
        description: str | None = None,
        notes: str | None = None,
        researcher: str | None = None,
        participants: Sequence[str] | None = None,
        tags: Sequence[str] | None = None,
        sensor_ids: Sequence[str] | None = None,
    ) -> SessionRecord:
        start_time = self._clock()
        with self._mutex:
            current = self.active_session()
            if current is not None:
                raise SessionStateError(f"Session {current.id} is still active")
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sessions (
                        name, status, start_time, end_time, description, notes,
                        researcher, participants, tags, sensor_ids
                    ) VALUES (?, ?, ?, NULL, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        (name or "").strip(),
                        STATUS_ACTIVE,
                        start_time.isoformat(),
                        description,
                        notes,
                        researcher,
                        json.dumps(_clean_list(participants)),
                        json.dumps(_clean_list(tags)),
                        json.dumps(_clean_list(sensor_ids)),
                    ),
                )
                session_id = int(cursor.lastrowid)
                if not (name or "").strip():
                    conn.execute(
                        "UPDATE sessions SET name = ? WHERE id = ?",
                        (f"Session{session_id}", session_id),
                    )
                conn.commit()
        return self.get_session(session_id)

    def end_session(self, session_id: int) -> SessionRecord:
        with self._mutex:
            record = self.get_session(session_id)
            if not record.active:
                return record
            with self._connect() as conn:
                conn.execute(
                    "UPDATE sessions SET status = ?, end_time = ? WHERE id = ?",
                    (STATUS_COMPLETED, self._clock().isoformat(), int(session_id)),
                )
                conn.commit()
        return self.get_session(session_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_session(self, session_id: int) -> SessionRecord:
        with self._mutex:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_COLUMNS} FROM sessions WHERE id = ?",
                    (int(session_id),),
                ).fetchone()
        if row is None:
            raise SessionNotFoundError(int(session_id))
        return self._row_to_session(row)

    def active_session(self) -> SessionRecord | None:
        with self._mutex:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_COLUMNS} FROM sessions WHERE status = ? ORDER BY id DESC LIMIT 1",
                    (STATUS_ACTIVE,),
                ).fetchone()
        return self._row_to_session(row) if row is not None else None

    def list_sessions(self, *, limit: int = 100) -> list[SessionRecord]:
        limit = max(1, min(int(limit), 1000))
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM sessions ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    description TEXT,
                    notes TEXT,
                    researcher TEXT,
                    participants TEXT NOT NULL DEFAULT '[]',
                    tags TEXT NOT NULL DEFAULT '[]',
                    sensor_ids TEXT NOT NULL DEFAULT '[]'
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status)")

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> SessionRecord:
        def _list(value: object) -> list[str]:
            try:
                decoded = json.loads(value) if isinstance(value, str) else []
            except ValueError:
                decoded = []
            return _clean_list(decoded if isinstance(decoded, list) else [])

        return SessionRecord(
            id=int(row["id"]),
            name=str(row["name"]),
            status=str(row["status"]),
            start_time=datetime.fromisoformat(row["start_time"]),
            end_time=datetime.fromisoformat(row["end_time"]) if row["end_time"] else None,
            description=row["description"],
            notes=row["notes"],
            researcher=row["researcher"],
            participants=_list(row["participants"]),
            tags=_list(row["tags"]),
            sensor_ids=_list(row["sensor_ids"]),
        )


_COLUMNS = (
    "id, name, status, start_time, end_time, description, notes, "
    "researcher, participants, tags, sensor_ids"
)


__all__ = [
    "STATUS_ACTIVE",
    "STATUS_COMPLETED",
    "SessionRecord",
    "SessionRegistry",
    "SessionStore",
]
