"""Route broker messages through the resolver into session artifacts."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Any

from .consolidation import ConsolidationWriter
from .devices import DeviceDirectory
from .sessions import SessionRecord, SessionStore
from .topics import (
    ControlKind,
    ControlMessage,
    Discard,
    NormalizedReading,
    Resolution,
    TopicResolver,
    TelemetryMessage,
    payload_name,
)

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Handles every delivered message without blocking on disk writes.

    Readings are attached to the single active session, filtered by the
    session's selected sensors, and appended to the consolidation writer.
    Readings arriving while no session is active are discarded.
    """

    def __init__(
        self,
        resolver: TopicResolver,
        writer: ConsolidationWriter,
        *,
        sessions: SessionStore | None = None,
        devices: DeviceDirectory | None = None,
    ) -> None:
        self._resolver = resolver
        self._writer = writer
        self._devices = devices
        self._lock = threading.Lock()
        self._names: dict[str, str] = devices.known_names() if devices is not None else {}
        self._active: SessionRecord | None = sessions.active_session() if sessions is not None else None
        self._counters: Counter[str] = Counter()
        self._topics: Counter[str] = Counter()
        self._last_message_at: datetime | None = None

    # ------------------------------ sessions -------------------------------
    @property
    def active_session(self) -> SessionRecord | None:
        with self._lock:
            return self._active

    def attach_session(self, session: SessionRecord) -> None:
        with self._lock:
            self._active = session
        logger.info("Ingesting telemetry into session %s", session.id)

    def detach_session(self) -> int | None:
        """Stop associating readings with the active session and return its id."""

        with self._lock:
            session = self._active
            self._active = None
        if session is not None:
            logger.info("Stopped ingesting telemetry into session %s", session.id)
            return session.id
        return None

    # ------------------------------ messages -------------------------------
    def handle(self, message: TelemetryMessage) -> Resolution | None:
        return self.handle_message(message.topic, message.payload, message.received_at)

    def handle_message(self, topic: str, payload: Any, received_at: datetime | None = None) -> Resolution | None:
        """Process one broker message; never raises."""

        self._count("received", topic)
        try:
            with self._lock:
                names = dict(self._names)
            result = self._resolver.resolve(topic, payload, received_at=received_at, known_names=names)
            if isinstance(result, Discard):
                self._discard(result)
            elif isinstance(result, ControlMessage):
                self._control(result)
            else:
                self._reading(result)
            return result
        except Exception:
            logger.exception("Failed to process message on %s", topic)
            self._count("errors")
            return None

    def _discard(self, result: Discard) -> None:
        if result.reason.startswith("malformed"):
            logger.warning("Discarded malformed message on %s: %s", result.topic, result.reason)
            self._count("malformed")
        else:
            logger.debug("Discarded message on %s: %s", result.topic, result.reason)
            self._count("discarded")

    def _control(self, message: ControlMessage) -> None:
        self._count("control")
        if self._devices is None:
            return
        changed = self._devices.handle(message)
        if changed and message.kind is ControlKind.DEVICE_LIST:
            names = self._devices.known_names()
            with self._lock:
                self._names.update(names)

    def _reading(self, reading: NormalizedReading) -> None:
        self._count("readings")
        with self._lock:
            explicit = payload_name(reading.raw_payload)
            if explicit is not None:
                self._names.setdefault(reading.topic, explicit)
            session = self._active
            self._last_message_at = reading.timestamp
        if session is None:
            self._count("no_session")
            return
        if not session.accepts_topic(reading.topic):
            self._count("filtered")
            return
        if self._writer.consolidate(reading.for_session(session.id)):
            self._count("stored")
        else:
            self._count("dropped")

    def _count(self, name: str, topic: str | None = None) -> None:
        with self._lock:
            self._counters[name] += 1
            if topic is not None:
                self._topics[topic] += 1

    # ------------------------------ statistics -----------------------------
    def stats(self, *, top_topics: int = 20) -> dict[str, object]:
        with self._lock:
            counters = dict(self._counters)
            topics = self._topics.most_common(top_topics)
            active = self._active.id if self._active is not None else None
            last = self._last_message_at.isoformat() if self._last_message_at else None
        return {
            "active_session": active,
            "last_reading_at": last,
            "received": counters.get("received", 0),
            "readings": counters.get("readings", 0),
            "stored": counters.get("stored", 0),
            "dropped": counters.get("dropped", 0),
            "filtered": counters.get("filtered", 0),
            "no_session": counters.get("no_session", 0),
            "control": counters.get("control", 0),
            "discarded": counters.get("discarded", 0),
            "malformed": counters.get("malformed", 0),
            "errors": counters.get("errors", 0),
            "topics": [{"topic": topic, "count": count} for topic, count in topics],
        }


__all__ = ["IngestionPipeline"]
