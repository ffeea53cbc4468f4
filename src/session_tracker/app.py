"""FastAPI application wiring together the session tracker services."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Mapping

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from .archive import ArchiveAssembler, ManifestInputs
from .broker import BrokerConnection, ClientFactory
from .config import ConfigManager
from .consolidation import ConsolidationWriter
from .devices import DEVICES_FILENAME, DeviceDirectory
from .errors import (
    ArchiveError,
    BrokerUnavailableError,
    ConsolidationError,
    SessionNotFoundError,
    SessionStateError,
)
from .ingestion import IngestionPipeline
from .matcher import RecordingMatcher, default_search_roots
from .sessions import SessionStore
from .system_log import SystemLog
from .topics import TopicResolver
from .version import APP_VERSION


class SessionCreatePayload(BaseModel):
    name: str | None = None
    description: str | None = None
    notes: str | None = None
    researcher: str | None = None
    participants: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    sensor_ids: list[str] = Field(default_factory=list)


class BrokerConfigPayload(BaseModel):
    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = None
    topics: list[str] | None = None


class FilenameRulePayload(BaseModel):
    name: str
    template: str


class MatchingConfigPayload(BaseModel):
    video_extensions: list[str] | None = None
    image_extensions: list[str] | None = None
    extra_rules: list[FilenameRulePayload] | None = None


def create_app(
    config_path: Path | str = Path("session-tracker.json"),
    *,
    client_factory: ClientFactory | None = None,
    start_broker: bool = True,
    environ: Mapping[str, str] | None = None,
) -> FastAPI:
    app = FastAPI(title="Session Tracker", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(Path(config_path), environ=environ)
    config = config_manager.get()
    storage = config.storage
    storage.ensure()

    system_log = SystemLog(storage.data_root / "system_log.jsonl")
    sessions = SessionStore(storage.data_root / "sessions.db")
    writer = ConsolidationWriter(storage, config.consolidation, system_log=system_log)
    devices = DeviceDirectory(
        storage.data_root / DEVICES_FILENAME,
        base_topic=config.namespaces[0],
        executor=writer.executor,
    )
    pipeline = IngestionPipeline(
        TopicResolver(config.namespaces),
        writer,
        sessions=sessions,
        devices=devices,
    )
    broker = BrokerConnection(
        config.broker,
        pipeline.handle,
        backoff=config.backoff,
        client_factory=client_factory,
        system_log=system_log,
    )
    assembler = ArchiveAssembler(
        storage,
        sessions,
        matcher=RecordingMatcher.from_settings(config.matching),
        writer=writer,
        devices=devices,
        system_log=system_log,
    )

    app.state.config_manager = config_manager
    app.state.system_log = system_log
    app.state.sessions = sessions
    app.state.devices = devices
    app.state.writer = writer
    app.state.pipeline = pipeline
    app.state.broker = broker
    app.state.assembler = assembler

    def _get_session_or_404(session_id: int):
        try:
            return sessions.get_session(session_id)
        except SessionNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        system_log.record("system", "startup", "Session tracker starting up.")
        removed = await asyncio.to_thread(assembler.cleanup_stale)
        if removed:
            logger.info("Removed %d abandoned exports", removed)
        if start_broker:
            broker.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        system_log.record("system", "shutdown", "Session tracker shutting down.")
        await asyncio.to_thread(broker.stop)
        await asyncio.to_thread(writer.close)

    # ------------------------------ status -----------------------------
    @app.get("/api/status")
    async def status() -> dict[str, object]:
        return {
            "version": APP_VERSION,
            "broker": broker.status(),
            "ingestion": pipeline.stats(),
            "bridge_state": devices.bridge_state,
            "degraded_sessions": {
                str(session_id): reason for session_id, reason in writer.degraded_sessions().items()
            },
        }

    @app.post("/api/broker/reconnect")
    async def reconnect_broker() -> dict[str, object]:
        started = broker.reconnect()
        return {"started": started, "broker": broker.status()}

    @app.get("/api/log")
    async def read_log(
        limit: int = 100,
        category: str | None = None,
        session_id: int | None = None,
    ) -> dict[str, object]:
        entries = system_log.tail(limit, category=category, session_id=session_id)
        return {"entries": [entry.to_dict() for entry in entries]}

    # ------------------------------ config -----------------------------
    @app.get("/api/config")
    async def get_config() -> dict[str, object]:
        current = config_manager.get()
        return {"broker": current.broker.to_dict(), "matching": current.matching.to_dict()}

    @app.post("/api/config/broker")
    async def update_broker_config(payload: BrokerConfigPayload) -> dict[str, object]:
        update_payload = payload.model_dump(exclude_none=True)
        if not update_payload:
            raise HTTPException(status_code=400, detail="No broker values provided")
        try:
            settings = config_manager.update_broker(update_payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        broker.update_settings(settings)
        if start_broker:
            broker.reconnect()
        return {"broker": settings.to_dict(), "status": broker.status()}

    @app.post("/api/config/matching")
    async def update_matching_config(payload: MatchingConfigPayload) -> dict[str, object]:
        update_payload = payload.model_dump(exclude_none=True)
        if not update_payload:
            raise HTTPException(status_code=400, detail="No matching values provided")
        try:
            settings = config_manager.update_matching(update_payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        assembler.matcher = RecordingMatcher.from_settings(settings)
        return settings.to_dict()

    # ------------------------------ devices ----------------------------
    @app.get("/api/devices")
    async def list_devices() -> dict[str, object]:
        return devices.snapshot()

    @app.post("/api/devices/refresh")
    async def refresh_devices() -> dict[str, str]:
        try:
            broker.request_devices()
        except BrokerUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"status": "requested"}

    # ------------------------------ sessions ---------------------------
    @app.get("/api/sessions")
    async def list_sessions(limit: int = 100) -> dict[str, object]:
        records = await asyncio.to_thread(sessions.list_sessions, limit=limit)
        return {"sessions": [record.to_dict() for record in records]}

    @app.post("/api/sessions", status_code=201)
    async def create_session(payload: SessionCreatePayload) -> dict[str, object]:
        try:
            record = await asyncio.to_thread(
                lambda: sessions.create_session(payload.name, **payload.model_dump(exclude={"name"}))
            )
        except SessionStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        pipeline.attach_session(record)
        system_log.record(
            "session",
            "started",
            f"Session {record.id} started",
            session_id=record.id,
            metadata={"name": record.name, "sensors": len(record.sensor_ids) or None},
        )
        return {"session": record.to_dict()}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: int) -> dict[str, object]:
        record = _get_session_or_404(session_id)
        return {"session": record.to_dict(), "consolidation": writer.stats(session_id)}

    @app.post("/api/sessions/{session_id}/end")
    async def end_session(session_id: int) -> dict[str, object]:
        _get_session_or_404(session_id)
        record = await asyncio.to_thread(sessions.end_session, session_id)
        active = pipeline.active_session
        if active is not None and active.id == session_id:
            pipeline.detach_session()
        consolidation: dict[str, object] = {"status": "finalized"}
        try:
            await asyncio.to_thread(writer.finalize, session_id)
        except ConsolidationError as exc:
            logger.error("Finalizing session %s failed: %s", session_id, exc)
            consolidation = {"status": "degraded", "error": str(exc)}
        system_log.record("session", "ended", f"Session {session_id} ended", session_id=session_id)
        return {"session": record.to_dict(), "consolidation": consolidation}

    @app.get("/api/sessions/{session_id}/recordings")
    async def preview_recordings(session_id: int) -> dict[str, object]:
        _get_session_or_404(session_id)
        result = await asyncio.to_thread(
            assembler.matcher.match, session_id, default_search_roots(storage, session_id)
        )
        return result.to_dict()

    @app.get("/api/sessions/{session_id}/export")
    async def export_session(session_id: int) -> FileResponse:
        try:
            handle = await asyncio.to_thread(
                assembler.assemble, session_id, ManifestInputs(requested_by="api")
            )
        except SessionNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ArchiveError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        cleanup = BackgroundTasks()
        cleanup.add_task(handle.release)
        return FileResponse(
            handle.path,
            media_type="application/zip",
            filename=handle.filename,
            background=cleanup,
        )

    @app.get("/api/sessions/{session_id}/export/progress")
    async def export_progress(session_id: int) -> dict[str, object]:
        progress = assembler.progress(session_id)
        if progress is None:
            raise HTTPException(status_code=404, detail="No export requested for this session")
        return progress.to_dict()

    return app


__all__ = ["create_app"]
