from __future__ import annotations

import os
from datetime import date
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calsync.cache import SnapshotCache
from calsync.config_manager import ConfigManager
from calsync.gateway import GatewayError, OfflineError
from calsync.history import CommandLog
from calsync.ics_codec import CodecError, import_ics, resolve_timezone
from calsync.local_store import LocalStore
from calsync.models import (
    DEFAULT_EVENT_COLOR,
    Event,
    SyncRange,
    new_local_id,
    normalize_calendar_ref,
    parse_iso_date,
)
from calsync.scheduler import SyncScheduler
from calsync.state_store import StateStore
from calsync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CustomWindowSyncRequest(BaseModel):
    start: str
    end: str


class ExtentUpdateRequest(BaseModel):
    past_units: int = Field(ge=0)
    future_units: int = Field(ge=0)


class CalendarCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    color: str = DEFAULT_EVENT_COLOR


class EventCreateRequest(BaseModel):
    date: str
    title: str = ""
    memo: str = ""
    end_date: str | None = None
    start_time: str = ""
    end_time: str = ""
    color: str = DEFAULT_EVENT_COLOR
    calendar_ref: str = ""


class EventUpdateRequest(BaseModel):
    changes: dict[str, Any] = Field(default_factory=dict)


class IcsImportRequest(BaseModel):
    ics: str = Field(min_length=1)
    calendar_ref: str = ""


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        config = self.config_manager.load()
        self.history = CommandLog()
        self.local_store = LocalStore(
            self.state_store,
            self.sync_engine.calendars,
            history=self.history,
            adapter_provider=self.sync_engine.adapter,
            snapshot_cache=SnapshotCache(self.state_store, config.cache),
            principal=self._principal,
            debounce_ms=config.sync.debounce_ms,
        )
        self.local_store.install_history_handlers()
        self.sync_engine.local_store = self.local_store
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)

    def _principal(self) -> str:
        caldav = self.config_manager.load().caldav
        if not caldav.server_url or not caldav.username:
            return ""
        return f"{caldav.server_url}:{caldav.username}"

    def warm_start(self) -> None:
        self.state_store.migrate_legacy_memos()
        if not self.local_store.restore_snapshot():
            config = self.config_manager.load()
            self.local_store.load_range(self.sync_engine.default_window(config))


def _parse_date(value: str, name: str) -> date:
    try:
        parsed = parse_iso_date(value)
    except ValueError:
        parsed = None
    if parsed is None:
        raise HTTPException(status_code=400, detail=f"Invalid {name} date")
    return parsed


def _history_state(context: AppContext) -> dict[str, Any]:
    return {
        "can_undo": context.history.can_undo,
        "can_redo": context.history.can_redo,
        "stack": context.history.snapshot(),
    }


def create_app() -> FastAPI:
    config_path = os.getenv("CALSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Calsync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.warm_start()
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()
        app.state.context.local_store.close()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        manager = app.state.context.config_manager
        updated = manager.update(manager.sanitize_update(request.payload))
        return {"message": "config updated", "config": manager.masked(), "sync": updated.sync.__dict__}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        selected = {normalize_calendar_ref(url) for url in config.caldav.selected_calendar_urls}
        calendars = []
        for item in app.state.context.sync_engine.calendars.list():
            payload = item.to_dict()
            payload["selected"] = item.url in selected
            calendars.append(payload)
        return {"calendars": calendars}

    @app.post("/api/calendars/refresh")
    def refresh_calendars() -> dict[str, Any]:
        try:
            calendars = app.state.context.sync_engine.refresh_calendars()
        except OfflineError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except GatewayError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"calendars": [item.to_dict() for item in calendars]}

    @app.post("/api/calendars")
    def create_calendar(request: CalendarCreateRequest) -> dict[str, Any]:
        try:
            metadata = app.state.context.sync_engine.adapter().create_calendar(request.name, request.color)
        except GatewayError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        app.state.context.sync_engine.calendars.upsert(metadata)
        return {"calendar": metadata.to_dict()}

    @app.delete("/api/calendars")
    def delete_calendar(url: str) -> dict[str, Any]:
        registry = app.state.context.sync_engine.calendars
        metadata = registry.get(url)
        if metadata is None:
            raise HTTPException(status_code=404, detail="calendar not found")
        if metadata.url.startswith("http") and not metadata.is_subscription and not metadata.read_only:
            try:
                app.state.context.sync_engine.adapter().delete_calendar(metadata.url)
            except GatewayError as exc:
                raise HTTPException(status_code=502, detail=str(exc)) from exc
        registry.remove(metadata.url)
        return {"message": "calendar removed", "url": metadata.url}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-window")
    def trigger_sync_with_custom_window(request: CustomWindowSyncRequest) -> dict[str, Any]:
        start = _parse_date(request.start, "start")
        end = _parse_date(request.end, "end")
        if end < start:
            raise HTTPException(status_code=400, detail="end must not precede start")
        result = app.state.context.sync_engine.run_once(
            trigger="manual-window",
            sync_range=SyncRange(start, end),
            force_full=True,
        )
        if result.status == "skipped" and app.state.context.sync_engine.in_progress:
            raise HTTPException(status_code=409, detail="sync already in progress")
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        scheduler = app.state.context.scheduler
        last = scheduler.last_result.to_dict() if scheduler.last_result else None
        return {
            "in_progress": app.state.context.sync_engine.in_progress,
            "last_result": last,
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/sync/extent")
    def get_extent() -> dict[str, Any]:
        scheduler = app.state.context.scheduler
        plan = scheduler.current_plan()
        return {"extent": scheduler.extent(), "next_range": plan.sync_range.to_dict(), "mode": plan.mode}

    @app.put("/api/sync/extent")
    def put_extent(request: ExtentUpdateRequest) -> dict[str, Any]:
        scheduler = app.state.context.scheduler
        result = scheduler.update_extent(request.past_units, request.future_units)
        return {
            "extent": scheduler.extent(),
            "deferred": result is None,
            "result": result.to_dict() if result else None,
        }

    @app.get("/api/events")
    def list_events(start: str, end: str) -> dict[str, Any]:
        start_date = _parse_date(start, "start")
        end_date = _parse_date(end, "end")
        events = app.state.context.local_store.events_in_range(start_date, end_date)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/events")
    def create_event(request: EventCreateRequest) -> dict[str, Any]:
        payload = request.model_dump()
        payload["id"] = new_local_id()
        try:
            event = Event.from_dict(payload)
            event.check_times()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if event.calendar_ref and app.state.context.sync_engine.calendars.is_read_only(event.calendar_ref):
            raise HTTPException(status_code=409, detail="calendar is read-only")
        created = app.state.context.local_store.create_event(event)
        return {"event": created.to_dict()}

    @app.patch("/api/events/{event_id}")
    def update_event(event_id: str, request: EventUpdateRequest) -> dict[str, Any]:
        changes = dict(request.changes)
        try:
            if "date" in changes:
                changes["date"] = _parse_date(str(changes["date"]), "date")
            if "end_date" in changes:
                changes["end_date"] = parse_iso_date(changes["end_date"])
            updated = app.state.context.local_store.update_event(event_id, changes)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="event not found") from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"event": updated.to_dict()}

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str) -> dict[str, Any]:
        try:
            removed = app.state.context.local_store.delete_event(event_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="event not found") from exc
        return {"message": "event deleted", "id": removed.id}

    @app.post("/api/events/import")
    def import_events(request: IcsImportRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        try:
            events = import_ics(request.ics, tz=resolve_timezone(config.sync.timezone))
        except CodecError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        ref = normalize_calendar_ref(request.calendar_ref)
        created = [
            app.state.context.local_store.create_event(event.with_updates(id=new_local_id(), calendar_ref=ref))
            for event in events
        ]
        return {"imported": len(created), "events": [event.to_dict() for event in created]}

    @app.get("/api/history")
    def history_state() -> dict[str, Any]:
        return _history_state(app.state.context)

    @app.post("/api/history/undo")
    def undo() -> dict[str, Any]:
        applied = app.state.context.history.undo()
        return {"applied": applied, **_history_state(app.state.context)}

    @app.post("/api/history/redo")
    def redo() -> dict[str, Any]:
        applied = app.state.context.history.redo()
        return {"applied": applied, **_history_state(app.state.context)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/debug/runs/{run_id}")
    def debug_run(run_id: int, limit: int = 500) -> dict[str, Any]:
        run = app.state.context.state_store.get_sync_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        events = app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)
        return {"run": run, "events": events}

    return app


app = create_app()
