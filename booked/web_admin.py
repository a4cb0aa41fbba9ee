from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from booked.config_manager import ConfigManager
from booked.scheduler import SyncScheduler
from booked.state_store import StateStore
from booked.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SelectionUpdateRequest(BaseModel):
    calendar_ids: list[str] = Field(default_factory=list)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    has_caldav_password = bool(config_dict.get("caldav", {}).get("password", "").strip())
    return {"caldav": {"password": {"is_masked": has_caldav_password}}}


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_caldav_password = str(current.get("caldav", {}).get("password", ""))

    caldav = sanitized.get("caldav")
    if isinstance(caldav, dict):
        caldav = dict(caldav)
        sanitized["caldav"] = caldav
        password = caldav.get("password")
        if password is not None:
            password_text = str(password).strip()
            if password_text in {"", "***"}:
                if current_caldav_password:
                    caldav.pop("password", None)
                else:
                    caldav["password"] = ""
        if not caldav:
            sanitized.pop("caldav", None)

    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("BOOKED_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("BOOKED_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Booked Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.context.config_manager.load().sync.interval_seconds:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        return {"config": app.state.context.config_manager.masked(), "meta": _masked_meta(raw)}

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        updated = app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": updated.to_dict(),
        }

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        if not config.caldav.base_url or not config.caldav.username:
            raise HTTPException(status_code=400, detail="CalDAV config missing base_url/username")
        try:
            calendars, mirror_calendar_id = app.state.context.sync_engine.list_selectable_calendars()
        except Exception as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        selected = set(config.sync.selected_calendar_ids)
        output = []
        for cal in calendars:
            item = cal.to_dict()
            item["selected"] = cal.calendar_id in selected
            output.append(item)
        return {"calendars": output, "mirror_calendar_id": mirror_calendar_id}

    @app.get("/api/selection")
    def get_selection() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        return {"calendar_ids": config.sync.selected_calendar_ids}

    @app.put("/api/selection")
    def put_selection(request: SelectionUpdateRequest) -> dict[str, Any]:
        selection = app.state.context.scheduler.on_selection_changed(request.calendar_ids)
        return {"message": "selection saved, sync scheduled", "calendar_ids": selection}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, Any]:
        result = app.state.context.scheduler.manual_sync()
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "in_progress": app.state.context.scheduler.sync_in_progress,
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.post("/api/mirror/clear")
    def clear_mirror() -> dict[str, Any]:
        result = app.state.context.sync_engine.clear_mirror()
        return {"message": "mirror cleared", "result": result.to_dict()}

    @app.get("/api/mappings")
    def mappings() -> dict[str, Any]:
        mirror_calendar_id = app.state.context.config_manager.load().mirror.calendar_id
        if not mirror_calendar_id:
            return {"mirror_calendar_id": "", "mappings": {}}
        return {
            "mirror_calendar_id": mirror_calendar_id,
            "mappings": app.state.context.state_store.load_mappings(mirror_calendar_id),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    return app
