from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from tasksync.config_manager import MASK, ConfigManager
from tasksync.exceptions import AuthorizationError, DecisionNotFoundError, TaskSyncError
from tasksync.scheduler import SyncScheduler
from tasksync.state_store import StateStore
from tasksync.sync_engine import DecisionResolver, SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ResolveRequest(BaseModel):
    choice: str = Field(min_length=1, max_length=32)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.decisions: DecisionResolver = self.sync_engine
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_token = str(current.get("google", {}).get("access_token", ""))

    google = sanitized.get("google")
    if isinstance(google, dict):
        google = dict(google)
        token = google.get("access_token")
        if token is not None and str(token).strip() in {"", MASK}:
            if current_token:
                google.pop("access_token", None)
            else:
                google["access_token"] = ""
        if google:
            sanitized["google"] = google
        else:
            sanitized.pop("google", None)

    return sanitized


def _resolve(action: Any, *args: Any) -> Any:
    try:
        return action(*args)
    except DecisionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def create_app() -> FastAPI:
    config_path = os.getenv("TASKSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TASKSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="tasksync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        try:
            calendars = app.state.context.sync_engine.list_calendars()
        except AuthorizationError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        except TaskSyncError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.post("/api/sync")
    def trigger_sync(wait: bool = False) -> dict[str, Any]:
        if wait:
            result = app.state.context.sync_engine.run_once(trigger="manual")
            return {"message": "sync completed", "result": result.to_dict()}
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/status")
    def sync_status() -> dict[str, Any]:
        return app.state.context.sync_engine.status()

    @app.get("/api/pending-deletions")
    def pending_deletions() -> dict[str, Any]:
        state = app.state.context.sync_engine.load_state()
        return {"pending_deletions": [item.to_dict() for item in state.pending_deletions]}

    @app.post("/api/pending-deletions/resolve-all")
    def resolve_all_deletions(request: ResolveRequest) -> dict[str, Any]:
        results = _resolve(app.state.context.decisions.resolve_all_deletions, request.choice)
        return {"message": "pending deletions resolved", "results": results}

    @app.post("/api/pending-deletions/{deletion_id}/resolve")
    def resolve_deletion(deletion_id: str, request: ResolveRequest) -> dict[str, Any]:
        result = _resolve(app.state.context.decisions.resolve_deletion, deletion_id, request.choice)
        return {"message": "pending deletion resolved", "result": result}

    @app.get("/api/pending-severances")
    def pending_severances() -> dict[str, Any]:
        state = app.state.context.sync_engine.load_state()
        return {"pending_severances": [item.to_dict() for item in state.pending_severances]}

    @app.post("/api/pending-severances/resolve-all")
    def resolve_all_severances(request: ResolveRequest) -> dict[str, Any]:
        results = _resolve(app.state.context.decisions.resolve_all_severances, request.choice)
        return {"message": "pending severances resolved", "results": results}

    @app.post("/api/pending-severances/{severance_id}/resolve")
    def resolve_severance(severance_id: str, request: ResolveRequest) -> dict[str, Any]:
        result = _resolve(app.state.context.decisions.resolve_severance, severance_id, request.choice)
        return {"message": "pending severance resolved", "result": result}

    @app.get("/api/recurrence-changes")
    def recurrence_changes() -> dict[str, Any]:
        state = app.state.context.sync_engine.load_state()
        return {"recurrence_changes": [item.to_dict() for item in state.pending_recurrence_changes]}

    @app.post("/api/recurrence-changes/{change_id}/resolve")
    def resolve_recurrence_change(change_id: str, request: ResolveRequest) -> dict[str, Any]:
        result = _resolve(app.state.context.decisions.resolve_recurrence_change, change_id, request.choice)
        return {"message": "recurrence change resolved", "result": result}

    @app.get("/api/sync-log")
    def sync_log(limit: int = 100, batch_id: str | None = None) -> dict[str, Any]:
        return {"entries": app.state.context.state_store.recent_sync_log(limit=limit, batch_id=batch_id)}

    @app.get("/api/recently-deleted")
    def recently_deleted() -> dict[str, Any]:
        state = app.state.context.sync_engine.load_state()
        return {"recently_deleted": [item.to_dict() for item in state.recently_deleted]}

    @app.post("/api/recently-deleted/{snapshot_id}/restore")
    def restore_deleted(snapshot_id: str) -> dict[str, Any]:
        result = _resolve(app.state.context.decisions.restore_deleted, snapshot_id)
        return {"message": "restore queued for next sync", "result": result}

    return app
