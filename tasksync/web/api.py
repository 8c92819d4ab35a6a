from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from tasksync.core.config import SyncSettings
from tasksync.core.errors import Ok, QueuePersistenceError, RecordNotFoundError, UnknownTableError
from tasksync.core.log_tail import build_log_tail_payload
from tasksync.core.timeutil import now_iso
from tasksync.sync.conflicts import CHOICES
from tasksync.sync.service import SyncService

router = APIRouter(prefix="/api")

# Presentation-layer names for the persisted sync settings.
SETTINGS_ALIASES = {
    "autoSync": "auto_sync",
    "syncInterval": "sync_interval_ms",
    "enableRealtime": "enable_realtime",
    "enableConflictResolution": "enable_conflict_resolution",
    "maxRetries": "max_retries",
}


def get_service(request: Request) -> SyncService:
    return request.app.state.service


def _settings_payload(service: SyncService) -> dict[str, Any]:
    s = service.engine.settings
    return {
        "autoSync": s.auto_sync,
        "syncInterval": s.sync_interval_ms,
        "enableRealtime": s.enable_realtime,
        "enableConflictResolution": s.enable_conflict_resolution,
        "maxRetries": s.max_retries,
    }


def _choice(value: object) -> str:
    if value not in CHOICES:
        raise HTTPException(status_code=400, detail=f"invalid_resolution: {value!r}")
    return str(value)


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": now_iso(),
    }


# ----------------------------------------------------------------------
# Sync
# ----------------------------------------------------------------------


@router.get("/sync/status")
def sync_status(service: SyncService = Depends(get_service)):
    return service.engine.get_sync_status()


@router.get("/sync/stats")
def sync_stats(service: SyncService = Depends(get_service)):
    return service.engine.get_sync_stats().to_dict()


@router.post("/sync/stats/reset")
def sync_stats_reset(service: SyncService = Depends(get_service)):
    return service.engine.reset_sync_stats().to_dict()


@router.post("/sync/run")
async def sync_run(service: SyncService = Depends(get_service)):
    """Manual sync: drain the queue, then refresh every table."""
    summary = await service.engine.manual_sync()
    return summary.to_dict()


@router.get("/sync/history")
def sync_history(limit: int = 50, service: SyncService = Depends(get_service)):
    limit_sanitized = min(max(int(limit), 1), 500)
    items = service.engine.recent_runs(limit_sanitized)
    return {"limit": limit_sanitized, "count": len(items), "items": items}


@router.get("/sync/queue")
def queue_list(status: str | None = None, service: SyncService = Depends(get_service)):
    items = [op.to_dict() for op in service.queue.all(status)]
    return {"count": len(items), "items": items}


@router.delete("/sync/queue")
async def queue_clear(service: SyncService = Depends(get_service)):
    removed = service.engine.clear_offline_queue()
    return {"ok": True, "removed": removed}


@router.post("/sync/queue/retry-failed")
async def queue_retry_failed(service: SyncService = Depends(get_service)):
    return {"ok": True, "requeued": service.engine.retry_failed()}


@router.get("/sync/settings")
def get_settings(service: SyncService = Depends(get_service)):
    return _settings_payload(service)


@router.post("/sync/settings")
async def update_settings(payload: dict, service: SyncService = Depends(get_service)):
    changes = {SETTINGS_ALIASES.get(k, k): v for k, v in payload.items()}
    unknown = sorted(k for k in changes if k not in SyncSettings.model_fields)
    if unknown:
        raise HTTPException(status_code=400, detail=f"unknown_settings: {','.join(unknown)}")
    try:
        service.engine.update_settings(**changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"invalid_settings: {e}")
    return {"ok": True, "settings": _settings_payload(service)}


@router.post("/sync/connectivity")
async def set_connectivity(payload: dict, service: SyncService = Depends(get_service)):
    if not isinstance(payload.get("online"), bool):
        raise HTTPException(status_code=400, detail="online_must_be_bool")
    changed = service.engine.set_online(payload["online"])
    return {"ok": True, "changed": changed, "isOnline": service.engine.online}


# ----------------------------------------------------------------------
# Conflicts
# ----------------------------------------------------------------------


@router.get("/conflicts")
def conflicts_list(service: SyncService = Depends(get_service)):
    items = [c.to_dict() for c in service.resolver.open_conflicts()]
    return {"count": len(items), "items": items}


@router.post("/conflicts/resolve")
async def conflicts_resolve(payload: dict, service: SyncService = Depends(get_service)):
    """Body: ``{conflictId: 'local'|'remote', ...}``. Closed ids are ignored."""
    resolutions = {str(k): _choice(v) for k, v in payload.items()}
    resolved = service.resolver.resolve_many(resolutions)
    return {"ok": True, "resolved": resolved, "remaining": service.resolver.count()}


@router.post("/conflicts/resolve-all")
async def conflicts_resolve_all(payload: dict, service: SyncService = Depends(get_service)):
    choice = _choice(payload.get("choice"))
    resolved = service.resolver.resolve_all(choice)
    return {"ok": True, "resolved": resolved, "remaining": service.resolver.count()}


# ----------------------------------------------------------------------
# Entities
# ----------------------------------------------------------------------


@router.get("/entities/{table}")
def entities_list(table: str, include_deleted: bool = False, service: SyncService = Depends(get_service)):
    if table not in service.store.tables():
        raise HTTPException(status_code=404, detail=f"unknown_table: {table}")
    items = service.store.all(table, include_deleted=include_deleted)
    return {"table": table, "count": len(items), "items": items}


@router.post("/entities/{table}", status_code=201)
async def entities_create(table: str, payload: dict, service: SyncService = Depends(get_service)):
    return service.mutations.create(table, payload)


@router.patch("/entities/{table}/{record_id}")
async def entities_update(table: str, record_id: str, payload: dict, service: SyncService = Depends(get_service)):
    return service.mutations.update(table, record_id, payload)


@router.delete("/entities/{table}/{record_id}")
async def entities_delete(table: str, record_id: str, service: SyncService = Depends(get_service)):
    record = service.mutations.delete(table, record_id)
    return {"ok": True, "record": record}


# ----------------------------------------------------------------------
# Session and logs
# ----------------------------------------------------------------------


@router.post("/auth/login")
async def auth_login(payload: dict, service: SyncService = Depends(get_service)):
    email = str(payload.get("email") or "").strip()
    password = str(payload.get("password") or "")
    if not email or not password:
        raise HTTPException(status_code=400, detail="email_and_password_required")
    result = await service.engine.sign_in(email, password)
    if not isinstance(result, Ok):
        return JSONResponse(status_code=401, content={"ok": False, "error": result.message})
    return {"ok": True, "user_id": service.gateway.user_id()}


@router.post("/auth/logout")
async def auth_logout(service: SyncService = Depends(get_service)):
    await service.engine.sign_out()
    return {"ok": True}


@router.get("/logs")
def get_logs(n: int = 200, level: str | None = None, module: str | None = None, service: SyncService = Depends(get_service)):
    return build_log_tail_payload(
        service.config.logging.file,
        n=n,
        level=level,
        logger=module,
    )


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(UnknownTableError)
    async def _unknown_table(_request: Request, exc: UnknownTableError):
        return JSONResponse(status_code=404, content={"detail": f"unknown_table: {exc}"})

    @app.exception_handler(RecordNotFoundError)
    async def _missing_record(_request: Request, exc: RecordNotFoundError):
        return JSONResponse(status_code=404, content={"detail": f"record_not_found: {exc}"})

    @app.exception_handler(QueuePersistenceError)
    async def _queue_unavailable(_request: Request, exc: QueuePersistenceError):
        return JSONResponse(status_code=503, content={"detail": f"queue_unavailable: {exc}"})
