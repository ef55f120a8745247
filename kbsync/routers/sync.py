"""Project sync API: preview, trigger and operation tracking."""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel

from kbsync.db.file_watcher import file_watcher

logger = logging.getLogger("kbsync.sync")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncRequest(BaseModel):
    background: bool = False
    trigger: str = "api"


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


@sync_router.get("/status")
async def get_sync_status(request: Request):
    """Return sync engine + watcher status, including live operations."""
    sync_engine = _get_sync_engine(request)
    observability = await sync_engine.get_observability_snapshot()
    return {
        "status": "active",
        "kbRoot": str(sync_engine.kb_root),
        "parentMatch": sync_engine.parent_match,
        "watcher": "running" if file_watcher.is_running else "stopped",
        "operations": observability,
    }


@sync_router.get("/preview")
async def preview_sync(request: Request):
    """Scan the knowledge base and report what a sync would change."""
    sync_engine = _get_sync_engine(request)
    return await sync_engine.preview()


@sync_router.post("/projects")
async def trigger_project_sync(
    request: Request,
    background_tasks: BackgroundTasks,
    body: SyncRequest | None = None,
):
    """Run the knowledge base → database project sync."""
    sync_engine = _get_sync_engine(request)
    body = body or SyncRequest()

    if body.background:
        operation_id = await sync_engine.start_operation(
            "project_sync",
            trigger=body.trigger,
            metadata={"kbRoot": str(sync_engine.kb_root)},
        )
        background_tasks.add_task(sync_engine.sync_projects, body.trigger, operation_id)
        return {
            "status": "ok",
            "mode": "background",
            "message": "Sync triggered in background",
            "operationId": operation_id,
        }

    try:
        result = await sync_engine.sync_projects(trigger=body.trigger)
    except Exception as e:
        logger.error(f"Project sync failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "status": "ok",
        "mode": "foreground",
        "operationId": result.operation_id,
        "result": result.model_dump(),
    }


@sync_router.get("/operations")
async def list_sync_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    sync_engine = _get_sync_engine(request)
    operations = await sync_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@sync_router.get("/operations/{operation_id}")
async def get_sync_operation(request: Request, operation_id: str):
    sync_engine = _get_sync_engine(request)
    operation = await sync_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@sync_router.get("/db-projects")
async def list_db_projects(request: Request):
    """Current project rows as the sync sees them."""
    sync_engine = _get_sync_engine(request)
    return [record.model_dump() for record in await sync_engine.get_db_projects()]
