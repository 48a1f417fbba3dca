"""Sync control + observability API."""
from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from session_tracker import config
from session_tracker.notifications import event_payload
from session_tracker.observability import snapshot as observability_snapshot

logger = logging.getLogger("tracker.sync_api")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])

_KEEPALIVE_SECONDS = 15.0


class RescanRequest(BaseModel):
    force: bool = False
    background: bool = True
    trigger: str = "api"


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def _get_broadcaster(request: Request):
    broadcaster = getattr(request.app.state, "events", None)
    if not broadcaster:
        raise HTTPException(status_code=503, detail="Event stream not initialized")
    return broadcaster


@sync_router.get("/status")
async def get_sync_status(request: Request):
    """Return engine, watcher and scheduler status, including live operations."""
    sync_engine = _get_sync_engine(request)
    observability = await sync_engine.get_observability_snapshot()
    return {
        "status": "active",
        "syncEngine": "ready",
        "watcher": "running" if sync_engine.watcher.is_running else "stopped",
        "scheduler": "running" if sync_engine.scheduler.is_running else "stopped",
        "sessionsDir": str(sync_engine.sessions_dir),
        "watchedPaths": sync_engine.watcher.watched_paths,
        "telemetry": observability_snapshot(),
        "operations": observability,
    }


@sync_router.get("/operations")
async def list_sync_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent scan/refresh operations."""
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


@sync_router.post("/refresh")
async def trigger_refresh(request: Request):
    """Ingest only new, modified and recoverable transcripts."""
    sync_engine = _get_sync_engine(request)
    result = await sync_engine.refresh_sessions(trigger="api")
    return {"status": "ok", **result.model_dump()}


@sync_router.post("/rescan")
async def trigger_rescan(request: Request, background_tasks: BackgroundTasks, body: RescanRequest | None = None):
    """Full scan of the transcript root with operation tracking."""
    sync_engine = _get_sync_engine(request)
    body = body or RescanRequest()

    if body.background:
        operation_id = await sync_engine.start_operation(
            "full_scan",
            trigger=body.trigger,
            metadata={"force": bool(body.force)},
        )
        background_tasks.add_task(
            sync_engine.scan_sessions,
            force=body.force,
            trigger=body.trigger,
            operation_id=operation_id,
        )
        return {
            "status": "ok",
            "mode": "background",
            "message": "Rescan triggered in background",
            "operationId": operation_id,
        }

    operation_id = await sync_engine.start_operation(
        "full_scan",
        trigger=body.trigger,
        metadata={"force": bool(body.force)},
    )
    result = await sync_engine.scan_sessions(force=body.force, trigger=body.trigger, operation_id=operation_id)
    return {
        "status": "ok",
        "mode": "foreground",
        "operationId": operation_id,
        "stats": result.model_dump(),
        "operation": await sync_engine.get_operation(operation_id),
    }


@sync_router.post("/recalculate-costs")
async def trigger_recalculate_costs(request: Request):
    """Reparse every stored session so costs reflect the current pricing table."""
    sync_engine = _get_sync_engine(request)
    count = await sync_engine.recalculate_all_costs(trigger="api")
    return {"status": "ok", "recalculated": count}


async def _event_stream(broadcaster, request: Request, keepalive: float):
    queue = broadcaster.subscribe()
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"event: {event.type}\ndata: {json.dumps(event_payload(event))}\n\n"
    finally:
        broadcaster.unsubscribe(queue)


@sync_router.get("/events")
async def stream_events(request: Request):
    """Server-Sent Events stream of detection, live update and scan status events."""
    broadcaster = _get_broadcaster(request)
    logger.debug("Event stream subscriber connected (queue size %d)", config.EVENT_QUEUE_SIZE)
    return StreamingResponse(
        _event_stream(broadcaster, request, _KEEPALIVE_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
