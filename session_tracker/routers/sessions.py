"""Session read API backed by the sync engine."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from session_tracker.models import PaginatedResponse, Session, SessionMessage
from session_tracker.routers.sync import _get_sync_engine

logger = logging.getLogger("tracker.sessions_api")

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])


class SessionFlagsUpdate(BaseModel):
    favorite: bool | None = None
    archived: bool | None = None


async def _require_session(sync_engine, session_id: str) -> Session:
    session = await sync_engine.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@sessions_router.get("", response_model=PaginatedResponse[Session])
async def list_sessions(
    request: Request,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    project: str | None = Query(None, description="Filter by project directory name"),
    favorite: bool | None = Query(None, description="Filter by favorite flag"),
    archived: bool | None = Query(None, description="Filter by archived flag"),
):
    """Return paginated sessions, most recently active first."""
    sync_engine = _get_sync_engine(request)
    items = await sync_engine.get_all_sessions(
        project_name=project, favorite=favorite, archived=archived, limit=limit, offset=offset
    )
    total = await sync_engine.session_repo.count_sessions(
        project_name=project, favorite=favorite, archived=archived
    )
    return PaginatedResponse(items=items, total=total, offset=offset, limit=limit)


@sessions_router.get("/live", response_model=list[Session])
async def list_live_sessions(request: Request):
    """Sessions with activity inside the live window."""
    sync_engine = _get_sync_engine(request)
    return await sync_engine.get_live_sessions()


@sessions_router.get("/{session_id}", response_model=Session)
async def get_session(request: Request, session_id: str):
    sync_engine = _get_sync_engine(request)
    return await _require_session(sync_engine, session_id)


@sessions_router.patch("/{session_id}", response_model=Session)
async def update_session_flags(request: Request, session_id: str, body: SessionFlagsUpdate):
    """Update UI-owned flags. Sync never overwrites these."""
    sync_engine = _get_sync_engine(request)
    session = await _require_session(sync_engine, session_id)
    if body.favorite is not None:
        session = await sync_engine.set_favorite(session_id, body.favorite)
    if body.archived is not None:
        session = await sync_engine.set_archived(session_id, body.archived)
    return session


@sessions_router.get("/{session_id}/messages", response_model=list[SessionMessage])
async def get_session_messages(request: Request, session_id: str):
    sync_engine = _get_sync_engine(request)
    await _require_session(sync_engine, session_id)
    return await sync_engine.get_session_messages(session_id)


@sessions_router.get("/{session_id}/raw")
async def get_session_raw_entries(
    request: Request,
    session_id: str,
    after_index: int | None = Query(None, description="Skip this many non-blank lines"),
) -> list[Any]:
    """Decoded transcript records, optionally starting after a line index."""
    sync_engine = _get_sync_engine(request)
    await _require_session(sync_engine, session_id)
    return await sync_engine.get_session_raw_entries(session_id, after_index)


@sessions_router.get("/{session_id}/tools")
async def get_session_tools(request: Request, session_id: str):
    """Per-tool counts plus per-invocation detail."""
    sync_engine = _get_sync_engine(request)
    await _require_session(sync_engine, session_id)
    return await sync_engine.get_tool_usage(session_id)


@sessions_router.get("/{session_id}/live")
async def get_session_live_state(request: Request, session_id: str):
    sync_engine = _get_sync_engine(request)
    session = await _require_session(sync_engine, session_id)
    return {
        "sessionId": session_id,
        "isLive": await sync_engine.is_session_live(session_id),
        "watching": sync_engine.watcher.is_watching(session.filePath),
    }


@sessions_router.post("/{session_id}/refresh", response_model=Session)
async def refresh_session(request: Request, session_id: str):
    """Force a reparse of one transcript."""
    sync_engine = _get_sync_engine(request)
    await _require_session(sync_engine, session_id)
    session = await sync_engine.refresh_session_tokens(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@sessions_router.post("/{session_id}/watch")
async def watch_session(request: Request, session_id: str):
    """Start live polling for one session's transcript."""
    sync_engine = _get_sync_engine(request)
    await _require_session(sync_engine, session_id)
    path = await sync_engine.watch_session(session_id)
    if path is None:
        raise HTTPException(status_code=404, detail=f"Transcript for session {session_id} not found")
    logger.info("Watching session %s on request", session_id)
    return {"status": "ok", "sessionId": session_id, "path": path}
