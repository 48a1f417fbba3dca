"""Session tracker FastAPI backend: main application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from session_tracker import config
from session_tracker.db import connection, sqlite_migrations
from session_tracker.db.sync_engine import SyncEngine
from session_tracker.notifications import SessionEventBroadcaster
from session_tracker.observability import initialize as initialize_observability, shutdown as shutdown_observability
from session_tracker.routers.sessions import sessions_router
from session_tracker.routers.sync import sync_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("tracker")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Session tracker starting up (sessions dir: %s)", config.SESSIONS_DIR)
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await sqlite_migrations.run_migrations(db)

    # 3. Event fan-out + sync engine
    events = SessionEventBroadcaster()
    app.state.events = events
    sync = SyncEngine(db, events)
    app.state.sync_engine = sync

    # 4. Initial scan in background so we don't block startup.
    app.state.sync_task = asyncio.create_task(sync.init())

    yield

    logger.info("Session tracker shutting down")

    if not app.state.sync_task.done():
        app.state.sync_task.cancel()
        try:
            await app.state.sync_task
        except asyncio.CancelledError:
            pass

    await sync.stop_watching()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Session Tracker API",
    description="Ingestion and live tracking of coding-assistant session transcripts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(sync_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    sync = getattr(app.state, "sync_engine", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "watcher": "running" if sync is not None and sync.watcher.is_running else "stopped",
        "scheduler": "running" if sync is not None and sync.scheduler.is_running else "stopped",
    }


def run() -> None:
    import uvicorn

    uvicorn.run("session_tracker.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
