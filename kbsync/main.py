"""kbsync FastAPI backend — main application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kbsync import config
from kbsync.db import connection, migrations, sync_engine
from kbsync.db.file_watcher import file_watcher
from kbsync.events import ChangeEmitter, EventBus
from kbsync.observability import initialize as initialize_observability, shutdown as shutdown_observability
from kbsync.routers.events import events_router
from kbsync.routers.notifications import notifications_router
from kbsync.routers.organizations import organizations_router
from kbsync.routers.projects import projects_router
from kbsync.routers.sync import sync_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("kbsync")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("kbsync backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Change notifications; created before anything that can write
    bus = EventBus()
    emitter = ChangeEmitter(bus)

    # 4. Initialize Sync Engine
    sync = sync_engine.SyncEngine(db, emitter)
    app.state.db = db
    app.state.event_bus = bus
    app.state.emitter = emitter
    app.state.sync_engine = sync

    # 5. Initial sync (background task)
    if config.STARTUP_SYNC:
        async def _run_startup_sync() -> None:
            delay = max(0, config.STARTUP_SYNC_DELAY_SECONDS)
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await sync.sync_projects(trigger="startup")
            except Exception as e:
                logger.error(f"Startup sync failed: {e}")

        logger.info("Starting initial project sync...")
        app.state.sync_task = asyncio.create_task(_run_startup_sync())

    # 6. Start File Watcher
    if config.WATCH_ENABLED:
        await file_watcher.start(sync)

    yield

    logger.info("kbsync backend shutting down")

    if hasattr(app.state, "sync_task"):
        app.state.sync_task.cancel()
        try:
            await app.state.sync_task
        except asyncio.CancelledError:
            pass

    await file_watcher.stop()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="kbsync API",
    description="Knowledge base project sync and change notifications",
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

app.include_router(sync_router)
app.include_router(projects_router)
app.include_router(organizations_router)
app.include_router(events_router)
app.include_router(notifications_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    bus = getattr(app.state, "event_bus", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "watcher": "running" if file_watcher.is_running else "stopped",
        "subscribers": bus.subscriber_count if bus else 0,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("kbsync.main:app", host=config.HOST, port=config.PORT)
