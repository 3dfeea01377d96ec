"""Rollup FastAPI service: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rollup import config
from rollup.db import connection, migrations
from rollup.db.change_feed import get_change_feed
from rollup.db.factory import get_document_store
from rollup.observability import initialize as initialize_observability, shutdown as shutdown_observability
from rollup.routers.projects import projects_router
from rollup.routers.triggers import triggers_router
from rollup.services.dispatcher import ChangeDispatcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("rollup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Rollup service starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Store + dispatcher
    store = get_document_store(db)
    dispatcher = ChangeDispatcher(store)
    app.state.store = store
    app.state.dispatcher = dispatcher

    # 4. Route committed test case writes through the change feed
    feed = get_change_feed()
    store.add_change_listener(feed.publish)
    await feed.start(dispatcher)
    app.state.change_feed = feed

    yield

    logger.info("Rollup service shutting down")
    await feed.stop()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Rollup API",
    description="Keeps project stats and test plan membership in step with test case writes",
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

app.include_router(triggers_router)
app.include_router(projects_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    feed = get_change_feed()
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "feed": "running" if feed.is_running else "stopped",
        "pendingChanges": feed.pending,
    }
