"""timebridge FastAPI service: application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from timebridge import config
from timebridge.clients.jira import JiraClient
from timebridge.clients.platform import PlatformClient
from timebridge.db import connection, migrations
from timebridge.db.factory import get_identity_store
from timebridge.errors import ApiError
from timebridge.observability import initialize as initialize_observability, shutdown as shutdown_observability
from timebridge.routers.sync import posted_time_router, sync_router
from timebridge.scheduler import scheduler
from timebridge.sync.factory import build_reconciler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("timebridge")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("timebridge connector starting up")

    # 1. Refuse to start with broken settings
    config.require_valid_settings()
    initialize_observability(app)

    # 2. Database + migrations
    db = await connection.get_connection()
    await migrations.run_migrations(db)
    store = get_identity_store(db)
    app.state.identity_store = store

    # 3. API clients
    tracker = JiraClient(
        config.JIRA_BASE_URL,
        config.JIRA_EMAIL,
        config.JIRA_API_TOKEN,
        timeout=config.REQUEST_TIMEOUT_SECONDS,
        jql_timezone=config.TIMEZONE,
    )
    platform = PlatformClient(
        config.PLATFORM_API_URL,
        config.PLATFORM_API_KEY,
        timeout=config.REQUEST_TIMEOUT_SECONDS,
    )
    app.state.tracker = tracker
    app.state.platform = platform

    # 4. Reconciler + scheduler
    reconciler = build_reconciler(store, tracker, platform)
    app.state.reconciler = reconciler
    if config.SCHEDULER_ENABLED:
        await scheduler.start(
            reconciler,
            tag_sync_interval_seconds=config.TAG_SYNC_INTERVAL_MINUTES * 60,
            posting_interval_seconds=config.POSTING_POLL_INTERVAL_SECONDS,
        )

    yield

    logger.info("timebridge connector shutting down")
    await scheduler.stop()
    await tracker.close()
    await platform.close()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="timebridge API",
    description="Connector between a time-tracking platform and Jira",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(posted_time_router)
app.include_router(sync_router)


@app.get("/api/health")
async def health(request: Request):
    """Healthy when both the identity store and Jira answer."""
    store = getattr(request.app.state, "identity_store", None)
    tracker = getattr(request.app.state, "tracker", None)

    db_ok = bool(store) and await store.ping()
    tracker_ok = False
    if tracker is not None:
        try:
            tracker_ok = await tracker.ping()
        except ApiError as exc:
            logger.warning("Jira health check failed: %s", exc)

    return {
        "status": "ok" if db_ok and tracker_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "tracker": "reachable" if tracker_ok else "unreachable",
        "scheduler": "running" if scheduler.is_running else "stopped",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("timebridge.main:app", host=config.HOST, port=config.PORT)
