"""FastAPI server exposing the Jira mirror."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from jira_db.exceptions import JiraDbError
from jira_db.mirror.context import AppState
from jira_db.mirror.scheduler import SyncScheduler
from jira_db.utils.env import env_int, is_env_truthy
from jira_db.utils.logging import setup_logging
from jira_db.web.routes import (
    admin_router,
    issues_router,
    projects_router,
    query_router,
    reports_router,
    sync_router,
)

logger = logging.getLogger(__name__)


def create_app(state: AppState | None = None, start_scheduler: bool = True) -> FastAPI:
    """Build the API application.

    Args:
        state: Application state; read from the environment when omitted
        start_scheduler: Start the background sync loop when an interval is configured

    Returns:
        The FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting Jira mirror API server")
        mirror = state or AppState()
        app.state.mirror = mirror
        app.state.scheduler = None

        interval = mirror.config.sync_interval_minutes
        if start_scheduler and interval > 0:
            try:
                scheduler = SyncScheduler(mirror.sync_engine())
                await scheduler.start()
                app.state.scheduler = scheduler
                logger.info(f"Background sync enabled (interval: {interval} min)")
            except JiraDbError as e:
                logger.warning(f"Background sync disabled - Jira not configured: {e}")
        else:
            logger.info("Background sync disabled")

        yield

        if app.state.scheduler:
            await app.state.scheduler.stop()
        await mirror.aclose()
        logger.info("Shutting down Jira mirror API server")

    app = FastAPI(
        title="Jira Mirror API",
        description="Read-only SQL, history and snapshots over a local Jira mirror",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router in (
        projects_router,
        issues_router,
        sync_router,
        query_router,
        reports_router,
        admin_router,
    ):
        app.include_router(router)

    @app.get("/api/health")
    async def health(request: Request) -> dict[str, Any]:
        """Health check endpoint."""
        mirror: AppState = request.app.state.mirror
        projects = mirror.projects.find_all()
        response: dict[str, Any] = {
            "status": "healthy",
            "projects": [p.key for p in projects if p.sync_enabled],
            "issues": sum(mirror.issues.count_by_project(p.id) for p in projects),
        }
        scheduler: SyncScheduler | None = request.app.state.scheduler
        if scheduler:
            response["sync"] = scheduler.status
        return response

    return app


def main() -> None:
    """Run the server."""
    import uvicorn

    load_dotenv()
    level = logging.DEBUG if is_env_truthy("JIRA_DB_VERBOSE") else logging.INFO
    setup_logging(level)
    uvicorn.run(
        create_app(),
        host=os.getenv("JIRA_DB_WEB_HOST", "127.0.0.1"),
        port=env_int("JIRA_DB_WEB_PORT", 8000),
    )


if __name__ == "__main__":
    main()
