"""Admin API routes for system health, configuration and maintenance."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from jira_db.exceptions import JiraDbError
from jira_db.mirror.context import AppState
from jira_db.mirror.scheduler import SyncScheduler
from jira_db.web.deps import get_scheduler, get_state, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

# Track server start time
_start_time = time.time()


# ---------------------------------------------------------------------------
# GET /api/admin/system: Combined system health
# ---------------------------------------------------------------------------


@router.get("/system")
async def get_system_health(
    state: AppState = Depends(get_state),
    scheduler: SyncScheduler | None = Depends(get_scheduler),
) -> dict[str, Any]:
    """Get combined system health: server, database and sync."""
    server_info = {
        "status": "healthy",
        "uptime_seconds": round(time.time() - _start_time, 1),
    }

    projects = state.projects.find_all()
    store_info = {
        "db_path": str(state.config.db_path),
        "projects": len(projects),
        "project_counts": {p.key: state.issues.count_by_project(p.id) for p in projects},
    }

    if scheduler:
        sync_info = {"enabled": True, **scheduler.status}
    else:
        sync_info = {
            "enabled": False,
            "running": False,
            "interval_minutes": state.config.sync_interval_minutes,
        }

    return {
        "server": server_info,
        "jira": {"url": state.config.jira_url or None, "user": state.config.jira_username or None},
        "database": store_info,
        "sync": sync_info,
    }


# ---------------------------------------------------------------------------
# GET /api/admin/config: Current MirrorConfig
# ---------------------------------------------------------------------------


@router.get("/config")
async def get_config(state: AppState = Depends(get_state)) -> dict[str, Any]:
    """Get current configuration (read-only, token redacted)."""
    data = asdict(state.config)
    data["db_path"] = str(data["db_path"])
    data["embedding_provider"] = state.config.embedding_provider.value
    data["jira_api_token"] = "***" if state.config.jira_api_token else ""
    return data


@router.post("/reload")
async def reload_config(state: AppState = Depends(get_state)) -> dict[str, Any]:
    """Re-read configuration from the environment and reopen resources."""
    await state.reload()
    return {"reloaded": True, "db_path": str(state.config.db_path)}


# ---------------------------------------------------------------------------
# POST /api/admin/jira/test: Test Jira connection
# ---------------------------------------------------------------------------


@router.post("/jira/test")
async def test_jira_connection(state: AppState = Depends(get_state)) -> dict[str, Any]:
    """Test the Jira connection and return status."""
    try:
        user = await state.jira.test_connection()
    except JiraDbError as e:
        return {"connected": False, "message": f"Connection failed: {e}"}
    return {
        "connected": True,
        "message": "Successfully connected to Jira",
        "user": (user or {}).get("displayName"),
    }


# ---------------------------------------------------------------------------
# POST /api/admin/sync/full: Trigger full sync
# ---------------------------------------------------------------------------


class FullSyncRequest(BaseModel):
    """Request body for full sync."""

    projects: list[str] | None = None


async def _run_full_sync(state: AppState, projects: list[str] | None) -> None:
    try:
        results = await state.sync_engine().sync_projects(projects, full=True)
    except JiraDbError as e:
        logger.error(f"Background full sync failed: {e}", exc_info=True)
        return
    failed = [r.project_key for r in results if not r.success]
    if failed:
        logger.warning(f"Background full sync failed for {', '.join(failed)}")


@router.post("/sync/full")
async def trigger_full_sync(
    request: FullSyncRequest,
    background_tasks: BackgroundTasks,
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """Trigger a full sync in the background; poll /api/sync/status."""
    projects = [p.upper() for p in request.projects] if request.projects else None
    background_tasks.add_task(_run_full_sync, state, projects)
    return {"started": True}


# ---------------------------------------------------------------------------
# POST /api/admin/db/checkpoint: Flush the write-ahead log
# ---------------------------------------------------------------------------


@router.post("/db/checkpoint")
async def checkpoint_database(state: AppState = Depends(get_state)) -> dict[str, Any]:
    """Flush the WAL into the database file."""
    try:
        state.db.checkpoint()
    except JiraDbError as e:
        logger.error(f"Checkpoint failed: {e}")
        raise http_error(e) from e
    return {"success": True, "message": "Database checkpointed"}


@router.post("/db/sweep")
async def sweep_stale_runs(state: AppState = Depends(get_state)) -> dict[str, Any]:
    """Mark sync runs left 'running' by a crashed process as failed."""
    if state.syncing:
        raise HTTPException(status_code=409, detail="A sync is running")
    swept = state.sync_history.mark_stale_running_failed()
    return {"swept": swept}
