"""Sync triggers, status and audit history."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from jira_db.exceptions import JiraDbError, NotFoundError
from jira_db.mirror.context import AppState
from jira_db.mirror.scheduler import SyncScheduler
from jira_db.web.deps import get_scheduler, get_state, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncRequest(BaseModel):
    """Request body for a sync run."""

    projects: list[str] | None = None
    full: bool = False


class FieldsRequest(BaseModel):
    project: str | None = None


@router.post("")
async def run_sync(
    request: SyncRequest, state: AppState = Depends(get_state)
) -> dict[str, Any]:
    """Sync projects now and return one result per project.

    Failed runs are reported in the results; only a sync that could not
    start at all is an HTTP error.
    """
    projects = [p.upper() for p in request.projects] if request.projects else None
    try:
        results = await state.sync_engine().sync_projects(projects, full=request.full)
    except JiraDbError as e:
        logger.error(f"Sync failed to start: {e}")
        raise http_error(e) from e
    return {
        "results": [r.to_dict() for r in results],
        "success": all(r.success for r in results),
    }


@router.get("/status")
async def sync_status(
    state: AppState = Depends(get_state),
    scheduler: SyncScheduler | None = Depends(get_scheduler),
) -> dict[str, Any]:
    """Per-project watermarks and latest runs, plus scheduler state."""
    status = state.sync_engine().get_sync_status()
    status["scheduler"] = (
        {"enabled": True, **scheduler.status} if scheduler else {"enabled": False}
    )
    return status


@router.post("/trigger")
async def trigger_sync(
    scheduler: SyncScheduler | None = Depends(get_scheduler),
) -> dict[str, Any]:
    """Run the scheduled incremental sync immediately."""
    if scheduler is None:
        raise HTTPException(
            status_code=503,
            detail="Background sync not configured. Set JIRA_DB_SYNC_INTERVAL_MINUTES > 0",
        )
    results = await scheduler.run_once()
    return {"results": [r.to_dict() for r in results]}


@router.get("/history/{project_key}")
async def sync_history(
    project_key: str,
    limit: int = 20,
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """Audit rows of recent runs for a project, newest first."""
    project = state.projects.find_by_key(project_key.upper())
    if project is None:
        raise http_error(NotFoundError(f"Project {project_key} not found"))
    runs = state.sync_history.find_by_project(project.id, limit=limit)
    return {"project_key": project.key, "runs": [r.model_dump(mode="json") for r in runs]}


@router.post("/fields")
async def sync_fields(
    request: FieldsRequest, state: AppState = Depends(get_state)
) -> dict[str, Any]:
    """Sync field definitions, add columns and refresh the flattened view."""
    try:
        project_id = None
        if request.project:
            project_id = (await state.sync_engine().resolve_project(request.project.upper())).id
        result = await state.field_evolver().execute(project_id)
    except JiraDbError as e:
        logger.error(f"Field sync failed: {e}")
        raise http_error(e) from e
    return {
        "fields_synced": result.fields_synced,
        "columns_added": result.columns_added,
        "issues_expanded": result.issues_expanded,
        "errors": result.errors,
    }


@router.post("/snapshots/{project_key}")
async def generate_snapshots(
    project_key: str,
    resume: bool = True,
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """Regenerate snapshots for every issue of a project."""
    try:
        result = state.sync_engine().generate_snapshots(project_key.upper(), resume=resume)
    except JiraDbError as e:
        raise http_error(e) from e
    return {
        "project_key": result.project_key,
        "issues_processed": result.issues_processed,
        "snapshots_generated": result.snapshots_generated,
    }


@router.get("/verify/{project_key}")
async def verify(project_key: str, state: AppState = Depends(get_state)) -> dict[str, Any]:
    """Compare remote and local issue counts."""
    try:
        return await state.sync_engine().verify_project(project_key.upper())
    except JiraDbError as e:
        raise http_error(e) from e
