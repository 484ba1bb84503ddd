"""Project listing, sync flags and metadata."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from jira_db.exceptions import JiraDbError, NotFoundError
from jira_db.mirror.context import AppState
from jira_db.web.deps import get_state, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])


class SyncEnabledRequest(BaseModel):
    enabled: bool


@router.get("")
async def list_projects(state: AppState = Depends(get_state)) -> dict[str, Any]:
    """List projects known to the mirror."""
    projects = state.projects.find_all()
    return {
        "projects": [
            {
                **p.model_dump(mode="json"),
                "issue_count": state.issues.count_by_project(p.id),
            }
            for p in projects
        ]
    }


@router.post("/refresh")
async def refresh_projects(state: AppState = Depends(get_state)) -> dict[str, Any]:
    """Fetch the project list from Jira and upsert it."""
    try:
        projects = await state.sync_engine().sync_project_list()
    except JiraDbError as e:
        logger.error(f"Project refresh failed: {e}")
        raise http_error(e) from e
    return {"projects": [p.model_dump(mode="json") for p in projects]}


@router.put("/{project_key}/sync-enabled")
async def set_sync_enabled(
    project_key: str,
    request: SyncEnabledRequest,
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """Flag a project for (or exclude it from) scheduled sync."""
    key = project_key.upper()
    try:
        await state.sync_engine().resolve_project(key)
    except JiraDbError as e:
        raise http_error(e) from e
    state.projects.set_sync_enabled(key, request.enabled)
    return {"project_key": key, "sync_enabled": request.enabled}


@router.get("/{project_key}/metadata")
async def get_metadata(
    project_key: str, state: AppState = Depends(get_state)
) -> dict[str, Any]:
    """Statuses, priorities, issue types, labels, components and versions."""
    project = state.projects.find_by_key(project_key.upper())
    if project is None:
        raise http_error(NotFoundError(f"Project {project_key} not found"))
    metadata = state.metadata.find_project_metadata(project.id)
    return {"project_key": project.key, **metadata.model_dump(mode="json")}

