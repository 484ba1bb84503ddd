"""Issue search, detail, change history and snapshots."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from jira_db.exceptions import NotFoundError
from jira_db.mirror.context import AppState
from jira_db.utils.dates import parse_timestamp
from jira_db.web.deps import get_state, http_error

router = APIRouter(prefix="/api/issues", tags=["issues"])


def _issue_summary(issue: Any) -> dict[str, Any]:
    return issue.model_dump(mode="json", exclude={"raw_json", "description"})


@router.get("")
async def search_issues(
    q: str | None = None,
    project: str | None = None,
    status: str | None = None,
    assignee: str | None = None,
    issue_type: str | None = None,
    priority: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """Filter mirrored issues."""
    project_id = None
    if project:
        found = state.projects.find_by_key(project.upper())
        if found is None:
            raise http_error(NotFoundError(f"Project {project} not found"))
        project_id = found.id
    issues = state.issues.search(
        query=q,
        project_id=project_id,
        status=status,
        assignee=assignee,
        issue_type=issue_type,
        priority=priority,
        limit=limit,
        offset=offset,
    )
    return {"issues": [_issue_summary(i) for i in issues], "count": len(issues)}


@router.get("/{issue_key}")
async def get_issue(issue_key: str, state: AppState = Depends(get_state)) -> dict[str, Any]:
    issue = state.issues.find_by_key(issue_key.upper())
    if issue is None:
        raise http_error(NotFoundError(f"Issue {issue_key} not found"))
    return issue.model_dump(mode="json", exclude={"raw_json"})


@router.get("/{issue_key}/history")
async def get_history(
    issue_key: str,
    field: str | None = None,
    limit: int | None = Query(None, ge=1),
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """Change history, newest first."""
    items = state.change_history.find_by_issue_key(issue_key.upper(), field=field, limit=limit)
    return {
        "issue_key": issue_key.upper(),
        "history": [i.model_dump(mode="json") for i in items],
        "count": len(items),
    }


@router.get("/{issue_key}/snapshots")
async def get_snapshots(
    issue_key: str,
    at: str | None = None,
    state: AppState = Depends(get_state),
) -> dict[str, Any]:
    """All snapshot versions, or the one valid at ``at``."""
    key = issue_key.upper()
    if at is None:
        snapshots = state.snapshots.find_by_issue_key(key)
    else:
        when = parse_timestamp(at)
        if when is None:
            raise HTTPException(status_code=400, detail=f"Invalid timestamp: {at}")
        found = state.snapshots.find_at(key, when)
        snapshots = [found] if found else []
    return {
        "issue_key": key,
        "snapshots": [s.model_dump(mode="json", exclude={"raw_data"}) for s in snapshots],
    }
