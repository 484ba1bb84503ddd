"""Report data for rendering dashboards."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from jira_db.exceptions import JiraDbError
from jira_db.mirror.context import AppState
from jira_db.web.deps import get_state, http_error

router = APIRouter(prefix="/api/reports", tags=["reports"])


@router.get("")
async def get_report(
    projects: str | None = None, state: AppState = Depends(get_state)
) -> dict[str, Any]:
    """Breakdowns and change history for the given (or all enabled) projects.

    ``projects`` is a comma-separated list of keys.
    """
    keys = [p.strip().upper() for p in projects.split(",") if p.strip()] if projects else None
    try:
        report = state.report_builder().build(keys)
    except JiraDbError as e:
        raise http_error(e) from e
    return report.model_dump(mode="json")
