"""Read-only SQL and semantic search."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from jira_db.exceptions import JiraDbError
from jira_db.mirror.context import AppState
from jira_db.web.deps import get_state, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["query"])


class SqlRequest(BaseModel):
    query: str
    limit: int | None = Field(default=None, ge=1, le=10_000)


class SemanticSearchRequest(BaseModel):
    query: str
    project: str | None = None
    limit: int = Field(default=10, ge=1, le=50)


@router.post("/sql")
async def execute_sql(
    request: SqlRequest, state: AppState = Depends(get_state)
) -> dict[str, Any]:
    """Run a SELECT; mutating statements are rejected with 400."""
    try:
        return state.sql_gateway().execute(request.query, request.limit)
    except JiraDbError as e:
        raise http_error(e) from e


@router.get("/sql/schema")
async def sql_schema(state: AppState = Depends(get_state)) -> dict[str, Any]:
    """Tables and views available to /api/sql with their columns."""
    return {"tables": state.sql_gateway().schema()}


@router.post("/search/semantic")
async def semantic_search(
    request: SemanticSearchRequest, state: AppState = Depends(get_state)
) -> dict[str, Any]:
    query = request.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query is required")
    try:
        results = await state.embedder().semantic_search(
            query, request.project.upper() if request.project else None, request.limit
        )
    except JiraDbError as e:
        logger.error(f"Semantic search failed: {e}")
        raise http_error(e) from e
    return {"query": query, "results": results, "count": len(results)}

