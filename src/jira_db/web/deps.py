"""Request dependencies and error mapping shared by the routers."""

from __future__ import annotations

from fastapi import HTTPException, Request

from jira_db.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    JiraDbError,
    NotFoundError,
    ValidationError,
)
from jira_db.mirror.context import AppState
from jira_db.mirror.scheduler import SyncScheduler


def get_state(request: Request) -> AppState:
    """The application state installed by the server lifespan."""
    return request.app.state.mirror


def get_scheduler(request: Request) -> SyncScheduler | None:
    return getattr(request.app.state, "scheduler", None)


def http_error(error: JiraDbError) -> HTTPException:
    """Map a domain error onto an HTTP status."""
    if isinstance(error, NotFoundError):
        status = 404
    elif isinstance(error, ValidationError):
        status = 400
    elif isinstance(error, ConfigurationError):
        status = 503
    elif isinstance(error, ExternalServiceError):
        status = 502
    else:
        status = 500
    return HTTPException(status_code=status, detail=str(error))
