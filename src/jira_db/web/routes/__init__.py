"""Web API routes for the Jira mirror."""

from jira_db.web.routes.admin import router as admin_router
from jira_db.web.routes.issues import router as issues_router
from jira_db.web.routes.projects import router as projects_router
from jira_db.web.routes.query import router as query_router
from jira_db.web.routes.reports import router as reports_router
from jira_db.web.routes.sync import router as sync_router

__all__ = [
    "admin_router",
    "issues_router",
    "projects_router",
    "query_router",
    "reports_router",
    "sync_router",
]
