"""MCP tools over the local Jira mirror.

These tools answer questions from the mirror database without calling
Jira: issue search, change history, point-in-time snapshots, read-only SQL
and semantic search over stored embeddings.
"""

import json
import logging
from typing import Annotated, Any

from dotenv import load_dotenv
from fastmcp import Context, FastMCP
from pydantic import Field

from jira_db.exceptions import JiraDbError
from jira_db.mirror.context import AppState
from jira_db.servers.formatting import ResponseFormatter
from jira_db.utils.dates import parse_timestamp
from jira_db.utils.env import is_env_truthy
from jira_db.utils.logging import setup_logging

logger = logging.getLogger(__name__)

INSTRUCTIONS = """Query a local mirror of Jira projects.
Use get_schema before execute_sql; only SELECT statements are accepted.
Use get_issue_snapshot with a timestamp to see an issue as it was at that time."""


def _dumps(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def _error(error: Exception, **context: Any) -> str:
    return json.dumps({"error": str(error), **context}, indent=2)


def create_mcp_server(state: AppState | None = None) -> FastMCP:
    """Build the MCP server with every mirror tool registered.

    Args:
        state: Application state; read from the environment when omitted

    Returns:
        The FastMCP server
    """
    mirror = state or AppState()
    mcp = FastMCP("Jira Mirror", instructions=INSTRUCTIONS)

    @mcp.tool(
        tags={"jira", "mirror", "read"},
        annotations={"title": "Search Issues", "readOnlyHint": True},
    )
    async def search_issues(
        ctx: Context,
        query: Annotated[
            str | None,
            Field(
                description="Text matched against summary and description, or an exact issue key",
                default=None,
            ),
        ] = None,
        project: Annotated[
            str | None,
            Field(description="Project key to search within (e.g., 'PROJ')", default=None),
        ] = None,
        status: Annotated[
            str | None,
            Field(description="Exact status name (e.g., 'In Progress')", default=None),
        ] = None,
        assignee: Annotated[
            str | None,
            Field(description="Assignee display name", default=None),
        ] = None,
        issue_type: Annotated[
            str | None,
            Field(description="Issue type: Bug, Story, Task, Epic", default=None),
        ] = None,
        limit: Annotated[
            int,
            Field(description="Maximum results to return (1-50)", ge=1, le=50, default=20),
        ] = 20,
    ) -> str:
        """
        Search mirrored issues with simple filters.

        Returns compact results, newest update first. Use get_issue for full details.

        Args:
            ctx: The FastMCP context.
            query: Free-text filter.
            project: Project key filter.
            status: Status filter.
            assignee: Assignee filter.
            issue_type: Issue type filter.
            limit: Maximum number of results.

        Returns:
            JSON string with matching issues.
        """
        try:
            project_id = None
            if project:
                found = mirror.projects.find_by_key(project.upper())
                if found is None:
                    return _dumps({"error": f"Project {project} not found", "issues": []})
                project_id = found.id
            issues = mirror.issues.search(
                query=query,
                project_id=project_id,
                status=status,
                assignee=assignee,
                issue_type=issue_type,
                limit=limit,
            )
            return _dumps(
                {
                    "count": len(issues),
                    "issues": ResponseFormatter.compress_issue_list(issues),
                    "hint": "Use get_issue with an issue key for full details",
                }
            )
        except JiraDbError as e:
            logger.error(f"Issue search error: {e}", exc_info=True)
            return _error(e, query=query)

    @mcp.tool(
        tags={"jira", "mirror", "read"},
        annotations={"title": "Get Issue", "readOnlyHint": True},
    )
    async def get_issue(
        ctx: Context,
        issue_key: Annotated[str, Field(description="Jira issue key (e.g., 'PROJ-123')")],
        max_description_length: Annotated[
            int,
            Field(
                description="Truncate the description to this many characters",
                ge=50,
                le=10000,
                default=2000,
            ),
        ] = 2000,
    ) -> str:
        """
        Get one mirrored issue.

        Args:
            ctx: The FastMCP context.
            issue_key: Issue key.
            max_description_length: Description truncation length.

        Returns:
            JSON string with the issue.
        """
        try:
            issue = mirror.issues.find_by_key(issue_key.upper())
            if issue is None:
                return _dumps(
                    {
                        "error": f"Issue {issue_key} not found in the mirror",
                        "hint": "The issue may not be synced yet. Run sync to update.",
                    }
                )
            return _dumps(
                ResponseFormatter.compress_issue(
                    issue, max_description_length=max_description_length
                )
            )
        except JiraDbError as e:
            logger.error(f"Get issue error: {e}", exc_info=True)
            return _error(e, issue_key=issue_key)

    @mcp.tool(
        tags={"jira", "mirror", "history", "read"},
        annotations={"title": "Get Issue History", "readOnlyHint": True},
    )
    async def get_issue_history(
        ctx: Context,
        issue_key: Annotated[str, Field(description="Jira issue key (e.g., 'PROJ-123')")],
        field: Annotated[
            str | None,
            Field(description="Only changes to this field (e.g., 'status')", default=None),
        ] = None,
        limit: Annotated[
            int,
            Field(description="Maximum changes to return (1-200)", ge=1, le=200, default=50),
        ] = 50,
    ) -> str:
        """
        Field-level change history of an issue, newest first.

        Args:
            ctx: The FastMCP context.
            issue_key: Issue key.
            field: Optional field filter.
            limit: Maximum number of changes.

        Returns:
            JSON string with the changes.
        """
        try:
            items = mirror.change_history.find_by_issue_key(
                issue_key.upper(), field=field, limit=limit
            )
            return _dumps(
                {
                    "issue_key": issue_key.upper(),
                    "count": len(items),
                    "changes": ResponseFormatter.compress_history(items),
                }
            )
        except JiraDbError as e:
            logger.error(f"History error: {e}", exc_info=True)
            return _error(e, issue_key=issue_key)

    @mcp.tool(
        tags={"jira", "mirror", "history", "read"},
        annotations={"title": "Get Issue Snapshot", "readOnlyHint": True},
    )
    async def get_issue_snapshot(
        ctx: Context,
        issue_key: Annotated[str, Field(description="Jira issue key (e.g., 'PROJ-123')")],
        at: Annotated[
            str | None,
            Field(
                description=(
                    "ISO-8601 timestamp (e.g., '2024-03-01T12:00:00Z'). "
                    "Omit to list every version."
                ),
                default=None,
            ),
        ] = None,
    ) -> str:
        """
        Reconstruct an issue as it was at a point in time.

        Args:
            ctx: The FastMCP context.
            issue_key: Issue key.
            at: Timestamp to look up, or None for all versions.

        Returns:
            JSON string with the matching snapshot versions.
        """
        key = issue_key.upper()
        try:
            if at is None:
                snapshots = mirror.snapshots.find_by_issue_key(key)
            else:
                when = parse_timestamp(at)
                if when is None:
                    return _dumps({"error": f"Invalid timestamp: {at}", "issue_key": key})
                found = mirror.snapshots.find_at(key, when)
                snapshots = [found] if found else []
            return _dumps(
                {
                    "issue_key": key,
                    "at": at,
                    "snapshots": [ResponseFormatter.compress_snapshot(s) for s in snapshots],
                }
            )
        except JiraDbError as e:
            logger.error(f"Snapshot error: {e}", exc_info=True)
            return _error(e, issue_key=key)

    @mcp.tool(
        tags={"jira", "mirror", "read"},
        annotations={"title": "List Projects", "readOnlyHint": True},
    )
    async def list_projects(ctx: Context) -> str:
        """
        List projects known to the mirror with their issue counts.

        Args:
            ctx: The FastMCP context.

        Returns:
            JSON string with the projects.
        """
        try:
            projects = mirror.projects.find_all()
            compressed = ResponseFormatter.compress_projects(projects)
            for entry, project in zip(compressed, projects):
                entry["issues"] = mirror.issues.count_by_project(project.id)
            return _dumps({"projects": compressed})
        except JiraDbError as e:
            logger.error(f"List projects error: {e}", exc_info=True)
            return _error(e)

    @mcp.tool(
        tags={"jira", "mirror", "read"},
        annotations={"title": "Get Project Metadata", "readOnlyHint": True},
    )
    async def get_project_metadata(
        ctx: Context,
        project: Annotated[str, Field(description="Project key (e.g., 'PROJ')")],
    ) -> str:
        """
        Statuses, priorities, issue types, labels, components and versions of a project.

        Args:
            ctx: The FastMCP context.
            project: Project key.

        Returns:
            JSON string with the metadata.
        """
        try:
            found = mirror.projects.find_by_key(project.upper())
            if found is None:
                return _dumps({"error": f"Project {project} not found"})
            metadata = mirror.metadata.find_project_metadata(found.id)
            return _dumps(
                {"project_key": found.key, **metadata.model_dump(mode="json", exclude={"project_id"})}
            )
        except JiraDbError as e:
            logger.error(f"Metadata error: {e}", exc_info=True)
            return _error(e, project=project)

    @mcp.tool(
        tags={"jira", "mirror", "sql", "read"},
        annotations={"title": "Get Database Schema", "readOnlyHint": True},
    )
    async def get_schema(ctx: Context) -> str:
        """
        Tables and views of the mirror database with their columns.

        Args:
            ctx: The FastMCP context.

        Returns:
            JSON string mapping table names to columns.
        """
        try:
            return _dumps({"tables": mirror.sql_gateway().schema()})
        except JiraDbError as e:
            logger.error(f"Schema error: {e}", exc_info=True)
            return _error(e)

    @mcp.tool(
        tags={"jira", "mirror", "sql", "read"},
        annotations={"title": "Execute SQL", "readOnlyHint": True},
    )
    async def execute_sql(
        ctx: Context,
        query: Annotated[
            str,
            Field(
                description=(
                    "A single SELECT statement. Mutating keywords are rejected. "
                    "Example: SELECT status, COUNT(*) FROM issues GROUP BY status"
                )
            ),
        ],
        limit: Annotated[
            int | None,
            Field(
                description="Row limit appended when the query has none",
                ge=1,
                le=10000,
                default=None,
            ),
        ] = None,
    ) -> str:
        """
        Run a read-only SQL query against the mirror.

        Args:
            ctx: The FastMCP context.
            query: SELECT statement.
            limit: Optional row limit.

        Returns:
            JSON string with columns, rows and row_count.
        """
        try:
            return _dumps(mirror.sql_gateway().execute(query, limit))
        except JiraDbError as e:
            logger.warning(f"SQL rejected or failed: {e}")
            return _error(e, query=query)

    @mcp.tool(
        tags={"jira", "mirror", "vector", "read"},
        annotations={"title": "Semantic Search", "readOnlyHint": True},
    )
    async def semantic_search(
        ctx: Context,
        query: Annotated[
            str,
            Field(
                description=(
                    "Natural language search query. Finds issues by meaning, not just keywords. "
                    "Examples: 'authentication failures in the API', 'slow database queries'"
                )
            ),
        ],
        project: Annotated[
            str | None,
            Field(description="Project key to search within (e.g., 'PROJ')", default=None),
        ] = None,
        limit: Annotated[
            int,
            Field(description="Maximum results to return (1-20)", ge=1, le=20, default=10),
        ] = 10,
    ) -> str:
        """
        Semantic search across mirrored issues using stored embeddings.

        Args:
            ctx: The FastMCP context.
            query: Natural language search query.
            project: Project key filter.
            limit: Maximum number of results.

        Returns:
            JSON string with matching issues and relevance scores.
        """
        try:
            results = await mirror.embedder().semantic_search(
                query, project.upper() if project else None, limit
            )
            if not results:
                return _dumps(
                    {
                        "query": query,
                        "results": [],
                        "hint": "No embeddings found. Use CLI: jira-db embeddings",
                    }
                )
            return _dumps({"query": query, "total_matches": len(results), "results": results})
        except JiraDbError as e:
            logger.error(f"Semantic search error: {e}", exc_info=True)
            return _error(e, query=query)

    @mcp.tool(
        tags={"jira", "mirror", "sync", "read"},
        annotations={"title": "Sync Status", "readOnlyHint": True},
    )
    async def sync_status(ctx: Context) -> str:
        """
        Per-project watermarks, pending checkpoints and latest sync runs.

        Args:
            ctx: The FastMCP context.

        Returns:
            JSON string with the sync status.
        """
        try:
            return _dumps(mirror.sync_engine().get_sync_status())
        except JiraDbError as e:
            logger.error(f"Sync status error: {e}", exc_info=True)
            return _error(e)

    return mcp


def main() -> None:
    """Run the MCP server over stdio."""
    load_dotenv()
    level = logging.DEBUG if is_env_truthy("JIRA_DB_VERBOSE") else logging.WARNING
    setup_logging(level)
    create_mcp_server().run()


if __name__ == "__main__":
    main()
