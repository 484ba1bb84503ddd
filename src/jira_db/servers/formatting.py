"""
Response compression for MCP tool results.

Mirrored issues, change history and snapshots are reduced to the fields an
LLM client needs so tool responses stay small.
"""

from datetime import datetime
from typing import Any

from jira_db.mirror.schemas import ChangeHistoryItem, Issue, IssueSnapshot, Project
from jira_db.utils.dates import parse_timestamp, utcnow


class ResponseFormatter:
    """
    Compresses mirror entities to reduce context consumption.

    Features:
    - Truncates long descriptions
    - Drops raw payloads
    - Converts timestamps to human-readable relative format
    """

    DEFAULT_MAX_DESCRIPTION_LENGTH = 200
    DEFAULT_MAX_SUMMARY_LENGTH = 100

    @classmethod
    def compress_issue(
        cls,
        issue: Issue,
        max_description_length: int = DEFAULT_MAX_DESCRIPTION_LENGTH,
        include_description: bool = True,
    ) -> dict[str, Any]:
        """
        Compress a single mirrored issue.

        Args:
            issue: The issue to compress
            max_description_length: Maximum characters for description
            include_description: Whether to include description

        Returns:
            Compressed issue dictionary
        """
        compressed: dict[str, Any] = {
            "key": issue.key,
            "summary": issue.summary,
            "status": issue.status,
            "priority": issue.priority,
            "assignee": issue.assignee,
            "updated": cls._relative_timestamp(issue.updated_date),
        }

        if include_description and issue.description:
            compressed["description"] = cls._truncate(issue.description, max_description_length)
        if issue.issue_type:
            compressed["type"] = issue.issue_type
        if issue.reporter:
            compressed["reporter"] = issue.reporter
        if issue.resolution:
            compressed["resolution"] = issue.resolution
        if issue.labels:
            compressed["labels"] = issue.labels
        if issue.components:
            compressed["components"] = issue.components
        if issue.sprint:
            compressed["sprint"] = issue.sprint
        if issue.parent_key:
            compressed["parent"] = issue.parent_key
        if issue.created_date:
            compressed["created"] = cls._relative_timestamp(issue.created_date)
        if issue.is_deleted:
            compressed["deleted"] = True

        return compressed

    @classmethod
    def compress_issue_list(
        cls,
        issues: list[Issue],
        max_description_length: int = DEFAULT_MAX_DESCRIPTION_LENGTH,
        include_description: bool = False,
    ) -> list[dict[str, Any]]:
        return [
            cls.compress_issue(
                issue,
                max_description_length=max_description_length,
                include_description=include_description,
            )
            for issue in issues
        ]

    @classmethod
    def compress_history(cls, items: list[ChangeHistoryItem]) -> list[dict[str, Any]]:
        """
        Compress change history items to field, from, to, who and when.

        The display strings are preferred over raw ids when Jira provided them.
        """
        return [
            {
                "field": item.field,
                "from": item.from_string if item.from_string is not None else item.from_value,
                "to": item.to_string if item.to_string is not None else item.to_value,
                "author": item.author_display_name,
                "changed_at": item.changed_at.isoformat(),
            }
            for item in items
        ]

    @classmethod
    def compress_snapshot(cls, snapshot: IssueSnapshot) -> dict[str, Any]:
        compressed: dict[str, Any] = {
            "version": snapshot.version,
            "valid_from": snapshot.valid_from.isoformat(),
            "valid_to": snapshot.valid_to.isoformat() if snapshot.valid_to else None,
            "summary": cls._truncate(snapshot.summary, cls.DEFAULT_MAX_SUMMARY_LENGTH),
            "status": snapshot.status,
            "priority": snapshot.priority,
            "assignee": snapshot.assignee,
            "type": snapshot.issue_type,
        }
        if snapshot.resolution:
            compressed["resolution"] = snapshot.resolution
        if snapshot.labels:
            compressed["labels"] = snapshot.labels
        if snapshot.sprint:
            compressed["sprint"] = snapshot.sprint
        return compressed

    @classmethod
    def compress_projects(cls, projects: list[Project]) -> list[dict[str, Any]]:
        """
        Compress a list of projects.

        Args:
            projects: Projects from the mirror

        Returns:
            Compressed project list with essential fields only
        """
        return [
            {
                "key": project.key,
                "name": project.name,
                "sync_enabled": project.sync_enabled,
                "last_synced": cls._relative_timestamp(project.last_synced_at),
            }
            for project in projects
        ]

    @staticmethod
    def _truncate(text: str | None, max_length: int) -> str:
        """Truncate text to max_length with ellipsis."""
        if not text:
            return ""
        text = text.strip()
        if len(text) <= max_length:
            return text
        return text[:max_length].rsplit(" ", 1)[0] + "..."

    @classmethod
    def _relative_timestamp(
        cls, timestamp: datetime | str | None, now: datetime | None = None
    ) -> str | None:
        """
        Convert a timestamp to human-readable relative time.

        Examples: "2h ago", "3d ago", "1w ago", "2mo ago"
        """
        if not timestamp:
            return None

        dt = parse_timestamp(timestamp)
        if dt is None:
            return str(timestamp)

        seconds = ((now or utcnow()) - dt).total_seconds()

        if seconds < 60:
            return "just now"
        elif seconds < 3600:
            return f"{int(seconds / 60)}m ago"
        elif seconds < 86400:
            return f"{int(seconds / 3600)}h ago"
        elif seconds < 604800:
            return f"{int(seconds / 86400)}d ago"
        elif seconds < 2592000:
            return f"{int(seconds / 604800)}w ago"
        else:
            return f"{int(seconds / 2592000)}mo ago"
