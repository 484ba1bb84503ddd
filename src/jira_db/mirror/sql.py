"""Read-only SQL access to the mirror for the CLI, REST and MCP front-ends."""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any

from jira_db.exceptions import ValidationError
from jira_db.mirror.database import Database

logger = logging.getLogger(__name__)

FORBIDDEN_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "CREATE",
    "ALTER",
    "TRUNCATE",
    "EXEC",
    "EXECUTE",
)

DEFAULT_LIMIT = 100

_KEYWORD_PATTERNS = {
    keyword: re.compile(rf"(?<![A-Za-z0-9]){keyword}(?![A-Za-z0-9])")
    for keyword in FORBIDDEN_KEYWORDS
}
_LIMIT_PATTERN = re.compile(r"\bLIMIT\b")


def validate_query(query: str) -> str:
    """Check that a query is a plain SELECT.

    A keyword counts when no letter or digit touches it. Underscores do not
    shield it, so ``x_DELETE`` is rejected while ``updated_at`` is allowed.

    Returns:
        The query with surrounding whitespace removed

    Raises:
        ValidationError: If the query does not start with SELECT or contains
            a forbidden keyword
    """
    stripped = query.strip()
    upper = stripped.upper()
    if not upper.startswith("SELECT"):
        raise ValidationError("Only SELECT queries are allowed for read-only access")
    for keyword, pattern in _KEYWORD_PATTERNS.items():
        if pattern.search(upper):
            raise ValidationError(f"Query contains forbidden keyword: {keyword}")
    return stripped


def apply_limit(query: str, limit: int) -> str:
    """Append ``LIMIT`` when the query has none."""
    if _LIMIT_PATTERN.search(query.upper()):
        return query
    return f"{query.rstrip().rstrip(';').rstrip()} LIMIT {limit}"


def to_json_value(value: Any) -> Any:
    """Convert a column value to null, bool, int, float or str."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return f"<blob:{len(value)} bytes>"
    return repr(value)


class ReadOnlySqlGateway:
    """Run validated SELECT queries against the mirror."""

    def __init__(self, db: Database, default_limit: int = DEFAULT_LIMIT) -> None:
        self.db = db
        self.default_limit = default_limit

    def execute(self, query: str, limit: int | None = None) -> dict[str, Any]:
        """Execute a read-only query.

        Args:
            query: SQL starting with SELECT
            limit: Row limit appended when the query has no LIMIT clause

        Returns:
            Dict with ``columns``, ``rows`` and ``row_count``

        Raises:
            ValidationError: If the query is not read-only
            RepositoryError: If SQLite rejects the query
        """
        sql = apply_limit(validate_query(query), limit or self.default_limit)
        logger.debug(f"Executing read-only query: {sql}")
        columns, rows = self.db.query(sql)
        converted = [[to_json_value(v) for v in row] for row in rows]
        return {"columns": columns, "rows": converted, "row_count": len(converted)}

    def schema(self) -> dict[str, list[dict[str, str]]]:
        """Describe every table and view visible to queries."""
        objects = self.db.fetchall(
            "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        result: dict[str, list[dict[str, str]]] = {}
        for obj in objects:
            name = obj["name"]
            result[name] = [
                {"name": row["name"], "type": row["type"] or ""}
                for row in self.db.fetchall(f'PRAGMA table_info("{name}")')
            ]
        return result
