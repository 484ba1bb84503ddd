"""Field metadata sync and the flattened ``issues_expanded`` view.

Jira field definitions drive extra columns on ``issues_expanded``. Columns
are only ever added, never dropped or renamed, so repeated runs are safe.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from jira_db.exceptions import JiraDbError
from jira_db.jira.client import JiraSource
from jira_db.jira.parsing import adf_to_text, extract_sprint
from jira_db.mirror.repositories import (
    SqliteExpandedIssueRepository,
    SqliteFieldRepository,
    SqliteIssueRepository,
)
from jira_db.mirror.schema import EXPANDED_BASE_COLUMNS
from jira_db.mirror.schemas import JiraField
from jira_db.utils.dates import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# Internal or bulky fields that are not worth a column
NON_EXPANDABLE_FIELDS = frozenset(
    {
        "statuscategorychangedate",
        "workratio",
        "lastViewed",
        "watches",
        "thumbnail",
        "votes",
        "worklog",
        "comment",
        "attachment",
        "subtasks",
        "issuelinks",
        "timetracking",
        "timeoriginalestimate",
        "timespent",
        "timeestimate",
        "aggregatetimeoriginalestimate",
        "aggregatetimespent",
        "aggregatetimeestimate",
        "aggregateprogress",
        "progress",
    }
)

COLUMN_TYPES = {
    "string": "TEXT",
    "number": "DOUBLE",
    "datetime": "TIMESTAMP",
    "date": "DATE",
    "array": "JSON",
    "issuelink": "JSON",
}

# Jira field ids already covered by a base column of issues_expanded
BASE_FIELD_COLUMNS = {
    "summary": "summary",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "assignee": "assignee",
    "reporter": "reporter",
    "creator": "creator",
    "issuetype": "issue_type",
    "resolution": "resolution",
    "labels": "labels",
    "components": "components",
    "fixversions": "fix_versions",
    "versions": "affected_versions",
    "parent": "parent_key",
    "environment": "environment",
    "security": "security_level",
    "created": "created_date",
    "updated": "updated_date",
    "resolutiondate": "resolved_date",
    "duedate": "due_date",
}

_UNSAFE = re.compile(r"[^a-z0-9_]")


def is_expandable(jira_field: JiraField) -> bool:
    return jira_field.id not in NON_EXPANDABLE_FIELDS


def column_type(jira_field: JiraField) -> str:
    return COLUMN_TYPES.get(jira_field.schema_type or "", "TEXT")


def column_name(jira_field: JiraField) -> str:
    """Column name for a field: lowercase, [a-z0-9_] only, ``cf_`` for custom fields."""
    name = _UNSAFE.sub("_", jira_field.id.lower())
    return f"cf_{name}" if jira_field.custom else name


@dataclass
class SyncFieldsResult:
    fields_synced: int = 0
    columns_added: int = 0
    issues_expanded: int = 0
    errors: list[str] = field(default_factory=list)


def _name(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("name") or value.get("displayName") or value.get("value")
    return value


def _display_name(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("displayName") or value.get("name")
    return None


def _names_json(values: Any) -> str | None:
    if not isinstance(values, list) or not values:
        return None
    return json.dumps([_name(v) for v in values])


def _custom_value(value: Any, col_type: str) -> Any:
    """Reduce a raw field value to something a column of ``col_type`` can hold."""
    if value is None:
        return None
    if col_type == "JSON":
        return json.dumps(value)
    if isinstance(value, dict):
        if value.get("type") == "doc":
            return adf_to_text(value)
        for key in ("value", "name", "displayName", "key"):
            if key in value:
                return value[key]
        return json.dumps(value)
    if isinstance(value, list):
        return json.dumps(value)
    if isinstance(value, bool):
        return int(value)
    if col_type == "DOUBLE" and isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    return value


class FieldSchemaEvolver:
    """Sync Jira field definitions, grow ``issues_expanded`` and backfill it."""

    def __init__(
        self,
        jira: JiraSource,
        fields: SqliteFieldRepository,
        expanded: SqliteExpandedIssueRepository,
        issues: SqliteIssueRepository,
        batch_size: int = 200,
    ) -> None:
        self.jira = jira
        self.fields = fields
        self.expanded = expanded
        self.issues = issues
        self.batch_size = batch_size

    async def sync_fields(self) -> int:
        """Fetch field definitions from Jira and upsert them by id."""
        remote = await self.jira.fetch_fields()
        count = self.fields.upsert_fields(remote)
        logger.info(f"Synced {count} field definitions")
        return count

    def _expandable_fields(self) -> list[tuple[JiraField, str, str]]:
        """Fields that get a column, in a stable order.

        Ids that clean up to the same name (``my-field`` and ``my_field``)
        keep the first name; later ones get a numeric suffix.
        """
        columns = []
        used: set[str] = set()
        for jira_field in self.fields.find_all():
            if not is_expandable(jira_field):
                continue
            if jira_field.id.lower() in BASE_FIELD_COLUMNS:
                continue
            name = column_name(jira_field)
            if name in EXPANDED_BASE_COLUMNS:
                continue
            if name in used:
                base, n = name, 2
                while f"{base}_{n}" in used:
                    n += 1
                name = f"{base}_{n}"
                logger.warning(
                    f"Field {jira_field.id} clashes with column {base}, using {name}"
                )
            used.add(name)
            columns.append((jira_field, name, column_type(jira_field)))
        return columns

    def add_columns(self) -> list[str]:
        """Add a column for every stored field that lacks one.

        Returns:
            Names of the columns added by this call
        """
        existing = self.expanded.existing_columns()
        added = []
        for _, name, col_type in self._expandable_fields():
            if name in existing:
                continue
            if self.expanded.add_column(name, col_type):
                added.append(name)
                existing.add(name)
        if added:
            logger.info(f"Added {len(added)} columns to issues_expanded")
        return added

    def _expand_row(
        self,
        issue_id: str,
        project_id: str,
        key: str,
        data: dict[str, Any],
        custom_columns: list[tuple[JiraField, str, str]],
        synced_at: str,
    ) -> dict[str, Any]:
        fields = data.get("fields") or {}
        parent = fields.get("parent") or {}
        row: dict[str, Any] = {
            "id": issue_id,
            "project_id": project_id,
            "issue_key": key,
            "summary": fields.get("summary"),
            "description": adf_to_text(fields.get("description")),
            "status": _name(fields.get("status")),
            "priority": _name(fields.get("priority")),
            "assignee": _display_name(fields.get("assignee")),
            "reporter": _display_name(fields.get("reporter")),
            "creator": _display_name(fields.get("creator")),
            "issue_type": _name(fields.get("issuetype")),
            "resolution": _name(fields.get("resolution")),
            "labels": json.dumps(fields["labels"]) if fields.get("labels") else None,
            "components": _names_json(fields.get("components")),
            "fix_versions": _names_json(fields.get("fixVersions")),
            "affected_versions": _names_json(fields.get("versions")),
            "sprint": extract_sprint(fields),
            "parent_key": parent.get("key") if isinstance(parent, dict) else None,
            "environment": adf_to_text(fields.get("environment")),
            "security_level": _name(fields.get("security")),
            "created_date": format_timestamp(parse_timestamp(fields.get("created"))),
            "updated_date": format_timestamp(parse_timestamp(fields.get("updated"))),
            "resolved_date": format_timestamp(parse_timestamp(fields.get("resolutiondate"))),
            "due_date": fields.get("duedate"),
            "synced_at": synced_at,
        }
        for jira_field, name, col_type in custom_columns:
            row[name] = _custom_value(fields.get(jira_field.id), col_type)
        return row

    def expand_issues(self, project_id: str | None = None) -> int:
        """Populate ``issues_expanded`` from stored raw payloads.

        Args:
            project_id: Limit to one project; None expands every project

        Returns:
            Number of issues written
        """
        existing = self.expanded.existing_columns()
        custom_columns = [c for c in self._expandable_fields() if c[1] in existing]
        synced_at = format_timestamp(utcnow())

        expanded = 0
        rows: list[dict[str, Any]] = []
        for issue_id, issue_project, key, raw in self.issues.iter_raw(project_id):
            try:
                data = json.loads(raw)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping {key}: invalid raw JSON ({e})")
                continue
            rows.append(
                self._expand_row(issue_id, issue_project, key, data, custom_columns, synced_at)
            )
            if len(rows) >= self.batch_size:
                expanded += self.expanded.upsert_rows(rows)
                rows = []
        if rows:
            expanded += self.expanded.upsert_rows(rows)
        logger.info(f"Expanded {expanded} issues")
        return expanded

    def create_readable_view(self) -> None:
        """Expose issues_expanded under Jira display names as ``issues_readable``."""
        by_id = {f.id.lower(): f.name for f in self.fields.find_all()}
        by_column = {column_name(f): f.name for f in self.fields.find_all()}
        by_column.update((name, f.name) for f, name, _ in self._expandable_fields())
        column_to_field = {v: k for k, v in BASE_FIELD_COLUMNS.items()}
        aliases: list[tuple[str, str]] = []
        used: set[str] = set()
        for column in self.expanded.ordered_columns():
            if column in ("id", "project_id", "issue_key", "synced_at"):
                alias = column
            elif column in column_to_field:
                alias = by_id.get(column_to_field[column], column)
            else:
                alias = by_column.get(column, column)
            if alias.lower() in used:
                alias = f"{alias} ({column})"
            used.add(alias.lower())
            aliases.append((column, alias))
        self.expanded.create_readable_view(aliases)

    async def execute(self, project_id: str | None = None) -> SyncFieldsResult:
        """Sync fields, add columns, expand issues and refresh the readable view.

        A failed field fetch aborts; later steps fail independently and
        their errors are collected on the result.
        """
        result = SyncFieldsResult()
        result.fields_synced = await self.sync_fields()

        try:
            result.columns_added = len(self.add_columns())
        except JiraDbError as e:
            logger.error(f"Adding columns failed: {e}")
            result.errors.append(f"add_columns: {e}")

        try:
            result.issues_expanded = self.expand_issues(project_id)
        except JiraDbError as e:
            logger.error(f"Expanding issues failed: {e}")
            result.errors.append(f"expand_issues: {e}")

        try:
            self.create_readable_view()
        except JiraDbError as e:
            logger.warning(f"Creating readable view failed: {e}")
            result.errors.append(f"readable_view: {e}")

        return result
