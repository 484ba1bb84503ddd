"""Convert Jira REST payloads into mirror entities."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from jira_db.mirror.schemas import (
    Component,
    FixVersion,
    Issue,
    IssueType,
    JiraField,
    Priority,
    Project,
    Status,
)
from jira_db.utils.dates import parse_date, parse_timestamp

logger = logging.getLogger(__name__)

# Fields that have carried the sprint on the Jira sites we have seen
SPRINT_FIELD_IDS = ("sprint", "customfield_10020", "customfield_10104", "customfield_10000")

_LEGACY_SPRINT_NAME = re.compile(r"name=([^,\]]*)")


def _name(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("name")
    return None


def _display_name(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("displayName") or value.get("name")
    return None


def _names(values: Any) -> list[str] | None:
    if not isinstance(values, list):
        return None
    names = [v["name"] for v in values if isinstance(v, dict) and v.get("name")]
    return names or None


def adf_to_text(value: Any) -> str | None:
    """Flatten an Atlassian Document Format node (or plain string) to text."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if not isinstance(value, dict):
        return str(value)

    blocks: list[str] = []

    def walk(node: dict[str, Any], out: list[str]) -> None:
        if node.get("type") == "text":
            out.append(node.get("text", ""))
        elif node.get("type") == "hardBreak":
            out.append("\n")
        for child in node.get("content") or []:
            if isinstance(child, dict):
                walk(child, out)

    for block in value.get("content") or []:
        if isinstance(block, dict):
            parts: list[str] = []
            walk(block, parts)
            blocks.append("".join(parts))
    text = "\n".join(b for b in blocks if b)
    return text or None


def text_to_adf(text: str) -> dict[str, Any]:
    """Wrap plain text paragraphs in a minimal ADF document."""
    paragraphs = [p for p in text.split("\n\n") if p.strip()] or [text]
    return {
        "type": "doc",
        "version": 1,
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": p}]}
            for p in paragraphs
        ],
    }


def extract_sprint(fields: dict[str, Any]) -> str | None:
    """Pick the sprint name from whichever sprint field the site uses.

    Prefers the last active or closed sprint in the list; older sites send
    serialized strings like ``com.atlassian...Sprint@1[id=1,name=Sprint 5,...]``.
    """
    for field_id in SPRINT_FIELD_IDS:
        value = fields.get(field_id)
        if not value:
            continue
        entries = value if isinstance(value, list) else [value]

        for entry in reversed(entries):
            if isinstance(entry, dict) and entry.get("name"):
                state = (entry.get("state") or "").lower()
                if state in ("active", "closed", ""):
                    return entry["name"]
        for entry in reversed(entries):
            if isinstance(entry, dict) and entry.get("name"):
                return entry["name"]
            if isinstance(entry, str):
                match = _LEGACY_SPRINT_NAME.search(entry)
                if match and match.group(1):
                    return match.group(1)
    return None


def parse_issue(data: dict[str, Any]) -> Issue:
    """Build an Issue from a search/get payload, keeping the payload as raw JSON."""
    fields = data.get("fields") or {}
    project = fields.get("project") or {}
    parent = fields.get("parent") or {}
    return Issue(
        id=str(data.get("id", "")),
        project_id=str(project.get("id", "")),
        key=data.get("key", ""),
        summary=fields.get("summary") or "",
        description=adf_to_text(fields.get("description")),
        status=_name(fields.get("status")),
        priority=_name(fields.get("priority")),
        assignee=_display_name(fields.get("assignee")),
        reporter=_display_name(fields.get("reporter")),
        issue_type=_name(fields.get("issuetype")),
        resolution=_name(fields.get("resolution")),
        labels=[str(label) for label in fields.get("labels") or []] or None,
        components=_names(fields.get("components")),
        fix_versions=_names(fields.get("fixVersions")),
        sprint=extract_sprint(fields),
        parent_key=parent.get("key") if isinstance(parent, dict) else None,
        created_date=parse_timestamp(fields.get("created")),
        updated_date=parse_timestamp(fields.get("updated")),
        raw_json=json.dumps(data),
    )


def parse_project(data: dict[str, Any]) -> Project:
    return Project(
        id=str(data.get("id", "")),
        key=data.get("key", ""),
        name=data.get("name", ""),
        description=adf_to_text(data.get("description")),
    )


def parse_statuses(data: list[dict[str, Any]]) -> list[Status]:
    """Flatten ``/project/{key}/statuses`` (statuses per issue type), deduped by name."""
    seen: dict[str, Status] = {}
    for issue_type in data or []:
        for status in issue_type.get("statuses") or []:
            name = status.get("name")
            if not name or name in seen:
                continue
            category = status.get("statusCategory") or {}
            seen[name] = Status(
                name=name,
                description=status.get("description") or None,
                category=category.get("key"),
            )
    return list(seen.values())


def parse_priority(data: dict[str, Any]) -> Priority:
    return Priority(
        name=data.get("name", ""),
        description=data.get("description") or None,
        icon_url=data.get("iconUrl"),
    )


def parse_issue_type(data: dict[str, Any]) -> IssueType:
    return IssueType(
        name=data.get("name", ""),
        description=data.get("description") or None,
        icon_url=data.get("iconUrl"),
        subtask=bool(data.get("subtask", False)),
    )


def parse_component(data: dict[str, Any]) -> Component:
    return Component(
        name=data.get("name", ""),
        description=data.get("description") or None,
        lead=_display_name(data.get("lead")),
    )


def parse_version(data: dict[str, Any]) -> FixVersion:
    return FixVersion(
        name=data.get("name", ""),
        description=data.get("description") or None,
        released=bool(data.get("released", False)),
        release_date=parse_date(data.get("releaseDate")),
    )


def parse_field(data: dict[str, Any]) -> JiraField:
    schema = data.get("schema") or {}
    custom_id = schema.get("customId")
    return JiraField(
        id=data.get("id", ""),
        key=data.get("key") or data.get("id", ""),
        name=data.get("name") or data.get("id", ""),
        custom=bool(data.get("custom", False)),
        searchable=bool(data.get("searchable", False)),
        navigable=bool(data.get("navigable", False)),
        orderable=bool(data.get("orderable", False)),
        schema_type=schema.get("type"),
        schema_items=schema.get("items"),
        schema_system=schema.get("system"),
        schema_custom=schema.get("custom"),
        schema_custom_id=int(custom_id) if custom_id is not None else None,
    )
