"""Entities stored in the local Jira mirror."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

SyncStatus = Literal["running", "completed", "failed"]


class Project(BaseModel):
    """A Jira project. Identity is the Jira-assigned ``id``."""

    id: str
    key: str
    name: str
    description: str | None = None
    sync_enabled: bool = False
    last_synced_at: datetime | None = None


class Issue(BaseModel):
    """An issue as mirrored from Jira.

    ``raw_json`` keeps the full remote payload, including the embedded
    changelog, and is the source for change history, snapshots and the
    flattened issue view.
    """

    id: str
    project_id: str
    key: str
    summary: str = ""
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    assignee: str | None = None
    reporter: str | None = None
    issue_type: str | None = None
    resolution: str | None = None
    labels: list[str] | None = None
    components: list[str] | None = None
    fix_versions: list[str] | None = None
    sprint: str | None = None
    parent_key: str | None = None
    created_date: datetime | None = None
    updated_date: datetime | None = None
    raw_json: str | None = None
    is_deleted: bool = False


class ChangeHistoryItem(BaseModel):
    """One field-level change taken from an issue's changelog."""

    issue_id: str
    issue_key: str
    history_id: str = ""
    author_account_id: str | None = None
    author_display_name: str | None = None
    field: str
    field_type: str | None = None
    from_value: str | None = None
    from_string: str | None = None
    to_value: str | None = None
    to_string: str | None = None
    changed_at: datetime


class IssueSnapshot(BaseModel):
    """State of an issue over the half-open interval [valid_from, valid_to)."""

    issue_id: str
    issue_key: str
    project_id: str
    version: int
    valid_from: datetime
    valid_to: datetime | None = None
    summary: str = ""
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    assignee: str | None = None
    reporter: str | None = None
    issue_type: str | None = None
    resolution: str | None = None
    labels: list[str] | None = None
    components: list[str] | None = None
    fix_versions: list[str] | None = None
    sprint: str | None = None
    parent_key: str | None = None
    raw_data: str | None = None
    updated_date: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_current(self) -> bool:
        return self.valid_to is None


class JiraField(BaseModel):
    """Field definition from ``/rest/api/3/field``."""

    id: str
    key: str
    name: str
    custom: bool = False
    searchable: bool = False
    navigable: bool = False
    orderable: bool = False
    schema_type: str | None = None
    schema_items: str | None = None
    schema_system: str | None = None
    schema_custom: str | None = None
    schema_custom_id: int | None = None


class SyncHistory(BaseModel):
    """Audit row for one sync run."""

    id: int
    project_id: str
    sync_type: str
    started_at: datetime
    completed_at: datetime | None = None
    status: SyncStatus = "running"
    items_synced: int = 0
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Project metadata
# ---------------------------------------------------------------------------


class Status(BaseModel):
    name: str
    description: str | None = None
    category: str | None = None


class Priority(BaseModel):
    name: str
    description: str | None = None
    icon_url: str | None = None


class IssueType(BaseModel):
    name: str
    description: str | None = None
    icon_url: str | None = None
    subtask: bool = False


class Label(BaseModel):
    name: str


class Component(BaseModel):
    name: str
    description: str | None = None
    lead: str | None = None


class FixVersion(BaseModel):
    name: str
    description: str | None = None
    released: bool = False
    release_date: date | None = None


class ProjectMetadata(BaseModel):
    """All metadata categories stored for one project."""

    project_id: str
    statuses: list[Status] = Field(default_factory=list)
    priorities: list[Priority] = Field(default_factory=list)
    issue_types: list[IssueType] = Field(default_factory=list)
    labels: list[Label] = Field(default_factory=list)
    components: list[Component] = Field(default_factory=list)
    fix_versions: list[FixVersion] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Jira write-through
# ---------------------------------------------------------------------------


class CreatedIssue(BaseModel):
    id: str
    key: str
    self_url: str | None = None


class Transition(BaseModel):
    id: str
    name: str
    to_status: str | None = None
    to_status_category: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Transition:
        to = data.get("to") or {}
        category = to.get("statusCategory") or {}
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            to_status=to.get("name"),
            to_status_category=category.get("key"),
        )
