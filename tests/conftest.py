"""Shared fixtures: an in-memory database, a test config and a fake Jira."""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from jira_db.exceptions import ExternalServiceError
from jira_db.jira.client import IssueBatch
from jira_db.jira.parsing import parse_issue
from jira_db.mirror.config import MirrorConfig
from jira_db.mirror.database import Database
from jira_db.mirror.schemas import (
    Component,
    FixVersion,
    IssueType,
    JiraField,
    Label,
    Priority,
    Project,
    Status,
)

BASE_TIME = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

PROJECT_ID = "10000"
PROJECT_KEY = "PROJ"


def jira_time(value: datetime) -> str:
    """Format a datetime the way Jira does (``2024-01-01T09:00:00.000+0000``)."""
    return value.strftime("%Y-%m-%dT%H:%M:%S.000%z")


def make_raw_issue(
    index: int,
    updated: datetime | None = None,
    status: str = "To Do",
    histories: list[dict[str, Any]] | None = None,
    extra_fields: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a search-result payload for ``PROJ-<index>``."""
    updated = updated or BASE_TIME + timedelta(minutes=index)
    fields: dict[str, Any] = {
        "summary": f"Issue {index}",
        "description": None,
        "status": {"name": status},
        "priority": {"name": "Medium"},
        "issuetype": {"name": "Task"},
        "assignee": {"displayName": "Ada Lovelace", "accountId": "u-1"},
        "reporter": {"displayName": "Grace Hopper", "accountId": "u-2"},
        "project": {"id": PROJECT_ID, "key": PROJECT_KEY},
        "labels": [],
        "created": jira_time(BASE_TIME - timedelta(days=1)),
        "updated": jira_time(updated),
    }
    fields.update(extra_fields or {})
    return {
        "id": str(10000 + index),
        "key": f"{PROJECT_KEY}-{index}",
        "fields": fields,
        "changelog": {"histories": histories or []},
    }


def status_change(
    history_id: str, when: datetime, from_status: str, to_status: str
) -> dict[str, Any]:
    return {
        "id": history_id,
        "created": jira_time(when),
        "author": {"accountId": "u-1", "displayName": "Ada Lovelace"},
        "items": [
            {
                "field": "status",
                "fieldtype": "jira",
                "from": "1",
                "fromString": from_status,
                "to": "2",
                "toString": to_status,
            }
        ],
    }


class FakeJira:
    """In-memory Jira source paging issues by ``updated`` ascending."""

    def __init__(self, raw_issues: list[dict[str, Any]] | None = None) -> None:
        self.raw_issues = list(raw_issues or [])
        self.projects = [Project(id=PROJECT_ID, key=PROJECT_KEY, name="Project")]
        self.fields: list[JiraField] = []
        self.search_calls = 0
        self.fail_on_call: int | None = None
        self.failing_metadata: set[str] = set()
        self.closed = False

    async def fetch_projects(self) -> list[Project]:
        return list(self.projects)

    async def fetch_project_issues_batch(
        self,
        project_key: str,
        after_updated_at: datetime | None = None,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> IssueBatch:
        self.search_calls += 1
        if self.fail_on_call == self.search_calls:
            raise ExternalServiceError("Jira returned 503", status_code=503)

        issues = [parse_issue(raw) for raw in self.raw_issues]
        matching = sorted(
            (
                i
                for i in issues
                if after_updated_at is None or i.updated_date >= after_updated_at
            ),
            key=lambda i: (i.updated_date, i.key),
        )
        start = int(page_token or 0)
        page = matching[start : start + max_results]
        end = start + len(page)
        has_more = end < len(matching)
        return IssueBatch(
            issues=page,
            total=len(matching),
            fetched_so_far=end,
            has_more=has_more,
            next_page_token=str(end) if has_more else None,
        )

    def _metadata(self, name: str, items: list[Any]) -> list[Any]:
        if name in self.failing_metadata:
            raise ExternalServiceError(f"{name} unavailable", status_code=500)
        return items

    async def fetch_project_statuses(self, project_key: str) -> list[Status]:
        return self._metadata(
            "statuses",
            [Status(name="To Do", category="new"), Status(name="Done", category="done")],
        )

    async def fetch_priorities(self) -> list[Priority]:
        return self._metadata("priorities", [Priority(name="Medium")])

    async def fetch_project_issue_types(self, project_id: str) -> list[IssueType]:
        return self._metadata("issue_types", [IssueType(name="Task")])

    async def fetch_project_labels(self, project_key: str) -> list[Label]:
        return self._metadata("labels", [Label(name="backend")])

    async def fetch_project_components(self, project_key: str) -> list[Component]:
        return self._metadata("components", [Component(name="API")])

    async def fetch_project_versions(self, project_key: str) -> list[FixVersion]:
        return self._metadata("versions", [FixVersion(name="1.0", released=True)])

    async def fetch_fields(self) -> list[JiraField]:
        return list(self.fields)

    async def get_total_issue_count(self, project_key: str) -> int:
        return len(self.raw_issues)

    async def get_issue_count_by_status(self, project_key: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for raw in self.raw_issues:
            name = raw["fields"]["status"]["name"]
            counts[name] = counts.get(name, 0) + 1
        return counts

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def db():
    """Private in-memory mirror database."""
    database = Database()
    yield database
    database.close()


@pytest.fixture
def config(tmp_path):
    """Config pointing at a temporary directory with dummy Jira credentials."""
    return MirrorConfig(
        jira_url="https://example.atlassian.net",
        jira_username="bot@example.com",
        jira_api_token="secret-token",
        db_path=tmp_path / "jira.db",
        sync_projects=[],
        sync_interval_minutes=0,
        page_size=50,
        chunk_size=50,
        snapshots_after_sync=True,
        expand_after_sync=False,
        mark_deleted=True,
        sweep_stale_syncs=True,
        query_limit=100,
        embedding_model="text-embedding-3-small",
        embedding_batch_size=2,
    )


@pytest.fixture
def fake_jira():
    return FakeJira([make_raw_issue(i) for i in range(1, 4)])


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def make_issue():
    """Factory for raw issue payloads, see ``make_raw_issue``."""
    return make_raw_issue


@pytest.fixture
def make_status_change():
    return status_change


@pytest.fixture
def jira_factory():
    """Build a FakeJira from a list of raw issue payloads."""
    return FakeJira
