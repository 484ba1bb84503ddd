"""Tests for MCP response compression."""

from datetime import datetime, timedelta, timezone

import pytest

from jira_db.jira.parsing import parse_issue
from jira_db.mirror.schemas import ChangeHistoryItem, Project
from jira_db.servers.formatting import ResponseFormatter

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestRelativeTimestamp:
    @pytest.mark.parametrize(
        "delta,expected",
        [
            (timedelta(seconds=30), "just now"),
            (timedelta(minutes=5), "5m ago"),
            (timedelta(hours=3), "3h ago"),
            (timedelta(days=2), "2d ago"),
            (timedelta(days=15), "2w ago"),
            (timedelta(days=65), "2mo ago"),
        ],
    )
    def test_buckets(self, delta, expected):
        assert ResponseFormatter._relative_timestamp(NOW - delta, now=NOW) == expected

    def test_accepts_strings(self):
        assert ResponseFormatter._relative_timestamp("2024-03-01T10:00:00Z", now=NOW) == "2h ago"

    def test_missing_and_unparsable(self):
        assert ResponseFormatter._relative_timestamp(None) is None
        assert ResponseFormatter._relative_timestamp("not a date") == "not a date"


def test_truncate():
    assert ResponseFormatter._truncate(None, 10) == ""
    assert ResponseFormatter._truncate("  short  ", 10) == "short"
    assert ResponseFormatter._truncate("one two three four", 10) == "one two..."


def test_compress_issue(make_issue):
    issue = parse_issue(
        make_issue(
            1,
            extra_fields={
                "description": "word " * 100,
                "labels": ["backend"],
                "parent": {"key": "PROJ-100"},
            },
        )
    )

    compressed = ResponseFormatter.compress_issue(issue, max_description_length=50)

    assert compressed["key"] == "PROJ-1"
    assert compressed["labels"] == ["backend"]
    assert compressed["parent"] == "PROJ-100"
    assert compressed["description"].endswith("...")
    assert len(compressed["description"]) <= 53
    assert "raw_json" not in compressed
    assert "deleted" not in compressed


def test_compress_issue_list_omits_descriptions(make_issue):
    issues = [parse_issue(make_issue(i, extra_fields={"description": "text"})) for i in (1, 2)]
    compressed = ResponseFormatter.compress_issue_list(issues)
    assert [c["key"] for c in compressed] == ["PROJ-1", "PROJ-2"]
    assert all("description" not in c for c in compressed)


def test_compress_history_prefers_display_strings():
    item = ChangeHistoryItem(
        issue_id="10001",
        issue_key="PROJ-1",
        history_id="1",
        author_account_id="u-1",
        author_display_name="Ada Lovelace",
        field="status",
        field_type="jira",
        from_value="1",
        from_string="To Do",
        to_value="3",
        to_string=None,
        changed_at=NOW,
    )

    (compressed,) = ResponseFormatter.compress_history([item])

    assert compressed == {
        "field": "status",
        "from": "To Do",
        "to": "3",
        "author": "Ada Lovelace",
        "changed_at": "2024-03-01T12:00:00+00:00",
    }


def test_compress_projects():
    projects = [Project(id="1", key="PROJ", name="Project", sync_enabled=True)]
    assert ResponseFormatter.compress_projects(projects) == [
        {"key": "PROJ", "name": "Project", "sync_enabled": True, "last_synced": None}
    ]
