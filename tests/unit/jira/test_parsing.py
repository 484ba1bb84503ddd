"""Tests for Jira payload parsing."""

import json

from jira_db.jira.parsing import (
    adf_to_text,
    extract_sprint,
    parse_field,
    parse_issue,
    parse_version,
    text_to_adf,
)


def test_parse_issue(make_issue):
    raw = make_issue(
        7,
        status="In Progress",
        extra_fields={
            "labels": ["backend", "urgent"],
            "components": [{"name": "API"}, {"name": "Web"}],
            "fixVersions": [{"name": "1.0"}],
            "resolution": None,
            "parent": {"key": "PROJ-1"},
            "customfield_10020": [{"name": "Sprint 3", "state": "active"}],
        },
    )

    issue = parse_issue(raw)

    assert issue.id == "10007"
    assert issue.key == "PROJ-7"
    assert issue.project_id == "10000"
    assert issue.status == "In Progress"
    assert issue.assignee == "Ada Lovelace"
    assert issue.reporter == "Grace Hopper"
    assert issue.labels == ["backend", "urgent"]
    assert issue.components == ["API", "Web"]
    assert issue.fix_versions == ["1.0"]
    assert issue.resolution is None
    assert issue.parent_key == "PROJ-1"
    assert issue.sprint == "Sprint 3"
    assert issue.updated_date.tzinfo is not None
    assert json.loads(issue.raw_json) == raw


def test_parse_issue_with_empty_fields():
    issue = parse_issue({"id": "1", "key": "X-1", "fields": {}})
    assert issue.summary == ""
    assert issue.status is None
    assert issue.labels is None
    assert issue.updated_date is None


class TestAdf:
    def test_paragraphs_are_joined_by_newlines(self):
        doc = {
            "type": "doc",
            "version": 1,
            "content": [
                {
                    "type": "paragraph",
                    "content": [
                        {"type": "text", "text": "Hello "},
                        {"type": "text", "text": "world", "marks": [{"type": "strong"}]},
                    ],
                },
                {
                    "type": "bulletList",
                    "content": [
                        {
                            "type": "listItem",
                            "content": [
                                {"type": "paragraph", "content": [{"type": "text", "text": "item"}]}
                            ],
                        }
                    ],
                },
            ],
        }
        assert adf_to_text(doc) == "Hello world\nitem"

    def test_plain_values(self):
        assert adf_to_text(None) is None
        assert adf_to_text("already text") == "already text"
        assert adf_to_text({"type": "doc", "content": []}) is None

    def test_text_to_adf(self):
        doc = text_to_adf("first\n\nsecond")
        assert doc["type"] == "doc"
        assert adf_to_text(doc) == "first\nsecond"


class TestExtractSprint:
    def test_prefers_last_active_or_closed(self):
        fields = {
            "customfield_10020": [
                {"name": "Sprint 1", "state": "closed"},
                {"name": "Sprint 2", "state": "active"},
                {"name": "Sprint 3", "state": "future"},
            ]
        }
        assert extract_sprint(fields) == "Sprint 2"

    def test_falls_back_to_future_sprint(self):
        fields = {"customfield_10020": [{"name": "Sprint 9", "state": "future"}]}
        assert extract_sprint(fields) == "Sprint 9"

    def test_legacy_string_format(self):
        fields = {
            "customfield_10104": [
                "com.atlassian.greenhopper.service.sprint.Sprint@1a2b[id=5,rapidViewId=1,"
                "state=CLOSED,name=Sprint 5,startDate=2024-01-01]"
            ]
        }
        assert extract_sprint(fields) == "Sprint 5"

    def test_no_sprint(self):
        assert extract_sprint({"customfield_10020": None}) is None
        assert extract_sprint({}) is None


def test_parse_field():
    field = parse_field(
        {
            "id": "customfield_10016",
            "key": "customfield_10016",
            "name": "Story Points",
            "custom": True,
            "navigable": True,
            "schema": {
                "type": "number",
                "custom": "com.atlassian.jira.plugin.system.customfieldtypes:float",
                "customId": 10016,
            },
        }
    )
    assert field.custom
    assert field.schema_type == "number"
    assert field.schema_custom_id == 10016


def test_parse_version():
    version = parse_version({"name": "2.0", "released": True, "releaseDate": "2024-03-01"})
    assert version.released
    assert version.release_date.isoformat() == "2024-03-01"
