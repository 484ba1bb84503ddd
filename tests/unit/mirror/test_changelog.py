"""Tests for change-history extraction."""

import json
from datetime import datetime, timezone

from jira_db.mirror.changelog import extract_change_history


def _payload(histories):
    return json.dumps({"id": "10001", "key": "PROJ-1", "changelog": {"histories": histories}})


HISTORIES = [
    {
        "id": "100",
        "created": "2024-01-02T10:00:00.000+0000",
        "author": {"accountId": "u-1", "displayName": "Ada Lovelace"},
        "items": [
            {
                "field": "status",
                "fieldtype": "jira",
                "from": "1",
                "fromString": "To Do",
                "to": "3",
                "toString": "In Progress",
            },
            {
                "field": "assignee",
                "fieldtype": "jira",
                "from": None,
                "fromString": None,
                "to": "u-1",
                "toString": "Ada Lovelace",
            },
        ],
    },
    {
        "id": "101",
        "created": "2024-01-03T15:30:00.000+0000",
        "author": {"accountId": "u-2", "displayName": "Grace Hopper"},
        "items": [
            {"field": "status", "fromString": "In Progress", "toString": "Done"},
        ],
    },
]


class TestExtractChangeHistory:
    def test_one_record_per_item(self):
        records = extract_change_history("10001", "PROJ-1", _payload(HISTORIES))

        assert [(r.field, r.from_string, r.to_string) for r in records] == [
            ("status", "To Do", "In Progress"),
            ("assignee", None, "Ada Lovelace"),
            ("status", "In Progress", "Done"),
        ]
        first = records[0]
        assert first.issue_id == "10001"
        assert first.issue_key == "PROJ-1"
        assert first.history_id == "100"
        assert first.author_account_id == "u-1"
        assert first.author_display_name == "Ada Lovelace"
        assert first.field_type == "jira"
        assert first.from_value == "1"
        assert first.to_value == "3"
        assert first.changed_at == datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)

    def test_deterministic(self):
        payload = _payload(HISTORIES)
        first = extract_change_history("10001", "PROJ-1", payload)
        second = extract_change_history("10001", "PROJ-1", payload)
        assert first == second

    def test_accepts_decoded_mapping(self):
        records = extract_change_history(
            "10001", "PROJ-1", {"changelog": {"histories": HISTORIES}}
        )
        assert len(records) == 3

    def test_no_changelog(self):
        assert extract_change_history("10001", "PROJ-1", json.dumps({"id": "10001"})) == []
        assert extract_change_history("10001", "PROJ-1", None) == []
        assert extract_change_history("10001", "PROJ-1", "") == []

    def test_malformed_json(self):
        assert extract_change_history("10001", "PROJ-1", "{not json") == []
        assert extract_change_history("10001", "PROJ-1", json.dumps([1, 2])) == []

    def test_items_without_field_are_skipped(self):
        histories = [
            {
                "id": "1",
                "created": "2024-01-02T10:00:00.000+0000",
                "items": [{"fromString": "a", "toString": "b"}, {"field": "labels", "toString": "x"}],
            }
        ]
        records = extract_change_history("10001", "PROJ-1", _payload(histories))
        assert [r.field for r in records] == ["labels"]

    def test_missing_author(self):
        histories = [
            {
                "id": "1",
                "created": "2024-01-02T10:00:00.000+0000",
                "items": [{"field": "summary", "fromString": "Old", "toString": "New"}],
            }
        ]
        (record,) = extract_change_history("10001", "PROJ-1", _payload(histories))
        assert record.author_account_id is None
        assert record.author_display_name is None

    def test_unparsable_timestamp_falls_back_to_now(self):
        histories = [
            {"id": "1", "created": "yesterday", "items": [{"field": "summary", "toString": "New"}]}
        ]
        before = datetime.now(timezone.utc)
        (record,) = extract_change_history("10001", "PROJ-1", _payload(histories))
        assert record.changed_at >= before

    def test_structured_values_are_serialized(self):
        histories = [
            {
                "id": "1",
                "created": "2024-01-02T10:00:00.000+0000",
                "items": [{"field": "Sprint", "from": [1, 2], "to": {"id": 3}}],
            }
        ]
        (record,) = extract_change_history("10001", "PROJ-1", _payload(histories))
        assert record.from_value == "[1, 2]"
        assert record.to_value == '{"id": 3}'
