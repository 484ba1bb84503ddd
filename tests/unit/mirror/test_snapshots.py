"""Tests for point-in-time snapshot reconstruction."""

from datetime import datetime, timedelta, timezone

import pytest

from jira_db.mirror.repositories import (
    SqliteChangeHistoryRepository,
    SqliteIssueRepository,
    SqliteSnapshotRepository,
)
from jira_db.mirror.schemas import ChangeHistoryItem, Issue
from jira_db.mirror.snapshots import SnapshotGenerator, build_snapshots

CREATED = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
T1 = datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 3, 11, 0, tzinfo=timezone.utc)


def _issue(**overrides) -> Issue:
    values = {
        "id": "10001",
        "project_id": "10000",
        "key": "PROJ-1",
        "summary": "Fix login",
        "status": "Done",
        "priority": "High",
        "assignee": "Ada Lovelace",
        "issue_type": "Bug",
        "labels": ["auth"],
        "created_date": CREATED,
        "updated_date": T2,
        "raw_json": '{"id": "10001"}',
    }
    values.update(overrides)
    return Issue(**values)


def _change(field, from_string, to_string, at) -> ChangeHistoryItem:
    return ChangeHistoryItem(
        issue_id="10001",
        issue_key="PROJ-1",
        field=field,
        from_string=from_string,
        to_string=to_string,
        changed_at=at,
    )


HISTORY = [
    _change("status", "To Do", "In Progress", T1),
    _change("assignee", None, "Ada Lovelace", T1),
    _change("status", "In Progress", "Done", T2),
    _change("priority", "Medium", "High", T2),
]


class TestBuildSnapshots:
    def test_no_history_gives_single_current_version(self):
        (snapshot,) = build_snapshots(_issue(), [])
        assert snapshot.version == 1
        assert snapshot.valid_from == CREATED
        assert snapshot.valid_to is None
        assert snapshot.status == "Done"
        assert snapshot.raw_data == '{"id": "10001"}'

    def test_k_timestamps_give_k_plus_one_versions(self):
        snapshots = build_snapshots(_issue(), HISTORY)
        assert [s.version for s in snapshots] == [1, 2, 3]

    def test_versions_are_contiguous(self):
        snapshots = build_snapshots(_issue(), HISTORY)
        assert snapshots[0].valid_from == CREATED
        for previous, following in zip(snapshots, snapshots[1:]):
            assert previous.valid_to == following.valid_from
        assert [s.valid_from for s in snapshots[1:]] == [T1, T2]

    def test_exactly_one_current_version_carries_raw_data(self):
        snapshots = build_snapshots(_issue(), HISTORY)
        current = [s for s in snapshots if s.valid_to is None]
        assert current == [snapshots[-1]]
        assert current[0].raw_data is not None
        assert all(s.raw_data is None for s in snapshots[:-1])

    def test_field_values_replay(self):
        initial, middle, latest = build_snapshots(_issue(), HISTORY)

        assert (initial.status, initial.assignee, initial.priority) == ("To Do", None, "Medium")
        assert (middle.status, middle.assignee, middle.priority) == (
            "In Progress",
            "Ada Lovelace",
            "Medium",
        )
        assert (latest.status, latest.assignee, latest.priority) == (
            "Done",
            "Ada Lovelace",
            "High",
        )

    def test_history_order_does_not_matter(self):
        forward = build_snapshots(_issue(), HISTORY, now=T2)
        backward = build_snapshots(_issue(), list(reversed(HISTORY)), now=T2)
        assert [(s.version, s.status, s.priority) for s in forward] == [
            (s.version, s.status, s.priority) for s in backward
        ]

    def test_untracked_fields_are_copied_from_issue(self):
        snapshots = build_snapshots(_issue(), HISTORY)
        assert all(s.labels == ["auth"] for s in snapshots)
        assert all(s.issue_type == "Bug" for s in snapshots)


class TestSnapshotGenerator:
    @pytest.fixture
    def repos(self, db):
        return (
            SqliteIssueRepository(db),
            SqliteChangeHistoryRepository(db),
            SqliteSnapshotRepository(db),
        )

    def _seed(self, repos, count=3):
        issues, history, _ = repos
        issues.batch_upsert(
            [
                _issue(id=f"1000{i}", key=f"PROJ-{i}", updated_date=T2 + timedelta(minutes=i))
                for i in range(1, count + 1)
            ]
        )
        history.replace_for_issue(
            "10001",
            [item.model_copy(update={"issue_id": "10001", "issue_key": "PROJ-1"}) for item in HISTORY],
        )

    def test_generates_every_issue(self, repos):
        self._seed(repos)
        generator = SnapshotGenerator(*repos, page_size=2)

        result = generator.execute("PROJ", "10000")

        assert result.issues_processed == 3
        # PROJ-1 has two change timestamps, the others none
        assert result.snapshots_generated == 3 + 1 + 1
        assert result.checkpoint.last_issue_key == "PROJ-3"

    def test_regeneration_is_idempotent(self, repos):
        self._seed(repos)
        generator = SnapshotGenerator(*repos)
        snapshots = repos[2]

        generator.execute("PROJ", "10000")
        first = [(s.version, s.valid_from, s.valid_to, s.status) for s in snapshots.find_by_issue_key("PROJ-1")]
        generator.execute("PROJ", "10000")
        second = [(s.version, s.valid_from, s.valid_to, s.status) for s in snapshots.find_by_issue_key("PROJ-1")]

        assert first == second
        assert snapshots.count_by_project("10000") == 5

    def test_resume_skips_processed_issues(self, repos):
        self._seed(repos)
        checkpoints = []
        SnapshotGenerator(*repos, page_size=1).execute(
            "PROJ", "10000", on_progress=checkpoints.append
        )
        assert [c.last_issue_key for c in checkpoints] == ["PROJ-1", "PROJ-2", "PROJ-3"]

        result = SnapshotGenerator(*repos, page_size=1).execute(
            "PROJ", "10000", checkpoint=checkpoints[0]
        )
        assert result.issues_processed == 3
        assert result.snapshots_generated == 5

    def test_find_at(self, repos):
        self._seed(repos)
        SnapshotGenerator(*repos).execute("PROJ", "10000")
        snapshots = repos[2]

        assert snapshots.find_at("PROJ-1", T1 - timedelta(hours=1)).status == "To Do"
        assert snapshots.find_at("PROJ-1", T1).status == "In Progress"
        assert snapshots.find_at("PROJ-1", T2 + timedelta(days=30)).status == "Done"
        assert snapshots.find_at("PROJ-1", CREATED - timedelta(days=1)) is None
