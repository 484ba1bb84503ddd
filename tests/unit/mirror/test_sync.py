"""Tests for the sync engine."""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest

from jira_db.jira.client import JiraClient
from jira_db.mirror.repositories import SqliteIssueRepository, SqliteSyncHistoryRepository
from jira_db.mirror.snapshots import SnapshotCheckpoint
from jira_db.mirror.sync import (
    ProjectSyncState,
    SyncCheckpoint,
    SyncEngine,
    SyncResult,
    SyncState,
)


class TestSyncState:
    """Tests for SyncState class."""

    def test_default_state(self):
        state = SyncState()
        assert state.projects == {}
        pstate = state.for_project("PROJ")
        assert pstate.watermark is None
        assert pstate.checkpoint is None
        assert "PROJ" in state.projects

    def test_save_and_load(self, tmp_path):
        state_path = tmp_path / "sync_state.json"
        watermark = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        state = SyncState(
            projects={
                "PROJ": ProjectSyncState(
                    watermark=watermark,
                    boundary_keys=["PROJ-7"],
                    last_completed_at=watermark + timedelta(minutes=5),
                    checkpoint=SyncCheckpoint(
                        last_issue_updated_at=watermark,
                        last_issue_key="PROJ-7",
                        items_processed=70,
                        total_items=120,
                        boundary_keys=["PROJ-7"],
                    ),
                    snapshot_checkpoint=SnapshotCheckpoint(
                        last_issue_id="10007",
                        last_issue_key="PROJ-7",
                        issues_processed=7,
                        total_issues=120,
                        snapshots_generated=9,
                    ),
                )
            }
        )
        state.save(state_path)

        loaded = SyncState.load(state_path)
        pstate = loaded.projects["PROJ"]
        assert pstate.watermark == watermark
        assert pstate.boundary_keys == ["PROJ-7"]
        assert pstate.checkpoint.last_issue_key == "PROJ-7"
        assert pstate.checkpoint.last_issue_updated_at == watermark
        assert pstate.checkpoint.items_processed == 70
        assert pstate.snapshot_checkpoint.snapshots_generated == 9

    def test_load_missing_file(self, tmp_path):
        state = SyncState.load(tmp_path / "nonexistent.json")
        assert state.projects == {}

    def test_load_corrupted_file(self, tmp_path):
        state_path = tmp_path / "corrupted.json"
        state_path.write_text("not valid json")
        assert SyncState.load(state_path).projects == {}

    def test_save_creates_directory(self, tmp_path):
        state_path = tmp_path / "nested" / "dir" / "state.json"
        SyncState().save(state_path)
        assert state_path.exists()


class TestSyncResult:
    def test_partial(self):
        result = SyncResult(project_key="PROJ")
        assert not result.partial
        result.metadata_errors.append("labels failed")
        assert result.partial
        result.success = False
        assert not result.partial

    def test_to_dict(self):
        result = SyncResult(project_key="PROJ", issues_synced=3, duration_seconds=1.234)
        data = result.to_dict()
        assert data["project_key"] == "PROJ"
        assert data["issues_synced"] == 3
        assert data["duration_seconds"] == 1.23
        assert "synced_issue_ids" not in data


class TestSyncEngine:
    """Tests for SyncEngine against an in-memory database and fake Jira."""

    @pytest.fixture
    def jira(self, jira_factory, make_issue):
        return jira_factory([make_issue(i) for i in range(1, 121)])

    @pytest.fixture
    def engine(self, jira, db, config):
        return SyncEngine(jira, db, config)

    def _issue_count(self, db) -> int:
        return db.fetchone("SELECT COUNT(*) AS n FROM issues")["n"]

    @pytest.mark.asyncio
    async def test_full_sync_pages_through_all_issues(self, engine, jira, db):
        with patch.object(
            SqliteIssueRepository,
            "batch_upsert",
            autospec=True,
            side_effect=SqliteIssueRepository.batch_upsert,
        ) as upsert:
            result = await engine.sync_project("PROJ", full=True)

        assert result.success
        assert result.sync_type == "full"
        assert result.issues_synced == 120
        assert jira.search_calls == 3
        assert [len(call.args[1]) for call in upsert.call_args_list] == [50, 50, 20]
        assert self._issue_count(db) == 120

        run = SqliteSyncHistoryRepository(db).find_latest_by_project("10000")
        assert run.status == "completed"
        assert run.items_synced == 120
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_full_sync_stores_metadata_and_snapshots(self, engine, db):
        result = await engine.sync_project("PROJ", full=True)

        metadata = engine.metadata.find_project_metadata("10000")
        assert [s.name for s in metadata.statuses] == ["Done", "To Do"]
        assert [c.name for c in metadata.components] == ["API"]
        assert result.snapshots_generated == 120
        assert engine.snapshots.count_by_project("10000") == 120

    @pytest.mark.asyncio
    async def test_change_history_is_derived(
        self, jira, engine, make_issue, make_status_change, base_time
    ):
        jira.raw_issues[0] = make_issue(
            1,
            status="Done",
            histories=[
                make_status_change("1", base_time - timedelta(hours=2), "To Do", "In Progress"),
                make_status_change("2", base_time - timedelta(hours=1), "In Progress", "Done"),
            ],
        )

        result = await engine.sync_project("PROJ", full=True)

        assert result.history_items_synced == 2
        history = engine.change_history.find_by_issue_key("PROJ-1")
        assert [h.to_string for h in history] == ["Done", "In Progress"]
        snapshots = engine.snapshots.find_by_issue_key("PROJ-1")
        assert [s.status for s in snapshots] == ["To Do", "In Progress", "Done"]

    @pytest.mark.asyncio
    async def test_resume_after_failure_does_not_duplicate(self, engine, jira, db, config):
        jira.fail_on_call = 3

        failed = await engine.sync_project("PROJ", full=True)

        assert not failed.success
        assert "503" in failed.error_message
        assert self._issue_count(db) == 100
        run = SqliteSyncHistoryRepository(db).find_latest_by_project("10000")
        assert run.status == "failed"
        checkpoint = SyncState.load(config.state_path).projects["PROJ"].checkpoint
        assert checkpoint.last_issue_key == "PROJ-100"
        assert checkpoint.items_processed == 100

        jira.fail_on_call = None
        resumed = await engine.sync_project("PROJ")

        assert resumed.success
        assert resumed.sync_type == "incremental"
        assert resumed.issues_synced == 20
        assert self._issue_count(db) == 120
        duplicates = db.fetchall("SELECT key FROM issues GROUP BY key HAVING COUNT(*) > 1")
        assert duplicates == []
        pstate = SyncState.load(config.state_path).projects["PROJ"]
        assert pstate.checkpoint is None
        assert pstate.boundary_keys == ["PROJ-120"]

    @pytest.mark.asyncio
    async def test_incremental_sync_only_picks_up_new_changes(
        self, engine, jira, make_issue, base_time
    ):
        await engine.sync_project("PROJ", full=True)

        jira.raw_issues[4] = make_issue(
            5, updated=base_time + timedelta(days=1), status="Done"
        )
        result = await engine.sync_project("PROJ")

        assert result.success
        assert result.sync_type == "incremental"
        assert result.issues_synced == 1
        assert engine.issues.find_by_key("PROJ-5").status == "Done"

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, engine, db):
        await engine.sync_project("PROJ", full=True)
        counts = [
            db.fetchone(f"SELECT COUNT(*) AS n FROM {table}")["n"]
            for table in ("issues", "issue_change_history", "issue_snapshots")
        ]

        await engine.sync_project("PROJ", full=True)

        assert counts == [
            db.fetchone(f"SELECT COUNT(*) AS n FROM {table}")["n"]
            for table in ("issues", "issue_change_history", "issue_snapshots")
        ]

    @pytest.mark.asyncio
    async def test_full_sync_marks_missing_issues_deleted(self, engine, jira):
        await engine.sync_project("PROJ", full=True)
        jira.raw_issues = jira.raw_issues[:-1]

        result = await engine.sync_project("PROJ", full=True)

        assert result.issues_deleted == 1
        assert engine.issues.find_by_key("PROJ-120").is_deleted
        assert engine.issues.count_by_project("10000") == 119

    @pytest.mark.asyncio
    async def test_metadata_failures_are_best_effort(self, engine, jira):
        jira.failing_metadata = {"labels", "versions"}

        result = await engine.sync_project("PROJ", full=True)

        assert result.success
        assert result.partial
        assert len(result.metadata_errors) == 2
        assert engine.metadata.find_project_metadata("10000").components

    @pytest.mark.asyncio
    async def test_non_json_metadata_category_is_skipped(self, engine, jira, config):
        client = JiraClient(
            config,
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, text="<html>login</html>")
            ),
        )
        jira.fetch_priorities = client.fetch_priorities
        try:
            result = await engine.sync_project("PROJ", full=True)
        finally:
            await client.aclose()

        assert result.success
        assert result.partial
        (error,) = result.metadata_errors
        assert "priorities" in error
        assert engine.sync_history.find_latest_by_project("10000").status == "completed"

    @pytest.mark.asyncio
    async def test_malformed_metadata_payload_is_skipped(self, engine, jira):
        async def broken_components(project_key):
            return [component.get("name") for component in "not-a-list-of-dicts"]

        jira.fetch_project_components = broken_components

        result = await engine.sync_project("PROJ", full=True)

        assert result.success
        assert result.partial
        assert "components" in result.metadata_errors[0]

    @pytest.mark.asyncio
    async def test_issue_without_raw_json_is_stored_without_history(
        self, engine, jira, db, caplog
    ):
        fetch = jira.fetch_project_issues_batch

        async def without_raw_json(*args, **kwargs):
            batch = await fetch(*args, **kwargs)
            batch.issues = [
                issue.model_copy(update={"raw_json": None}) if issue.key == "PROJ-1" else issue
                for issue in batch.issues
            ]
            return batch

        jira.fetch_project_issues_batch = without_raw_json

        with caplog.at_level(logging.WARNING, logger="jira_db.mirror.sync"):
            result = await engine.project_sync.execute("PROJ", "10000")

        assert result.success
        assert result.issues_synced == 120
        issue = engine.issues.find_by_key("PROJ-1")
        assert issue is not None
        assert issue.raw_json is None
        assert engine.change_history.find_by_issue_id(issue.id) == []
        assert "No raw JSON for PROJ-1" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_project_is_reported(self, engine):
        (result,) = await engine.sync_projects(["NOPE"])
        assert not result.success
        assert "NOPE" in result.error_message

    @pytest.mark.asyncio
    async def test_sync_projects_defaults_to_enabled(self, engine):
        await engine.sync_project_list()
        assert await engine.sync_projects() == []

        engine.projects.set_sync_enabled("PROJ", True)
        (result,) = await engine.sync_projects()
        assert result.project_key == "PROJ"
        assert result.success

    @pytest.mark.asyncio
    async def test_verify_project(self, engine):
        await engine.sync_project("PROJ", full=True)

        report = await engine.verify_project("PROJ")

        assert report["matches"]
        assert report["remote_total"] == report["local_total"] == 120
        assert report["by_status"] == [{"status": "To Do", "remote": 120, "local": 120}]

    @pytest.mark.asyncio
    async def test_sync_status(self, engine):
        await engine.sync_project("PROJ", full=True)

        status = engine.get_sync_status()

        (project,) = status["projects"]
        assert project["project_key"] == "PROJ"
        assert project["issues"] == 120
        assert project["latest_run"]["status"] == "completed"
        assert project["watermark"] is not None


def _hand_over(db, sync_id, owner, heartbeat_at):
    db.execute(
        "UPDATE sync_history SET owner = ?, heartbeat_at = ? WHERE id = ?",
        (owner, heartbeat_at.isoformat(), sync_id),
    )


def test_runs_of_dead_local_processes_are_swept(db):
    history = SqliteSyncHistoryRepository(db)
    sync_id = history.insert("10000", "full")

    with patch("jira_db.mirror.repositories._pid_alive", return_value=False):
        assert history.mark_stale_running_failed() == 1

    run = history.find_by_id(sync_id)
    assert run.status == "failed"
    assert "Interrupted" in run.error_message
    # status moves out of running only once
    history.update_completed(sync_id, 10)
    assert history.find_by_id(sync_id).status == "failed"


def test_runs_of_live_local_processes_are_kept(db):
    history = SqliteSyncHistoryRepository(db)
    sync_id = history.insert("10000", "full")

    assert history.mark_stale_running_failed() == 0
    history.update_completed(sync_id, 10)
    assert history.find_by_id(sync_id).status == "completed"


def test_remote_runs_are_swept_only_once_heartbeat_is_stale(db):
    history = SqliteSyncHistoryRepository(db)
    now = datetime.now(timezone.utc)
    fresh = history.insert("10000", "full")
    stale = history.insert("10000", "incremental")
    _hand_over(db, fresh, "build-host:4242", now - timedelta(minutes=5))
    _hand_over(db, stale, "build-host:4243", now - timedelta(hours=2))

    assert history.mark_stale_running_failed() == 1

    assert history.find_by_id(fresh).status == "running"
    assert history.find_by_id(stale).status == "failed"


def test_heartbeat_keeps_remote_run_alive(db):
    history = SqliteSyncHistoryRepository(db)
    sync_id = history.insert("10000", "full")
    _hand_over(db, sync_id, "build-host:4242", datetime.now(timezone.utc) - timedelta(hours=2))

    history.heartbeat(sync_id)

    assert history.mark_stale_running_failed() == 0
    assert history.find_by_id(sync_id).status == "running"
