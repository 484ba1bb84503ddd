"""Tests for the web API routes."""

import pytest
from fastapi.testclient import TestClient

from jira_db.mirror.context import AppState
from jira_db.web.server import create_app


@pytest.fixture
def state(config, db, fake_jira):
    return AppState(config=config, db=db, jira=fake_jira)


@pytest.fixture
def client(state):
    with TestClient(create_app(state, start_scheduler=False)) as test_client:
        yield test_client


@pytest.fixture
def synced_client(client):
    response = client.post("/api/sync", json={"projects": ["proj"], "full": True})
    assert response.status_code == 200
    assert response.json()["success"]
    return client


class TestHealth:
    def test_health_empty(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "projects": [], "issues": 0}

    def test_health_after_sync(self, synced_client):
        data = synced_client.get("/api/health").json()
        assert data["issues"] == 3


class TestProjects:
    def test_list_projects(self, synced_client):
        (project,) = synced_client.get("/api/projects").json()["projects"]
        assert project["key"] == "PROJ"
        assert project["issue_count"] == 3
        assert project["sync_enabled"] is False

    def test_enable_sync(self, client):
        response = client.put("/api/projects/proj/sync-enabled", json={"enabled": True})
        assert response.status_code == 200
        assert response.json() == {"project_key": "PROJ", "sync_enabled": True}
        assert client.get("/api/health").json()["projects"] == ["PROJ"]

    def test_enable_sync_unknown_project(self, client):
        response = client.put("/api/projects/NOPE/sync-enabled", json={"enabled": True})
        assert response.status_code == 404

    def test_metadata(self, synced_client):
        data = synced_client.get("/api/projects/PROJ/metadata").json()
        assert [s["name"] for s in data["statuses"]] == ["Done", "To Do"]
        assert data["labels"] == [{"name": "backend"}]


class TestIssues:
    def test_search(self, synced_client):
        data = synced_client.get("/api/issues", params={"project": "PROJ", "limit": 2}).json()
        assert data["count"] == 2
        assert "raw_json" not in data["issues"][0]

    def test_search_unknown_project(self, synced_client):
        assert synced_client.get("/api/issues", params={"project": "NOPE"}).status_code == 404

    def test_get_issue(self, synced_client):
        data = synced_client.get("/api/issues/proj-2").json()
        assert data["key"] == "PROJ-2"
        assert data["summary"] == "Issue 2"
        assert "raw_json" not in data

    def test_get_missing_issue(self, synced_client):
        response = synced_client.get("/api/issues/PROJ-999")
        assert response.status_code == 404
        assert "PROJ-999" in response.json()["detail"]

    def test_history_empty(self, synced_client):
        data = synced_client.get("/api/issues/PROJ-1/history").json()
        assert data == {"issue_key": "PROJ-1", "history": [], "count": 0}

    def test_snapshots(self, synced_client):
        data = synced_client.get("/api/issues/PROJ-1/snapshots").json()
        (snapshot,) = data["snapshots"]
        assert snapshot["version"] == 1
        assert snapshot["valid_to"] is None
        assert "raw_data" not in snapshot

    def test_snapshot_at(self, synced_client):
        data = synced_client.get(
            "/api/issues/PROJ-1/snapshots", params={"at": "2024-06-01T00:00:00Z"}
        ).json()
        assert len(data["snapshots"]) == 1

    def test_snapshot_invalid_timestamp(self, synced_client):
        response = synced_client.get("/api/issues/PROJ-1/snapshots", params={"at": "yesterday"})
        assert response.status_code == 400


class TestQuery:
    def test_select(self, synced_client):
        response = synced_client.post(
            "/api/sql", json={"query": "SELECT key FROM issues ORDER BY key"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["columns"] == ["key"]
        assert [row[0] for row in data["rows"]] == ["PROJ-1", "PROJ-2", "PROJ-3"]

    def test_mutation_rejected(self, synced_client):
        response = synced_client.post("/api/sql", json={"query": "DELETE FROM issues"})
        assert response.status_code == 400
        assert synced_client.get("/api/health").json()["issues"] == 3

    def test_insert_disguised_as_select_rejected(self, synced_client):
        response = synced_client.post(
            "/api/sql", json={"query": "SELECT 1; INSERT INTO issues (id) VALUES ('x')"}
        )
        assert response.status_code == 400

    def test_schema(self, client):
        tables = client.get("/api/sql/schema").json()["tables"]
        assert {"issues", "issue_change_history", "issue_snapshots"} <= set(tables)
        assert {"name": "key", "type": "TEXT"} in tables["issues"]

    def test_semantic_search_requires_query(self, client):
        response = client.post("/api/search/semantic", json={"query": "   "})
        assert response.status_code == 400


class TestSync:
    def test_sync_result(self, client):
        data = client.post("/api/sync", json={"projects": ["PROJ"], "full": True}).json()
        (result,) = data["results"]
        assert result["issues_synced"] == 3
        assert result["sync_type"] == "full"
        assert result["snapshots_generated"] == 3

    def test_sync_unknown_project_is_reported(self, client):
        data = client.post("/api/sync", json={"projects": ["NOPE"]}).json()
        assert data["success"] is False
        assert data["results"][0]["error_message"]

    def test_status(self, synced_client):
        data = synced_client.get("/api/sync/status").json()
        assert data["scheduler"] == {"enabled": False}
        assert data["projects"][0]["latest_run"]["status"] == "completed"

    def test_history(self, synced_client):
        runs = synced_client.get("/api/sync/history/PROJ").json()["runs"]
        assert [r["status"] for r in runs] == ["completed"]

    def test_trigger_without_scheduler(self, client):
        assert client.post("/api/sync/trigger").status_code == 503

    def test_verify(self, synced_client):
        data = synced_client.get("/api/sync/verify/PROJ").json()
        assert data["matches"] is True

    def test_generate_snapshots(self, synced_client):
        data = synced_client.post("/api/sync/snapshots/PROJ", params={"resume": False}).json()
        assert data["issues_processed"] == 3
        assert data["snapshots_generated"] == 3


class TestReportsAndAdmin:
    def test_report(self, synced_client):
        data = synced_client.get("/api/reports", params={"projects": "proj"}).json()
        assert data["total_issues"] == 3
        assert data["projects"][0]["status_counts"] == {"To Do": 3}

    def test_report_unknown_project(self, client):
        assert client.get("/api/reports", params={"projects": "NOPE"}).status_code == 404

    def test_config_redacts_token(self, client):
        data = client.get("/api/admin/config").json()
        assert data["jira_api_token"] == "***"
        assert data["jira_username"] == "bot@example.com"
        assert data["embedding_provider"] == "openai"

    def test_system(self, synced_client):
        data = synced_client.get("/api/admin/system").json()
        assert data["database"]["project_counts"] == {"PROJ": 3}
        assert data["sync"]["enabled"] is False

    def test_sweep(self, state, client):
        sync_id = state.sync_history.insert("10000", "full")
        state.db.execute(
            "UPDATE sync_history SET owner = ?, heartbeat_at = ? WHERE id = ?",
            ("build-host:4242", "2020-01-01T00:00:00+00:00", sync_id),
        )
        assert client.post("/api/admin/db/sweep").json() == {"swept": 1}

    def test_checkpoint(self, client):
        assert client.post("/api/admin/db/checkpoint").json()["success"] is True


def test_shutdown_closes_jira_client(state, fake_jira):
    with TestClient(create_app(state, start_scheduler=False)):
        pass
    assert fake_jira.closed
