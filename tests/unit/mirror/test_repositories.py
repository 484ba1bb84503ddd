"""Tests for the database handle and the SQLite repositories."""

import pytest

from jira_db.exceptions import RepositoryError
from jira_db.jira.parsing import parse_issue
from jira_db.mirror.database import Database, quote_identifier
from jira_db.mirror.repositories import (
    SqliteIssueRepository,
    SqliteProjectRepository,
)
from jira_db.mirror.schemas import Project


class TestDatabase:
    def test_nested_transaction_rolls_back_together(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.execute("INSERT INTO labels (project_id, name) VALUES ('1', 'outer')")
                with db.transaction():
                    db.execute("INSERT INTO labels (project_id, name) VALUES ('1', 'inner')")
                raise RuntimeError("abort")

        assert db.fetchall("SELECT * FROM labels") == []

    def test_transaction_commits(self, db):
        with db.transaction():
            db.execute("INSERT INTO labels (project_id, name) VALUES ('1', 'kept')")
        assert [r["name"] for r in db.fetchall("SELECT name FROM labels")] == ["kept"]

    def test_query_errors_are_wrapped(self, db):
        with pytest.raises(RepositoryError):
            db.fetchall("SELECT * FROM no_such_table")

    def test_add_column_if_not_exists(self, db):
        assert db.add_column_if_not_exists("issues_expanded", "cf_story_points", "REAL")
        assert not db.add_column_if_not_exists("issues_expanded", "cf_story_points", "REAL")
        assert "cf_story_points" in db.table_columns("issues_expanded")

    def test_quote_identifier(self):
        assert quote_identifier("cf_customfield_10016") == '"cf_customfield_10016"'
        with pytest.raises(RepositoryError):
            quote_identifier('x"; DROP TABLE issues; --')

    def test_file_database_persists(self, tmp_path):
        path = tmp_path / "nested" / "jira.db"
        first = Database(path)
        SqliteProjectRepository(first).upsert([Project(id="1", key="A", name="Alpha")])
        first.close()

        second = Database(path)
        try:
            assert SqliteProjectRepository(second).find_by_key("A").name == "Alpha"
        finally:
            second.close()

    def test_close_is_idempotent(self):
        database = Database()
        database.fetchone("SELECT 1")
        database.close()
        database.close()


class TestProjectRepository:
    def test_upsert_keeps_local_flags(self, db):
        repo = SqliteProjectRepository(db)
        repo.upsert([Project(id="1", key="PROJ", name="Old")])
        repo.set_sync_enabled("PROJ", True)

        repo.upsert([Project(id="1", key="PROJ", name="New")])

        project = repo.find_by_key("PROJ")
        assert project.name == "New"
        assert project.sync_enabled
        assert [p.key for p in repo.find_enabled()] == ["PROJ"]

    def test_set_sync_enabled_unknown(self, db):
        assert not SqliteProjectRepository(db).set_sync_enabled("NOPE", True)


class TestIssueRepository:
    @pytest.fixture
    def repo(self, db, make_issue):
        repo = SqliteIssueRepository(db)
        repo.batch_upsert(
            [
                parse_issue(make_issue(1, status="Done")),
                parse_issue(make_issue(2, extra_fields={"summary": "Login fails"})),
                parse_issue(make_issue(3, extra_fields={"labels": ["a", "b"]})),
            ]
        )
        return repo

    def test_round_trip(self, repo):
        issue = repo.find_by_key("PROJ-3")
        assert issue.labels == ["a", "b"]
        assert issue.updated_date.tzinfo is not None
        assert issue.raw_json is not None

    def test_upsert_updates_in_place(self, repo, db, make_issue):
        repo.batch_upsert([parse_issue(make_issue(1, status="Reopened"))])
        assert repo.find_by_key("PROJ-1").status == "Reopened"
        assert repo.count_by_project("10000") == 3

    def test_search(self, repo):
        assert [i.key for i in repo.search(query="login")] == ["PROJ-2"]
        assert [i.key for i in repo.search(query="proj-1")] == ["PROJ-1"]
        assert [i.key for i in repo.search(status="Done")] == ["PROJ-1"]
        assert [i.key for i in repo.search(limit=2)] == ["PROJ-3", "PROJ-2"]

    def test_count_by_status(self, repo):
        assert repo.count_by_status("10000") == {"To Do": 2, "Done": 1}

    def test_mark_deleted_and_revive(self, repo, make_issue):
        assert repo.mark_deleted_not_in_keys("10000", {"PROJ-1", "PROJ-2"}) == 1
        assert repo.find_by_key("PROJ-3").is_deleted
        assert [i.key for i in repo.find_by_project("10000")] == ["PROJ-1", "PROJ-2"]
        assert repo.search(query="PROJ-3") == []

        repo.batch_upsert([parse_issue(make_issue(3))])
        assert not repo.find_by_key("PROJ-3").is_deleted
