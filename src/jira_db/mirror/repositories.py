"""Repositories over the mirror database.

Each repository has a Protocol describing what the sync, snapshot and
field pipelines need, plus the SQLite implementation used in practice.
Tests substitute in-memory fakes at the Protocol seam.
"""

from __future__ import annotations

import json
import os
import socket
import sqlite3
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from jira_db.mirror.database import Database, quote_identifier
from jira_db.mirror.schemas import (
    ChangeHistoryItem,
    Component,
    FixVersion,
    Issue,
    IssueSnapshot,
    IssueType,
    JiraField,
    Label,
    Priority,
    Project,
    ProjectMetadata,
    Status,
    SyncHistory,
)
from jira_db.utils.dates import format_timestamp, parse_date, parse_timestamp, utcnow


@dataclass
class IssuePage:
    """One page of issues read from the store."""

    issues: list[Issue] = field(default_factory=list)
    total_count: int = 0
    has_more: bool = False


def _dump_list(values: list[str] | None) -> str | None:
    return json.dumps(values) if values is not None else None


def _load_list(value: str | None) -> list[str] | None:
    if value is None or value == "":
        return None
    loaded = json.loads(value)
    return [str(v) for v in loaded] if isinstance(loaded, list) else None


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class IssueRepository(Protocol):
    def batch_upsert(self, issues: Sequence[Issue]) -> int: ...

    def find_by_project(self, project_id: str) -> list[Issue]: ...

    def find_by_project_after_id(
        self, project_id: str, after_issue_id: str | None, limit: int
    ) -> IssuePage: ...

    def count_by_project(self, project_id: str) -> int: ...

    def count_by_status(self, project_id: str) -> dict[str, int]: ...

    def mark_deleted_not_in_keys(self, project_id: str, keys: set[str]) -> int: ...


class ChangeHistoryRepository(Protocol):
    def replace_for_issue(self, issue_id: str, items: Sequence[ChangeHistoryItem]) -> int: ...

    def find_by_issue_id(self, issue_id: str) -> list[ChangeHistoryItem]: ...


class SnapshotRepository(Protocol):
    def replace_for_issue(self, issue_id: str, snapshots: Sequence[IssueSnapshot]) -> int: ...


class MetadataRepository(Protocol):
    def upsert_statuses(self, project_id: str, statuses: Sequence[Status]) -> int: ...

    def upsert_priorities(self, project_id: str, priorities: Sequence[Priority]) -> int: ...

    def upsert_issue_types(self, project_id: str, issue_types: Sequence[IssueType]) -> int: ...

    def upsert_labels(self, project_id: str, labels: Sequence[Label]) -> int: ...

    def upsert_components(self, project_id: str, components: Sequence[Component]) -> int: ...

    def upsert_fix_versions(self, project_id: str, versions: Sequence[FixVersion]) -> int: ...


class SyncHistoryRepository(Protocol):
    def insert(self, project_id: str, sync_type: str) -> int: ...

    def heartbeat(self, sync_id: int) -> None: ...

    def update_completed(self, sync_id: int, items_synced: int) -> None: ...

    def update_failed(self, sync_id: int, error_message: str) -> None: ...


# ---------------------------------------------------------------------------
# SQLite implementations
# ---------------------------------------------------------------------------


class SqliteProjectRepository:
    """Projects are upserted on project-list sync and never deleted."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert(self, projects: Sequence[Project], raw: dict[str, Any] | None = None) -> int:
        now = format_timestamp(utcnow())
        rows = [
            (
                p.id,
                p.key,
                p.name,
                p.description,
                int(p.sync_enabled),
                json.dumps(raw[p.id]) if raw and p.id in raw else None,
                now,
                now,
            )
            for p in projects
        ]
        if not rows:
            return 0
        # sync_enabled and last_synced_at are local settings and survive re-sync
        self.db.executemany(
            """
            INSERT INTO projects
                (id, key, name, description, sync_enabled, raw_data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                key = excluded.key,
                name = excluded.name,
                description = excluded.description,
                raw_data = COALESCE(excluded.raw_data, projects.raw_data),
                updated_at = excluded.updated_at
            """,
            rows,
        )
        return len(rows)

    def find_all(self) -> list[Project]:
        rows = self.db.fetchall("SELECT * FROM projects ORDER BY key")
        return [self._to_project(row) for row in rows]

    def find_enabled(self) -> list[Project]:
        rows = self.db.fetchall(
            "SELECT * FROM projects WHERE sync_enabled = 1 ORDER BY key"
        )
        return [self._to_project(row) for row in rows]

    def find_by_key(self, key: str) -> Project | None:
        row = self.db.fetchone("SELECT * FROM projects WHERE key = ?", (key,))
        return self._to_project(row) if row else None

    def find_by_id(self, project_id: str) -> Project | None:
        row = self.db.fetchone("SELECT * FROM projects WHERE id = ?", (project_id,))
        return self._to_project(row) if row else None

    def set_sync_enabled(self, key: str, enabled: bool) -> bool:
        count = self.db.execute(
            "UPDATE projects SET sync_enabled = ?, updated_at = ? WHERE key = ?",
            (int(enabled), format_timestamp(utcnow()), key),
        )
        return count > 0

    def mark_synced(self, project_id: str, synced_at: datetime) -> None:
        self.db.execute(
            "UPDATE projects SET last_synced_at = ? WHERE id = ?",
            (format_timestamp(synced_at), project_id),
        )

    @staticmethod
    def _to_project(row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            key=row["key"],
            name=row["name"],
            description=row["description"],
            sync_enabled=bool(row["sync_enabled"]),
            last_synced_at=parse_timestamp(row["last_synced_at"]),
        )


_ISSUE_COLUMNS = (
    "id, project_id, key, summary, description, status, priority, assignee, "
    "reporter, issue_type, resolution, labels, components, fix_versions, sprint, "
    "parent_key, created_date, updated_date, raw_data, is_deleted, synced_at"
)


class SqliteIssueRepository:
    """Issue rows keyed by Jira issue id."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def batch_upsert(self, issues: Sequence[Issue]) -> int:
        """Insert or update issues in one transaction.

        Re-syncing an issue clears its deleted flag.
        """
        if not issues:
            return 0
        now = format_timestamp(utcnow())
        rows = [
            (
                i.id,
                i.project_id,
                i.key,
                i.summary,
                i.description,
                i.status,
                i.priority,
                i.assignee,
                i.reporter,
                i.issue_type,
                i.resolution,
                _dump_list(i.labels),
                _dump_list(i.components),
                _dump_list(i.fix_versions),
                i.sprint,
                i.parent_key,
                format_timestamp(i.created_date),
                format_timestamp(i.updated_date),
                i.raw_json,
                0,
                now,
            )
            for i in issues
        ]
        self.db.executemany(
            f"""
            INSERT INTO issues ({_ISSUE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_id = excluded.project_id,
                key = excluded.key,
                summary = excluded.summary,
                description = excluded.description,
                status = excluded.status,
                priority = excluded.priority,
                assignee = excluded.assignee,
                reporter = excluded.reporter,
                issue_type = excluded.issue_type,
                resolution = excluded.resolution,
                labels = excluded.labels,
                components = excluded.components,
                fix_versions = excluded.fix_versions,
                sprint = excluded.sprint,
                parent_key = excluded.parent_key,
                created_date = excluded.created_date,
                updated_date = excluded.updated_date,
                raw_data = excluded.raw_data,
                is_deleted = 0,
                synced_at = excluded.synced_at
            """,
            rows,
        )
        return len(rows)

    def find_by_id(self, issue_id: str) -> Issue | None:
        row = self.db.fetchone("SELECT * FROM issues WHERE id = ?", (issue_id,))
        return self._to_issue(row) if row else None

    def find_by_key(self, key: str) -> Issue | None:
        row = self.db.fetchone(
            "SELECT * FROM issues WHERE key = ? ORDER BY is_deleted, synced_at DESC",
            (key,),
        )
        return self._to_issue(row) if row else None

    def find_by_project(self, project_id: str) -> list[Issue]:
        rows = self.db.fetchall(
            "SELECT * FROM issues WHERE project_id = ? AND is_deleted = 0 ORDER BY id",
            (project_id,),
        )
        return [self._to_issue(row) for row in rows]

    def find_by_project_paginated(
        self, project_id: str, offset: int, limit: int
    ) -> IssuePage:
        total = self.count_by_project(project_id)
        rows = self.db.fetchall(
            """
            SELECT * FROM issues WHERE project_id = ? AND is_deleted = 0
            ORDER BY id LIMIT ? OFFSET ?
            """,
            (project_id, limit, offset),
        )
        issues = [self._to_issue(row) for row in rows]
        return IssuePage(
            issues=issues,
            total_count=total,
            has_more=offset + len(issues) < total,
        )

    def find_by_project_after_id(
        self, project_id: str, after_issue_id: str | None, limit: int
    ) -> IssuePage:
        """Keyset page of issues ordered by id, starting after ``after_issue_id``."""
        total = self.count_by_project(project_id)
        rows = self.db.fetchall(
            """
            SELECT * FROM issues
            WHERE project_id = ? AND is_deleted = 0 AND id > ?
            ORDER BY id LIMIT ?
            """,
            (project_id, after_issue_id or "", limit + 1),
        )
        issues = [self._to_issue(row) for row in rows[:limit]]
        return IssuePage(issues=issues, total_count=total, has_more=len(rows) > limit)

    def iter_raw(
        self, project_id: str | None = None, page_size: int = 500
    ) -> Iterator[tuple[str, str, str, str]]:
        """Yield (id, project_id, key, raw_data) for issues carrying raw JSON."""
        after = ""
        while True:
            if project_id:
                rows = self.db.fetchall(
                    """
                    SELECT id, project_id, key, raw_data FROM issues
                    WHERE project_id = ? AND id > ? AND raw_data IS NOT NULL
                    ORDER BY id LIMIT ?
                    """,
                    (project_id, after, page_size),
                )
            else:
                rows = self.db.fetchall(
                    """
                    SELECT id, project_id, key, raw_data FROM issues
                    WHERE id > ? AND raw_data IS NOT NULL
                    ORDER BY id LIMIT ?
                    """,
                    (after, page_size),
                )
            if not rows:
                return
            for row in rows:
                yield row["id"], row["project_id"], row["key"], row["raw_data"]
            after = rows[-1]["id"]

    def count_by_project(self, project_id: str) -> int:
        row = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM issues WHERE project_id = ? AND is_deleted = 0",
            (project_id,),
        )
        return int(row["n"]) if row else 0

    def count_by_status(self, project_id: str) -> dict[str, int]:
        rows = self.db.fetchall(
            """
            SELECT status, COUNT(*) AS n FROM issues
            WHERE project_id = ? AND is_deleted = 0 AND status IS NOT NULL
            GROUP BY status ORDER BY n DESC
            """,
            (project_id,),
        )
        return {row["status"]: int(row["n"]) for row in rows}

    def mark_deleted_not_in_keys(self, project_id: str, keys: set[str]) -> int:
        """Flag live issues of a project whose key was not seen remotely."""
        rows = self.db.fetchall(
            "SELECT id, key FROM issues WHERE project_id = ? AND is_deleted = 0",
            (project_id,),
        )
        missing = [(row["id"],) for row in rows if row["key"] not in keys]
        if missing:
            self.db.executemany("UPDATE issues SET is_deleted = 1 WHERE id = ?", missing)
        return len(missing)

    def search(
        self,
        query: str | None = None,
        project_id: str | None = None,
        status: str | None = None,
        assignee: str | None = None,
        issue_type: str | None = None,
        priority: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Issue]:
        """Filter issues with simple equality and text matches."""
        clauses = ["is_deleted = 0"]
        params: list[Any] = []
        if query:
            clauses.append("(summary LIKE ? OR description LIKE ? OR key = ?)")
            like = f"%{query}%"
            params.extend([like, like, query.upper()])
        for column, value in (
            ("project_id", project_id),
            ("status", status),
            ("assignee", assignee),
            ("issue_type", issue_type),
            ("priority", priority),
        ):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        params.extend([limit, offset])
        rows = self.db.fetchall(
            f"""
            SELECT * FROM issues WHERE {' AND '.join(clauses)}
            ORDER BY updated_date DESC LIMIT ? OFFSET ?
            """,
            params,
        )
        return [self._to_issue(row) for row in rows]

    @staticmethod
    def _to_issue(row: sqlite3.Row) -> Issue:
        return Issue(
            id=row["id"],
            project_id=row["project_id"],
            key=row["key"],
            summary=row["summary"],
            description=row["description"],
            status=row["status"],
            priority=row["priority"],
            assignee=row["assignee"],
            reporter=row["reporter"],
            issue_type=row["issue_type"],
            resolution=row["resolution"],
            labels=_load_list(row["labels"]),
            components=_load_list(row["components"]),
            fix_versions=_load_list(row["fix_versions"]),
            sprint=row["sprint"],
            parent_key=row["parent_key"],
            created_date=parse_timestamp(row["created_date"]),
            updated_date=parse_timestamp(row["updated_date"]),
            raw_json=row["raw_data"],
            is_deleted=bool(row["is_deleted"]),
        )


class SqliteChangeHistoryRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def delete_by_issue_id(self, issue_id: str) -> int:
        return self.db.execute(
            "DELETE FROM issue_change_history WHERE issue_id = ?", (issue_id,)
        )

    def batch_insert(self, items: Sequence[ChangeHistoryItem]) -> int:
        if not items:
            return 0
        now = format_timestamp(utcnow())
        self.db.executemany(
            """
            INSERT INTO issue_change_history (
                issue_id, issue_key, history_id, author_account_id,
                author_display_name, field, field_type, from_value, from_string,
                to_value, to_string, changed_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    item.issue_id,
                    item.issue_key,
                    item.history_id,
                    item.author_account_id,
                    item.author_display_name,
                    item.field,
                    item.field_type,
                    item.from_value,
                    item.from_string,
                    item.to_value,
                    item.to_string,
                    format_timestamp(item.changed_at),
                    now,
                )
                for item in items
            ],
        )
        return len(items)

    def replace_for_issue(self, issue_id: str, items: Sequence[ChangeHistoryItem]) -> int:
        """Delete and re-insert an issue's history as one transaction."""
        with self.db.transaction():
            self.delete_by_issue_id(issue_id)
            return self.batch_insert(items)

    def find_by_issue_id(self, issue_id: str) -> list[ChangeHistoryItem]:
        """History of one issue, oldest first."""
        rows = self.db.fetchall(
            "SELECT * FROM issue_change_history WHERE issue_id = ? ORDER BY changed_at, id",
            (issue_id,),
        )
        return [self._to_item(row) for row in rows]

    def find_by_issue_key(
        self, issue_key: str, field: str | None = None, limit: int | None = None
    ) -> list[ChangeHistoryItem]:
        """History of one issue for display, most recent first."""
        sql = "SELECT * FROM issue_change_history WHERE issue_key = ?"
        params: list[Any] = [issue_key]
        if field:
            sql += " AND lower(field) = lower(?)"
            params.append(field)
        sql += " ORDER BY changed_at DESC, id DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._to_item(row) for row in self.db.fetchall(sql, params)]

    def count_by_issue_id(self, issue_id: str) -> int:
        row = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM issue_change_history WHERE issue_id = ?",
            (issue_id,),
        )
        return int(row["n"]) if row else 0

    @staticmethod
    def _to_item(row: sqlite3.Row) -> ChangeHistoryItem:
        return ChangeHistoryItem(
            issue_id=row["issue_id"],
            issue_key=row["issue_key"],
            history_id=row["history_id"],
            author_account_id=row["author_account_id"],
            author_display_name=row["author_display_name"],
            field=row["field"],
            field_type=row["field_type"],
            from_value=row["from_value"],
            from_string=row["from_string"],
            to_value=row["to_value"],
            to_string=row["to_string"],
            changed_at=parse_timestamp(row["changed_at"]) or utcnow(),
        )


class SqliteSnapshotRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def replace_for_issue(self, issue_id: str, snapshots: Sequence[IssueSnapshot]) -> int:
        """Regenerate all versions of an issue atomically."""
        now = format_timestamp(utcnow())
        rows = [
            (
                s.issue_id,
                s.issue_key,
                s.project_id,
                s.version,
                format_timestamp(s.valid_from),
                format_timestamp(s.valid_to),
                s.summary,
                s.description,
                s.status,
                s.priority,
                s.assignee,
                s.reporter,
                s.issue_type,
                s.resolution,
                _dump_list(s.labels),
                _dump_list(s.components),
                _dump_list(s.fix_versions),
                s.sprint,
                s.parent_key,
                s.raw_data,
                format_timestamp(s.updated_date),
                format_timestamp(s.created_at) or now,
            )
            for s in snapshots
        ]
        with self.db.transaction():
            self.db.execute("DELETE FROM issue_snapshots WHERE issue_id = ?", (issue_id,))
            if rows:
                self.db.executemany(
                    """
                    INSERT INTO issue_snapshots (
                        issue_id, issue_key, project_id, version, valid_from, valid_to,
                        summary, description, status, priority, assignee, reporter,
                        issue_type, resolution, labels, components, fix_versions,
                        sprint, parent_key, raw_data, updated_date, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        return len(rows)

    def find_by_issue_key(self, issue_key: str) -> list[IssueSnapshot]:
        rows = self.db.fetchall(
            "SELECT * FROM issue_snapshots WHERE issue_key = ? ORDER BY version",
            (issue_key,),
        )
        return [self._to_snapshot(row) for row in rows]

    def find_at(self, issue_key: str, at: datetime) -> IssueSnapshot | None:
        """The version of an issue that was valid at ``at``."""
        stamp = format_timestamp(at)
        row = self.db.fetchone(
            """
            SELECT * FROM issue_snapshots
            WHERE issue_key = ? AND valid_from <= ?
              AND (valid_to IS NULL OR valid_to > ?)
            ORDER BY version DESC LIMIT 1
            """,
            (issue_key, stamp, stamp),
        )
        return self._to_snapshot(row) if row else None

    def count_by_project(self, project_id: str) -> int:
        row = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM issue_snapshots WHERE project_id = ?",
            (project_id,),
        )
        return int(row["n"]) if row else 0

    @staticmethod
    def _to_snapshot(row: sqlite3.Row) -> IssueSnapshot:
        return IssueSnapshot(
            issue_id=row["issue_id"],
            issue_key=row["issue_key"],
            project_id=row["project_id"],
            version=row["version"],
            valid_from=parse_timestamp(row["valid_from"]),
            valid_to=parse_timestamp(row["valid_to"]),
            summary=row["summary"],
            description=row["description"],
            status=row["status"],
            priority=row["priority"],
            assignee=row["assignee"],
            reporter=row["reporter"],
            issue_type=row["issue_type"],
            resolution=row["resolution"],
            labels=_load_list(row["labels"]),
            components=_load_list(row["components"]),
            fix_versions=_load_list(row["fix_versions"]),
            sprint=row["sprint"],
            parent_key=row["parent_key"],
            raw_data=row["raw_data"],
            updated_date=parse_timestamp(row["updated_date"]),
            created_at=parse_timestamp(row["created_at"]),
        )


class SqliteMetadataRepository:
    """Per-project metadata, upserted by name and never deleted individually."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def _upsert(
        self, table: str, columns: list[str], rows: list[tuple[Any, ...]]
    ) -> int:
        if not rows:
            return 0
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns[2:])
        conflict = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"
        placeholders = ", ".join("?" for _ in columns)
        self.db.executemany(
            f"""
            INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})
            ON CONFLICT(project_id, name) {conflict}
            """,
            rows,
        )
        return len(rows)

    def upsert_statuses(self, project_id: str, statuses: Sequence[Status]) -> int:
        return self._upsert(
            "statuses",
            ["project_id", "name", "description", "category"],
            [(project_id, s.name, s.description, s.category) for s in statuses],
        )

    def upsert_priorities(self, project_id: str, priorities: Sequence[Priority]) -> int:
        return self._upsert(
            "priorities",
            ["project_id", "name", "description", "icon_url"],
            [(project_id, p.name, p.description, p.icon_url) for p in priorities],
        )

    def upsert_issue_types(self, project_id: str, issue_types: Sequence[IssueType]) -> int:
        return self._upsert(
            "issue_types",
            ["project_id", "name", "description", "icon_url", "subtask"],
            [
                (project_id, t.name, t.description, t.icon_url, int(t.subtask))
                for t in issue_types
            ],
        )

    def upsert_labels(self, project_id: str, labels: Sequence[Label]) -> int:
        return self._upsert(
            "labels",
            ["project_id", "name"],
            [(project_id, label.name) for label in labels],
        )

    def upsert_components(self, project_id: str, components: Sequence[Component]) -> int:
        return self._upsert(
            "components",
            ["project_id", "name", "description", "lead"],
            [(project_id, c.name, c.description, c.lead) for c in components],
        )

    def upsert_fix_versions(self, project_id: str, versions: Sequence[FixVersion]) -> int:
        return self._upsert(
            "fix_versions",
            ["project_id", "name", "description", "released", "release_date"],
            [
                (
                    project_id,
                    v.name,
                    v.description,
                    int(v.released),
                    v.release_date.isoformat() if v.release_date else None,
                )
                for v in versions
            ],
        )

    def find_project_metadata(self, project_id: str) -> ProjectMetadata:
        def rows(table: str) -> list[sqlite3.Row]:
            return self.db.fetchall(
                f"SELECT * FROM {table} WHERE project_id = ? ORDER BY name",
                (project_id,),
            )

        return ProjectMetadata(
            project_id=project_id,
            statuses=[
                Status(name=r["name"], description=r["description"], category=r["category"])
                for r in rows("statuses")
            ],
            priorities=[
                Priority(name=r["name"], description=r["description"], icon_url=r["icon_url"])
                for r in rows("priorities")
            ],
            issue_types=[
                IssueType(
                    name=r["name"],
                    description=r["description"],
                    icon_url=r["icon_url"],
                    subtask=bool(r["subtask"]),
                )
                for r in rows("issue_types")
            ],
            labels=[Label(name=r["name"]) for r in rows("labels")],
            components=[
                Component(name=r["name"], description=r["description"], lead=r["lead"])
                for r in rows("components")
            ],
            fix_versions=[
                FixVersion(
                    name=r["name"],
                    description=r["description"],
                    released=bool(r["released"]),
                    release_date=parse_date(r["release_date"]),
                )
                for r in rows("fix_versions")
            ],
        )


STALE_SYNC_AFTER = timedelta(minutes=30)


def process_owner() -> str:
    """``host:pid`` of the current process, stored on the runs it starts."""
    return f"{socket.gethostname()}:{os.getpid()}"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _is_abandoned(row: sqlite3.Row, cutoff: datetime) -> bool:
    owner = row["owner"] or ""
    host, _, pid = owner.rpartition(":")
    # os.kill terminates the target on Windows, so only heartbeats apply there
    if host == socket.gethostname() and pid.isdigit() and os.name != "nt":
        return not _pid_alive(int(pid))
    last_seen = parse_timestamp(row["heartbeat_at"]) or parse_timestamp(row["started_at"])
    return last_seen is None or last_seen < cutoff


class SqliteSyncHistoryRepository:
    """One audit row per sync run; status moves from running exactly once."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def insert(self, project_id: str, sync_type: str) -> int:
        now = format_timestamp(utcnow())
        return self.db.insert(
            """
            INSERT INTO sync_history (
                project_id, sync_type, started_at, status, items_synced, owner, heartbeat_at
            ) VALUES (?, ?, ?, 'running', 0, ?, ?)
            """,
            (project_id, sync_type, now, process_owner(), now),
        )

    def heartbeat(self, sync_id: int) -> None:
        """Record that the run owning ``sync_id`` is still making progress."""
        self.db.execute(
            "UPDATE sync_history SET heartbeat_at = ? WHERE id = ? AND status = 'running'",
            (format_timestamp(utcnow()), sync_id),
        )

    def update_completed(self, sync_id: int, items_synced: int) -> None:
        self.db.execute(
            """
            UPDATE sync_history
            SET status = 'completed', completed_at = ?, items_synced = ?
            WHERE id = ? AND status = 'running'
            """,
            (format_timestamp(utcnow()), items_synced, sync_id),
        )

    def update_failed(self, sync_id: int, error_message: str) -> None:
        self.db.execute(
            """
            UPDATE sync_history
            SET status = 'failed', completed_at = ?, error_message = ?
            WHERE id = ? AND status = 'running'
            """,
            (format_timestamp(utcnow()), error_message, sync_id),
        )

    def mark_stale_running_failed(self, stale_after: timedelta = STALE_SYNC_AFTER) -> int:
        """Fail runs left 'running' by a process that died mid-sync.

        A run owned by a process on this host is stale once that pid is
        gone. Runs from other hosts, or rows written before owners were
        recorded, are stale once their heartbeat is older than
        ``stale_after``. Runs still owned by a live writer are left alone.
        """
        cutoff = utcnow() - stale_after
        rows = self.db.fetchall(
            "SELECT id, owner, started_at, heartbeat_at FROM sync_history "
            "WHERE status = 'running'"
        )
        stale = [row["id"] for row in rows if _is_abandoned(row, cutoff)]
        if not stale:
            return 0
        placeholders = ", ".join("?" for _ in stale)
        return self.db.execute(
            f"""
            UPDATE sync_history
            SET status = 'failed', completed_at = ?,
                error_message = 'Interrupted: process exited before the run finished'
            WHERE status = 'running' AND id IN ({placeholders})
            """,
            (format_timestamp(utcnow()), *stale),
        )

    def find_by_id(self, sync_id: int) -> SyncHistory | None:
        row = self.db.fetchone("SELECT * FROM sync_history WHERE id = ?", (sync_id,))
        return self._to_history(row) if row else None

    def find_latest_by_project(self, project_id: str) -> SyncHistory | None:
        row = self.db.fetchone(
            """
            SELECT * FROM sync_history WHERE project_id = ?
            ORDER BY started_at DESC, id DESC LIMIT 1
            """,
            (project_id,),
        )
        return self._to_history(row) if row else None

    def find_by_project(self, project_id: str, limit: int = 20) -> list[SyncHistory]:
        rows = self.db.fetchall(
            """
            SELECT * FROM sync_history WHERE project_id = ?
            ORDER BY started_at DESC, id DESC LIMIT ?
            """,
            (project_id, limit),
        )
        return [self._to_history(row) for row in rows]

    @staticmethod
    def _to_history(row: sqlite3.Row) -> SyncHistory:
        return SyncHistory(
            id=row["id"],
            project_id=row["project_id"],
            sync_type=row["sync_type"],
            started_at=parse_timestamp(row["started_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            status=row["status"],
            items_synced=row["items_synced"],
            error_message=row["error_message"],
        )


class SqliteFieldRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert_fields(self, fields: Sequence[JiraField]) -> int:
        if not fields:
            return 0
        now = format_timestamp(utcnow())
        self.db.executemany(
            """
            INSERT INTO jira_fields (
                id, key, name, custom, searchable, navigable, orderable,
                schema_type, schema_items, schema_system, schema_custom,
                schema_custom_id, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                key = excluded.key,
                name = excluded.name,
                custom = excluded.custom,
                searchable = excluded.searchable,
                navigable = excluded.navigable,
                orderable = excluded.orderable,
                schema_type = excluded.schema_type,
                schema_items = excluded.schema_items,
                schema_system = excluded.schema_system,
                schema_custom = excluded.schema_custom,
                schema_custom_id = excluded.schema_custom_id,
                updated_at = excluded.updated_at
            """,
            [
                (
                    f.id,
                    f.key,
                    f.name,
                    int(f.custom),
                    int(f.searchable),
                    int(f.navigable),
                    int(f.orderable),
                    f.schema_type,
                    f.schema_items,
                    f.schema_system,
                    f.schema_custom,
                    f.schema_custom_id,
                    now,
                )
                for f in fields
            ],
        )
        return len(fields)

    def find_all(self) -> list[JiraField]:
        rows = self.db.fetchall("SELECT * FROM jira_fields ORDER BY custom, id")
        return [
            JiraField(
                id=r["id"],
                key=r["key"],
                name=r["name"],
                custom=bool(r["custom"]),
                searchable=bool(r["searchable"]),
                navigable=bool(r["navigable"]),
                orderable=bool(r["orderable"]),
                schema_type=r["schema_type"],
                schema_items=r["schema_items"],
                schema_system=r["schema_system"],
                schema_custom=r["schema_custom"],
                schema_custom_id=r["schema_custom_id"],
            )
            for r in rows
        ]


class SqliteExpandedIssueRepository:
    """Wide ``issues_expanded`` table whose columns grow with Jira's fields."""

    TABLE = "issues_expanded"
    VIEW = "issues_readable"

    def __init__(self, db: Database) -> None:
        self.db = db

    def existing_columns(self) -> set[str]:
        return set(self.db.table_columns(self.TABLE))

    def ordered_columns(self) -> list[str]:
        return self.db.table_columns(self.TABLE)

    def add_column(self, column: str, column_type: str) -> bool:
        return self.db.add_column_if_not_exists(self.TABLE, column, column_type)

    def upsert_rows(self, rows: Sequence[dict[str, Any]]) -> int:
        """Upsert rows keyed by ``id``; every row must share the same keys."""
        if not rows:
            return 0
        columns = list(rows[0].keys())
        quoted = [quote_identifier(c) for c in columns]
        updates = ", ".join(f"{q} = excluded.{q}" for c, q in zip(columns, quoted) if c != "id")
        self.db.executemany(
            f"""
            INSERT INTO {self.TABLE} ({', '.join(quoted)})
            VALUES ({', '.join('?' for _ in columns)})
            ON CONFLICT(id) DO UPDATE SET {updates}
            """,
            [tuple(row[c] for c in columns) for row in rows],
        )
        return len(rows)

    def count(self, project_id: str | None = None) -> int:
        if project_id:
            row = self.db.fetchone(
                f"SELECT COUNT(*) AS n FROM {self.TABLE} WHERE project_id = ?",
                (project_id,),
            )
        else:
            row = self.db.fetchone(f"SELECT COUNT(*) AS n FROM {self.TABLE}")
        return int(row["n"]) if row else 0

    def create_readable_view(self, aliases: Sequence[tuple[str, str]]) -> None:
        """(Re)create a view exposing columns under their Jira display names."""
        select = ", ".join(
            f'{quote_identifier(column)} AS "{alias.replace(chr(34), chr(39))}"'
            for column, alias in aliases
        )
        with self.db.transaction():
            self.db.execute(f"DROP VIEW IF EXISTS {self.VIEW}")
            self.db.execute(f"CREATE VIEW {self.VIEW} AS SELECT {select} FROM {self.TABLE}")


class SqliteEmbeddingRepository:
    """Issue embeddings stored as JSON arrays, one row per issue."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def upsert(
        self,
        rows: Sequence[tuple[str, str, str, str, str, list[float]]],
    ) -> int:
        """Upsert (issue_id, issue_key, project_id, content_hash, model, embedding) rows."""
        if not rows:
            return 0
        now = format_timestamp(utcnow())
        self.db.executemany(
            """
            INSERT INTO issue_embeddings
                (issue_id, issue_key, project_id, content_hash, model, embedding, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(issue_id) DO UPDATE SET
                issue_key = excluded.issue_key,
                project_id = excluded.project_id,
                content_hash = excluded.content_hash,
                model = excluded.model,
                embedding = excluded.embedding,
                created_at = excluded.created_at
            """,
            [
                (issue_id, key, project_id, content_hash, model, json.dumps(vector), now)
                for issue_id, key, project_id, content_hash, model, vector in rows
            ],
        )
        return len(rows)

    def find_hashes(self, project_id: str | None = None) -> dict[str, tuple[str, str]]:
        """Map issue id to (content_hash, model) of its stored embedding."""
        if project_id:
            rows = self.db.fetchall(
                "SELECT issue_id, content_hash, model FROM issue_embeddings WHERE project_id = ?",
                (project_id,),
            )
        else:
            rows = self.db.fetchall("SELECT issue_id, content_hash, model FROM issue_embeddings")
        return {r["issue_id"]: (r["content_hash"], r["model"]) for r in rows}

    def find_vectors(
        self, project_id: str | None = None, model: str | None = None
    ) -> list[tuple[str, list[float]]]:
        """(issue_key, embedding) pairs, optionally for one project and model."""
        clauses, params = [], []
        if project_id:
            clauses.append("e.project_id = ?")
            params.append(project_id)
        if model:
            clauses.append("e.model = ?")
            params.append(model)
        where = f"AND {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.fetchall(
            f"""
            SELECT e.issue_key, e.embedding FROM issue_embeddings e
            JOIN issues i ON i.id = e.issue_id
            WHERE i.is_deleted = 0 {where}
            ORDER BY e.issue_key
            """,
            params,
        )
        return [(r["issue_key"], json.loads(r["embedding"])) for r in rows]

    def count(self, project_id: str | None = None) -> int:
        if project_id:
            row = self.db.fetchone(
                "SELECT COUNT(*) AS n FROM issue_embeddings WHERE project_id = ?",
                (project_id,),
            )
        else:
            row = self.db.fetchone("SELECT COUNT(*) AS n FROM issue_embeddings")
        return int(row["n"]) if row else 0
