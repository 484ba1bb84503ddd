"""SQLite schema for the mirror database."""

from __future__ import annotations

TABLES = [
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        key TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT,
        sync_enabled BOOLEAN NOT NULL DEFAULT 0,
        last_synced_at TIMESTAMP,
        raw_data JSON,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issues (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        key TEXT NOT NULL,
        summary TEXT NOT NULL,
        description TEXT,
        status TEXT,
        priority TEXT,
        assignee TEXT,
        reporter TEXT,
        issue_type TEXT,
        resolution TEXT,
        labels JSON,
        components JSON,
        fix_versions JSON,
        sprint TEXT,
        parent_key TEXT,
        created_date TIMESTAMP,
        updated_date TIMESTAMP,
        raw_data JSON,
        is_deleted BOOLEAN NOT NULL DEFAULT 0,
        synced_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_issues_project ON issues(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_issues_key ON issues(key)",
    "CREATE INDEX IF NOT EXISTS idx_issues_updated ON issues(project_id, updated_date)",
    """
    CREATE TABLE IF NOT EXISTS sync_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id TEXT NOT NULL,
        sync_type TEXT NOT NULL,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        status TEXT NOT NULL,
        items_synced INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        owner TEXT,
        heartbeat_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_history_project ON sync_history(project_id, started_at)",
    """
    CREATE TABLE IF NOT EXISTS statuses (
        project_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        category TEXT,
        PRIMARY KEY (project_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS priorities (
        project_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        icon_url TEXT,
        PRIMARY KEY (project_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issue_types (
        project_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        icon_url TEXT,
        subtask BOOLEAN NOT NULL DEFAULT 0,
        PRIMARY KEY (project_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS labels (
        project_id TEXT NOT NULL,
        name TEXT NOT NULL,
        PRIMARY KEY (project_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS components (
        project_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        lead TEXT,
        PRIMARY KEY (project_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fix_versions (
        project_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        released BOOLEAN NOT NULL DEFAULT 0,
        release_date DATE,
        PRIMARY KEY (project_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issue_change_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        issue_id TEXT NOT NULL,
        issue_key TEXT NOT NULL,
        history_id TEXT NOT NULL,
        author_account_id TEXT,
        author_display_name TEXT,
        field TEXT NOT NULL,
        field_type TEXT,
        from_value TEXT,
        from_string TEXT,
        to_value TEXT,
        to_string TEXT,
        changed_at TIMESTAMP NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_change_history_issue_id ON issue_change_history(issue_id)",
    "CREATE INDEX IF NOT EXISTS idx_change_history_issue_key ON issue_change_history(issue_key)",
    "CREATE INDEX IF NOT EXISTS idx_change_history_field ON issue_change_history(field)",
    "CREATE INDEX IF NOT EXISTS idx_change_history_changed_at ON issue_change_history(changed_at)",
    """
    CREATE TABLE IF NOT EXISTS issue_snapshots (
        issue_id TEXT NOT NULL,
        issue_key TEXT NOT NULL,
        project_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        valid_from TIMESTAMP NOT NULL,
        valid_to TIMESTAMP,
        summary TEXT NOT NULL,
        description TEXT,
        status TEXT,
        priority TEXT,
        assignee TEXT,
        reporter TEXT,
        issue_type TEXT,
        resolution TEXT,
        labels JSON,
        components JSON,
        fix_versions JSON,
        sprint TEXT,
        parent_key TEXT,
        raw_data JSON,
        updated_date TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (issue_id, version)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_snapshots_issue_key ON issue_snapshots(issue_key)",
    "CREATE INDEX IF NOT EXISTS idx_snapshots_project ON issue_snapshots(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_snapshots_valid ON issue_snapshots(valid_from, valid_to)",
    """
    CREATE TABLE IF NOT EXISTS jira_fields (
        id TEXT PRIMARY KEY,
        key TEXT NOT NULL,
        name TEXT NOT NULL,
        custom BOOLEAN NOT NULL DEFAULT 0,
        searchable BOOLEAN NOT NULL DEFAULT 0,
        navigable BOOLEAN NOT NULL DEFAULT 0,
        orderable BOOLEAN NOT NULL DEFAULT 0,
        schema_type TEXT,
        schema_items TEXT,
        schema_system TEXT,
        schema_custom TEXT,
        schema_custom_id INTEGER,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issues_expanded (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        issue_key TEXT NOT NULL,
        summary TEXT,
        description TEXT,
        status TEXT,
        priority TEXT,
        assignee TEXT,
        reporter TEXT,
        creator TEXT,
        issue_type TEXT,
        resolution TEXT,
        labels JSON,
        components JSON,
        fix_versions JSON,
        affected_versions JSON,
        sprint TEXT,
        parent_key TEXT,
        environment TEXT,
        security_level TEXT,
        created_date TIMESTAMP,
        updated_date TIMESTAMP,
        resolved_date TIMESTAMP,
        due_date DATE,
        synced_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_issues_expanded_project ON issues_expanded(project_id)",
    """
    CREATE TABLE IF NOT EXISTS issue_embeddings (
        issue_id TEXT PRIMARY KEY,
        issue_key TEXT NOT NULL,
        project_id TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        model TEXT NOT NULL,
        embedding JSON NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_issue_embeddings_project ON issue_embeddings(project_id)",
]

# Columns added after the first release; applied with ADD COLUMN when missing
MIGRATIONS = [
    ("issues", "is_deleted", "BOOLEAN NOT NULL DEFAULT 0"),
    ("projects", "sync_enabled", "BOOLEAN NOT NULL DEFAULT 0"),
    ("projects", "last_synced_at", "TIMESTAMP"),
    ("sync_history", "owner", "TEXT"),
    ("sync_history", "heartbeat_at", "TIMESTAMP"),
]

# Base columns of issues_expanded, in display order
EXPANDED_BASE_COLUMNS = [
    "id",
    "project_id",
    "issue_key",
    "summary",
    "description",
    "status",
    "priority",
    "assignee",
    "reporter",
    "creator",
    "issue_type",
    "resolution",
    "labels",
    "components",
    "fix_versions",
    "affected_versions",
    "sprint",
    "parent_key",
    "environment",
    "security_level",
    "created_date",
    "updated_date",
    "resolved_date",
    "due_date",
    "synced_at",
]
