"""Configuration for the Jira mirror."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from jira_db.exceptions import ConfigurationError
from jira_db.utils.env import env_int, is_env_truthy

# Values shipped in example .env files that must never reach the API
PLACEHOLDER_TOKENS = {"your-api-token", "your_api_token", "changeme", "xxx"}


class EmbeddingProvider(str, Enum):
    """Supported embedding providers."""

    OPENAI = "openai"


@dataclass
class MirrorConfig:
    """Configuration for syncing Jira into the local database.

    Environment variables:
        JIRA_URL: Base URL of the Jira Cloud site
        JIRA_USERNAME: Account email used for basic auth
        JIRA_API_TOKEN: API token for that account
        JIRA_DB_PATH: Path to the SQLite database file
        JIRA_DB_SYNC_PROJECTS: Comma-separated project keys or '*'
        JIRA_DB_SYNC_INTERVAL_MINUTES: Scheduler interval (0 disables it)
        JIRA_DB_PAGE_SIZE: Issues requested per Jira search page
        JIRA_DB_CHUNK_SIZE: Issues written per store batch
        JIRA_DB_SNAPSHOTS_AFTER_SYNC: Regenerate snapshots after each sync
        JIRA_DB_EXPAND_AFTER_SYNC: Refresh the flattened issue view after each sync
        JIRA_DB_MARK_DELETED: Flag issues missing from a full sync as deleted
        JIRA_DB_SWEEP_STALE_SYNCS: Mark leftover 'running' sync rows failed on startup
        JIRA_DB_QUERY_LIMIT: Default row limit for read-only SQL
        JIRA_DB_EMBEDDING_MODEL: Model name for embeddings
    """

    # Jira
    jira_url: str = field(
        default_factory=lambda: os.getenv("JIRA_URL", "").rstrip("/")
    )
    jira_username: str = field(
        default_factory=lambda: os.getenv("JIRA_USERNAME", "")
    )
    jira_api_token: str = field(
        default_factory=lambda: os.getenv("JIRA_API_TOKEN", "")
    )
    request_timeout: int = field(
        default_factory=lambda: env_int("JIRA_REQUEST_TIMEOUT", 30)
    )

    # Storage
    db_path: Path = field(
        default_factory=lambda: Path(os.getenv("JIRA_DB_PATH", "./data/jira.db"))
    )

    # Sync
    sync_projects: list[str] = field(
        default_factory=lambda: _parse_projects(
            os.getenv("JIRA_DB_SYNC_PROJECTS", "*")
        )
    )
    sync_interval_minutes: int = field(
        default_factory=lambda: env_int("JIRA_DB_SYNC_INTERVAL_MINUTES", 30)
    )
    page_size: int = field(
        default_factory=lambda: env_int("JIRA_DB_PAGE_SIZE", 100)
    )
    chunk_size: int = field(
        default_factory=lambda: env_int("JIRA_DB_CHUNK_SIZE", 50)
    )
    snapshots_after_sync: bool = field(
        default_factory=lambda: is_env_truthy("JIRA_DB_SNAPSHOTS_AFTER_SYNC", "true")
    )
    expand_after_sync: bool = field(
        default_factory=lambda: is_env_truthy("JIRA_DB_EXPAND_AFTER_SYNC", "false")
    )
    mark_deleted: bool = field(
        default_factory=lambda: is_env_truthy("JIRA_DB_MARK_DELETED", "true")
    )
    sweep_stale_syncs: bool = field(
        default_factory=lambda: is_env_truthy("JIRA_DB_SWEEP_STALE_SYNCS", "true")
    )

    # Query
    query_limit: int = field(
        default_factory=lambda: env_int("JIRA_DB_QUERY_LIMIT", 100)
    )

    # Embeddings
    embedding_provider: EmbeddingProvider = field(
        default_factory=lambda: EmbeddingProvider(
            os.getenv("JIRA_DB_EMBEDDING_PROVIDER", "openai")
        )
    )
    embedding_model: str = field(
        default_factory=lambda: os.getenv(
            "JIRA_DB_EMBEDDING_MODEL", "text-embedding-3-small"
        )
    )
    embedding_batch_size: int = field(
        default_factory=lambda: env_int("JIRA_DB_EMBEDDING_BATCH_SIZE", 100)
    )
    max_concurrent_embeddings: int = field(
        default_factory=lambda: env_int("JIRA_DB_MAX_CONCURRENT_EMBEDDINGS", 5)
    )

    @classmethod
    def from_env(cls) -> MirrorConfig:
        """Create config from environment variables."""
        return cls()

    @property
    def state_path(self) -> Path:
        """Path of the JSON file holding sync watermarks and checkpoints."""
        return self.db_path.parent / "sync_state.json"

    def ensure_db_dir(self) -> Path:
        """Ensure the database directory exists and return the database path."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return self.db_path

    def validate(self) -> None:
        """Check that Jira credentials are usable.

        Raises:
            ConfigurationError: If the URL, username or token is missing or
                still set to a placeholder value
        """
        missing = [
            name
            for name, value in (
                ("JIRA_URL", self.jira_url),
                ("JIRA_USERNAME", self.jira_username),
                ("JIRA_API_TOKEN", self.jira_api_token),
            )
            if not value.strip()
        ]
        if missing:
            raise ConfigurationError(
                f"Missing Jira configuration: {', '.join(missing)}"
            )
        if self.jira_api_token.strip().lower() in PLACEHOLDER_TOKENS:
            raise ConfigurationError(
                "JIRA_API_TOKEN is still set to a placeholder value"
            )
        if not self.jira_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"JIRA_URL must start with http:// or https://: {self.jira_url}"
            )


def _parse_projects(value: str) -> list[str]:
    """Parse comma-separated project keys or '*' for all enabled projects."""
    if value.strip() == "*":
        return []  # Empty list means every project flagged for sync
    return [p.strip().upper() for p in value.split(",") if p.strip()]
