"""Application state shared by the CLI, web server and MCP server.

One ``AppState`` holds the configuration, the database handle, the Jira
client and the services built on them. Every entry point receives it
explicitly; ``reload()`` re-reads configuration and reopens resources.
"""

from __future__ import annotations

import logging

from jira_db.jira.client import JiraClient
from jira_db.mirror.config import MirrorConfig
from jira_db.mirror.database import Database
from jira_db.mirror.embeddings import EmbeddingPipeline, IssueEmbedder
from jira_db.mirror.fields import FieldSchemaEvolver
from jira_db.mirror.report import ReportBuilder
from jira_db.mirror.repositories import (
    SqliteChangeHistoryRepository,
    SqliteEmbeddingRepository,
    SqliteExpandedIssueRepository,
    SqliteFieldRepository,
    SqliteIssueRepository,
    SqliteMetadataRepository,
    SqliteProjectRepository,
    SqliteSnapshotRepository,
    SqliteSyncHistoryRepository,
)
from jira_db.mirror.sql import ReadOnlySqlGateway
from jira_db.mirror.sync import SyncEngine

logger = logging.getLogger(__name__)


class AppState:
    """Lazily constructed resources for one process."""

    def __init__(
        self,
        config: MirrorConfig | None = None,
        db: Database | None = None,
        jira: JiraClient | None = None,
        pipeline: EmbeddingPipeline | None = None,
    ) -> None:
        """Initialize the state.

        Args:
            config: Mirror configuration, read from the environment if omitted
            db: Prebuilt database, used by tests
            jira: Prebuilt Jira client, used by tests
            pipeline: Prebuilt embedding pipeline, used by tests
        """
        self.config = config or MirrorConfig.from_env()
        self._db = db
        self._jira = jira
        self._pipeline = pipeline
        self._engine: SyncEngine | None = None
        if db is not None:
            self._on_open(db)

    def _on_open(self, db: Database) -> None:
        if self.config.sweep_stale_syncs:
            swept = SqliteSyncHistoryRepository(db).mark_stale_running_failed()
            if swept:
                logger.warning(f"Marked {swept} interrupted sync runs as failed")

    @property
    def db(self) -> Database:
        """Get or open the mirror database."""
        if self._db is None:
            self._db = Database(self.config.ensure_db_dir())
            self._on_open(self._db)
        return self._db

    @property
    def jira(self) -> JiraClient:
        """Get or create the Jira client; raises ConfigurationError without credentials."""
        if self._jira is None:
            self._jira = JiraClient(self.config)
        return self._jira

    @property
    def pipeline(self) -> EmbeddingPipeline:
        if self._pipeline is None:
            self._pipeline = EmbeddingPipeline(self.config)
        return self._pipeline

    @property
    def projects(self) -> SqliteProjectRepository:
        return SqliteProjectRepository(self.db)

    @property
    def issues(self) -> SqliteIssueRepository:
        return SqliteIssueRepository(self.db)

    @property
    def change_history(self) -> SqliteChangeHistoryRepository:
        return SqliteChangeHistoryRepository(self.db)

    @property
    def snapshots(self) -> SqliteSnapshotRepository:
        return SqliteSnapshotRepository(self.db)

    @property
    def metadata(self) -> SqliteMetadataRepository:
        return SqliteMetadataRepository(self.db)

    @property
    def sync_history(self) -> SqliteSyncHistoryRepository:
        return SqliteSyncHistoryRepository(self.db)

    @property
    def syncing(self) -> bool:
        """True while a project sync is in progress in this process."""
        return self._engine is not None and self._engine.is_syncing

    def sync_engine(self) -> SyncEngine:
        if self._engine is None:
            self._engine = SyncEngine(self.jira, self.db, self.config)
        return self._engine

    def field_evolver(self) -> FieldSchemaEvolver:
        return FieldSchemaEvolver(
            self.jira,
            SqliteFieldRepository(self.db),
            SqliteExpandedIssueRepository(self.db),
            self.issues,
        )

    def sql_gateway(self) -> ReadOnlySqlGateway:
        return ReadOnlySqlGateway(self.db, default_limit=self.config.query_limit)

    def report_builder(self) -> ReportBuilder:
        return ReportBuilder(self.projects, self.issues, self.change_history)

    def embedder(self) -> IssueEmbedder:
        return IssueEmbedder(
            self.pipeline, self.projects, self.issues, SqliteEmbeddingRepository(self.db)
        )

    async def reload(self, config: MirrorConfig | None = None) -> None:
        """Close open resources and start over with fresh configuration."""
        await self.aclose()
        self.config = config or MirrorConfig.from_env()
        logger.info(f"Reloaded configuration (database: {self.config.db_path})")

    async def aclose(self) -> None:
        """Close the Jira client and checkpoint and close the database."""
        if self._jira is not None:
            await self._jira.aclose()
            self._jira = None
        if self._db is not None:
            self._db.close()
            self._db = None
        self._pipeline = None
        self._engine = None
