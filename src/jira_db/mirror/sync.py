"""Sync engine mirroring Jira projects into the local database."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from jira_db.exceptions import JiraDbError, NotFoundError
from jira_db.jira.client import JiraSource
from jira_db.mirror.changelog import extract_change_history
from jira_db.mirror.config import MirrorConfig
from jira_db.mirror.database import Database
from jira_db.mirror.repositories import (
    ChangeHistoryRepository,
    IssueRepository,
    MetadataRepository,
    SqliteChangeHistoryRepository,
    SqliteExpandedIssueRepository,
    SqliteFieldRepository,
    SqliteIssueRepository,
    SqliteMetadataRepository,
    SqliteProjectRepository,
    SqliteSnapshotRepository,
    SqliteSyncHistoryRepository,
    SyncHistoryRepository,
)
from jira_db.mirror.schemas import Issue, Project
from jira_db.mirror.snapshots import (
    SnapshotCheckpoint,
    SnapshotGenerationResult,
    SnapshotGenerator,
)
from jira_db.utils.batching import chunked
from jira_db.utils.dates import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class SyncCheckpoint:
    """Last persisted position of a run, enough to resume it.

    ``boundary_keys`` are the keys already persisted with ``updated_date``
    equal to the watermark, so a resumed fetch starting at the watermark
    does not persist them twice.
    """

    last_issue_updated_at: datetime
    last_issue_key: str
    items_processed: int = 0
    total_items: int = 0
    boundary_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_issue_updated_at"] = format_timestamp(self.last_issue_updated_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncCheckpoint:
        data = dict(data)
        data["last_issue_updated_at"] = parse_timestamp(data["last_issue_updated_at"])
        return cls(**data)


@dataclass
class ProjectSyncState:
    """Per-project watermark plus any unfinished checkpoints."""

    watermark: datetime | None = None
    boundary_keys: list[str] = field(default_factory=list)
    last_completed_at: datetime | None = None
    checkpoint: SyncCheckpoint | None = None
    snapshot_checkpoint: SnapshotCheckpoint | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "watermark": format_timestamp(self.watermark),
            "boundary_keys": self.boundary_keys,
            "last_completed_at": format_timestamp(self.last_completed_at),
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "snapshot_checkpoint": (
                asdict(self.snapshot_checkpoint) if self.snapshot_checkpoint else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectSyncState:
        checkpoint = data.get("checkpoint")
        snapshot_checkpoint = data.get("snapshot_checkpoint")
        return cls(
            watermark=parse_timestamp(data.get("watermark")),
            boundary_keys=list(data.get("boundary_keys") or []),
            last_completed_at=parse_timestamp(data.get("last_completed_at")),
            checkpoint=SyncCheckpoint.from_dict(checkpoint) if checkpoint else None,
            snapshot_checkpoint=(
                SnapshotCheckpoint(**snapshot_checkpoint) if snapshot_checkpoint else None
            ),
        )


@dataclass
class SyncState:
    """Persistent sync progress for all projects.

    Enables incremental sync through per-project watermarks and resumable
    sync through checkpoints written after every persisted chunk.
    """

    projects: dict[str, ProjectSyncState] = field(default_factory=dict)

    def for_project(self, project_key: str) -> ProjectSyncState:
        return self.projects.setdefault(project_key, ProjectSyncState())

    @classmethod
    def load(cls, path: Path) -> SyncState:
        """Load sync state from file.

        Args:
            path: Path to state file

        Returns:
            SyncState instance, empty if the file is missing or unreadable
        """
        if not path.exists():
            return cls()

        try:
            data = json.loads(path.read_text())
            return cls(
                projects={
                    key: ProjectSyncState.from_dict(value)
                    for key, value in (data.get("projects") or {}).items()
                }
            )
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Failed to load sync state: {e}")
            return cls()

    def save(self, path: Path) -> None:
        """Save sync state to file.

        Args:
            path: Path to state file
        """
        data = {"projects": {k: v.to_dict() for k, v in self.projects.items()}}
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2))


@dataclass
class SyncResult:
    """Outcome of one project sync. Failures are reported here, not raised."""

    project_key: str
    sync_type: str = "full"
    issues_synced: int = 0
    history_items_synced: int = 0
    issues_deleted: int = 0
    snapshots_generated: int = 0
    success: bool = True
    error_message: str | None = None
    last_issue_updated_at: datetime | None = None
    metadata_errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    synced_issue_ids: list[str] = field(default_factory=list, repr=False)

    @property
    def partial(self) -> bool:
        """True when the run succeeded but some best-effort step failed."""
        return self.success and bool(self.metadata_errors or self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_key": self.project_key,
            "sync_type": self.sync_type,
            "success": self.success,
            "partial": self.partial,
            "issues_synced": self.issues_synced,
            "history_items_synced": self.history_items_synced,
            "issues_deleted": self.issues_deleted,
            "snapshots_generated": self.snapshots_generated,
            "error_message": self.error_message,
            "last_issue_updated_at": format_timestamp(self.last_issue_updated_at),
            "metadata_errors": self.metadata_errors,
            "warnings": self.warnings,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class ProjectSync:
    """One sync run for one project: fetch, persist, derive history, audit.

    Issues arrive in ascending ``updated`` order, so the last persisted
    issue's timestamp is a safe watermark for resuming.
    """

    def __init__(
        self,
        jira: JiraSource,
        issues: IssueRepository,
        change_history: ChangeHistoryRepository,
        metadata: MetadataRepository,
        sync_history: SyncHistoryRepository,
        page_size: int = 100,
        chunk_size: int = 50,
        mark_deleted: bool = True,
    ) -> None:
        self.jira = jira
        self.issues = issues
        self.change_history = change_history
        self.metadata = metadata
        self.sync_history = sync_history
        self.page_size = page_size
        self.chunk_size = chunk_size
        self.mark_deleted = mark_deleted

    async def execute(
        self,
        project_key: str,
        project_id: str,
        after_updated_at: datetime | None = None,
        skip_keys: Sequence[str] = (),
        on_progress: ProgressCallback | None = None,
        on_checkpoint: Callable[[SyncCheckpoint], None] | None = None,
    ) -> SyncResult:
        """Sync a project's issues, change history and metadata.

        Args:
            project_key: Jira project key
            project_id: Jira project id
            after_updated_at: Watermark; only issues updated at or after it
                are fetched. None means a full sync.
            skip_keys: Keys already persisted at exactly the watermark
            on_progress: Called with (issues_synced, total) after each page
            on_checkpoint: Called after each persisted chunk

        Returns:
            SyncResult; only a failure to create the audit row raises
        """
        sync_type = "full" if after_updated_at is None else "incremental"
        sync_id = self.sync_history.insert(project_id, sync_type)
        result = SyncResult(project_key=project_key, sync_type=sync_type)
        start = time.monotonic()
        logger.info(
            f"Starting {sync_type} sync of {project_key}"
            + (f" from {format_timestamp(after_updated_at)}" if after_updated_at else "")
        )

        try:
            seen_keys = await self._sync_issues(
                project_key,
                project_id,
                sync_id,
                after_updated_at,
                set(skip_keys),
                result,
                on_progress,
                on_checkpoint,
            )
            if sync_type == "full" and self.mark_deleted:
                result.issues_deleted = self.issues.mark_deleted_not_in_keys(
                    project_id, seen_keys
                )
                if result.issues_deleted:
                    logger.info(
                        f"Marked {result.issues_deleted} issues deleted in {project_key}"
                    )
            result.metadata_errors = await self.sync_metadata(project_key, project_id)
            self.sync_history.update_completed(sync_id, result.issues_synced)
        except Exception as e:
            logger.error(f"Sync of {project_key} failed: {e}", exc_info=True)
            result.success = False
            result.error_message = str(e) or type(e).__name__
            self.sync_history.update_failed(sync_id, result.error_message)

        result.duration_seconds = time.monotonic() - start
        if result.success:
            logger.info(
                f"Synced {result.issues_synced} issues and "
                f"{result.history_items_synced} history items for {project_key} "
                f"in {result.duration_seconds:.1f}s"
            )
        return result

    async def _sync_issues(
        self,
        project_key: str,
        project_id: str,
        sync_id: int,
        after_updated_at: datetime | None,
        skip_keys: set[str],
        result: SyncResult,
        on_progress: ProgressCallback | None,
        on_checkpoint: Callable[[SyncCheckpoint], None] | None,
    ) -> set[str]:
        seen_keys: set[str] = set()
        watermark = after_updated_at
        boundary = set(skip_keys)
        page_token: str | None = None

        while True:
            batch = await self.jira.fetch_project_issues_batch(
                project_key,
                after_updated_at=after_updated_at,
                page_token=page_token,
                max_results=self.page_size,
            )
            if not batch.issues:
                break
            seen_keys.update(issue.key for issue in batch.issues)

            fresh = [
                issue
                for issue in batch.issues
                if not self._already_persisted(issue, after_updated_at, skip_keys)
            ]
            for chunk in chunked(fresh, self.chunk_size):
                self.issues.batch_upsert(chunk)
                for issue in chunk:
                    result.history_items_synced += self._refresh_history(issue)
                result.issues_synced += len(chunk)
                result.synced_issue_ids.extend(issue.id for issue in chunk)

                last = chunk[-1]
                if last.updated_date is not None:
                    if watermark != last.updated_date:
                        boundary = set()
                    watermark = last.updated_date
                    boundary.update(i.key for i in chunk if i.updated_date == watermark)
                    result.last_issue_updated_at = watermark
                    if on_checkpoint:
                        on_checkpoint(
                            SyncCheckpoint(
                                last_issue_updated_at=watermark,
                                last_issue_key=last.key,
                                items_processed=result.issues_synced,
                                total_items=batch.total,
                                boundary_keys=sorted(boundary),
                            )
                        )

            self.sync_history.heartbeat(sync_id)
            if on_progress:
                on_progress(result.issues_synced, batch.total)
            if not batch.has_more:
                break
            page_token = batch.next_page_token

        return seen_keys

    @staticmethod
    def _already_persisted(
        issue: Issue, watermark: datetime | None, skip_keys: set[str]
    ) -> bool:
        if watermark is None or issue.updated_date is None:
            return False
        if issue.updated_date < watermark:
            return True
        return issue.updated_date == watermark and issue.key in skip_keys

    def _refresh_history(self, issue: Issue) -> int:
        if not issue.raw_json:
            logger.warning(f"No raw JSON for {issue.key}, skipping change history")
            return 0
        items = extract_change_history(issue.id, issue.key, issue.raw_json)
        return self.change_history.replace_for_issue(issue.id, items)

    async def sync_metadata(self, project_key: str, project_id: str) -> list[str]:
        """Fetch and store the six metadata categories.

        A category whose fetch fails is logged and skipped.

        Returns:
            Error messages for the categories that were skipped
        """
        steps: list[tuple[str, Callable[[], Any], Callable[[str, Any], int]]] = [
            ("statuses", lambda: self.jira.fetch_project_statuses(project_key), self.metadata.upsert_statuses),
            ("priorities", self.jira.fetch_priorities, self.metadata.upsert_priorities),
            ("issue types", lambda: self.jira.fetch_project_issue_types(project_id), self.metadata.upsert_issue_types),
            ("labels", lambda: self.jira.fetch_project_labels(project_key), self.metadata.upsert_labels),
            ("components", lambda: self.jira.fetch_project_components(project_key), self.metadata.upsert_components),
            ("versions", lambda: self.jira.fetch_project_versions(project_key), self.metadata.upsert_fix_versions),
        ]
        errors: list[str] = []
        for name, fetch, save in steps:
            try:
                items = await fetch()
            # Parsers raise the builtin errors on payloads of an unexpected shape
            except (JiraDbError, ValueError, TypeError, AttributeError, KeyError) as e:
                message = f"Failed to fetch {name} for {project_key}: {e}"
                logger.warning(message)
                errors.append(message)
                continue
            count = save(project_id, items)
            logger.debug(f"Stored {count} {name} for {project_key}")
        return errors


class SyncEngine:
    """Runs project syncs with persisted watermarks and follow-up passes.

    Supports full sync, incremental sync from the last completed run's
    watermark, and resuming a failed run from its last checkpoint.
    """

    def __init__(
        self,
        jira: JiraSource,
        db: Database,
        config: MirrorConfig | None = None,
    ) -> None:
        """Initialize the sync engine.

        Args:
            jira: Jira source for API access
            db: Mirror database
            config: Mirror configuration
        """
        self.jira = jira
        self.db = db
        self.config = config or MirrorConfig.from_env()
        self.projects = SqliteProjectRepository(db)
        self.issues = SqliteIssueRepository(db)
        self.change_history = SqliteChangeHistoryRepository(db)
        self.snapshots = SqliteSnapshotRepository(db)
        self.metadata = SqliteMetadataRepository(db)
        self.sync_history = SqliteSyncHistoryRepository(db)
        self.project_sync = ProjectSync(
            jira,
            self.issues,
            self.change_history,
            self.metadata,
            self.sync_history,
            page_size=self.config.page_size,
            chunk_size=self.config.chunk_size,
            mark_deleted=self.config.mark_deleted,
        )
        self.snapshot_generator = SnapshotGenerator(
            self.issues, self.change_history, self.snapshots
        )
        self._state_path = self.config.state_path
        self._state: SyncState | None = None
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def state(self) -> SyncState:
        """Sync state, loaded from disk on first access."""
        if self._state is None:
            self._state = SyncState.load(self._state_path)
        return self._state

    @property
    def is_syncing(self) -> bool:
        return any(lock.locked() for lock in self._locks.values())

    def _save_state(self) -> None:
        self.state.save(self._state_path)

    async def sync_project_list(self) -> list[Project]:
        """Fetch all visible projects and upsert them locally."""
        projects = await self.jira.fetch_projects()
        self.projects.upsert(projects)
        logger.info(f"Synced {len(projects)} projects")
        return self.projects.find_all()

    async def resolve_project(self, project_key: str) -> Project:
        """Find a project locally, refreshing the project list once if needed."""
        project = self.projects.find_by_key(project_key)
        if project is None:
            await self.sync_project_list()
            project = self.projects.find_by_key(project_key)
        if project is None:
            raise NotFoundError(f"Project {project_key} not found in Jira")
        return project

    async def sync_project(
        self,
        project_key: str,
        full: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Sync one project.

        A failed previous run is resumed from its checkpoint unless ``full``
        is set; otherwise the sync starts at the last completed watermark.
        """
        project = await self.resolve_project(project_key)
        lock = self._locks.setdefault(project.key, asyncio.Lock())
        async with lock:
            return await self._sync_locked(project, full, on_progress)

    async def _sync_locked(
        self,
        project: Project,
        full: bool,
        on_progress: ProgressCallback | None,
    ) -> SyncResult:
        pstate = self.state.for_project(project.key)
        if full:
            after, skip = None, []
            pstate.checkpoint = None
        elif pstate.checkpoint:
            after, skip = pstate.checkpoint.last_issue_updated_at, pstate.checkpoint.boundary_keys
            logger.info(
                f"Resuming {project.key} after {pstate.checkpoint.last_issue_key} "
                f"({pstate.checkpoint.items_processed} issues already synced)"
            )
        else:
            after, skip = pstate.watermark, pstate.boundary_keys

        def save_checkpoint(checkpoint: SyncCheckpoint) -> None:
            pstate.checkpoint = checkpoint
            self._save_state()

        result = await self.project_sync.execute(
            project.key,
            project.id,
            after_updated_at=after,
            skip_keys=skip,
            on_progress=on_progress,
            on_checkpoint=save_checkpoint,
        )

        if result.success:
            if pstate.checkpoint is not None:
                pstate.watermark = pstate.checkpoint.last_issue_updated_at
                pstate.boundary_keys = pstate.checkpoint.boundary_keys
            elif full:
                pstate.watermark, pstate.boundary_keys = None, []
            pstate.checkpoint = None
            pstate.last_completed_at = utcnow()
            self.projects.mark_synced(project.id, pstate.last_completed_at)
        self._save_state()

        if result.success:
            self._after_sync(project, result, full)
        self.db.checkpoint()
        return result

    def _after_sync(self, project: Project, result: SyncResult, full: bool) -> None:
        """Snapshot and flattened-view refresh; failures become warnings."""
        if self.config.snapshots_after_sync:
            try:
                if full:
                    generated = self.generate_snapshots(project.key, resume=False)
                    result.snapshots_generated = generated.snapshots_generated
                else:
                    result.snapshots_generated = self.generate_snapshots_for_issues(
                        result.synced_issue_ids
                    )
            except JiraDbError as e:
                message = f"Snapshot generation failed for {project.key}: {e}"
                logger.warning(message)
                result.warnings.append(message)

        if self.config.expand_after_sync:
            from jira_db.mirror.fields import FieldSchemaEvolver

            evolver = FieldSchemaEvolver(
                self.jira,
                SqliteFieldRepository(self.db),
                SqliteExpandedIssueRepository(self.db),
                self.issues,
            )
            try:
                evolver.expand_issues(project.id)
            except JiraDbError as e:
                message = f"Expanding issues failed for {project.key}: {e}"
                logger.warning(message)
                result.warnings.append(message)

    async def sync_projects(
        self,
        projects: list[str] | None = None,
        full: bool = False,
    ) -> list[SyncResult]:
        """Sync several projects one after another.

        Args:
            projects: Project keys. Defaults to the configured keys, then to
                every project flagged for sync.
            full: Whether to do full syncs

        Returns:
            One SyncResult per project
        """
        if projects:
            keys = projects
        elif self.config.sync_projects:
            keys = self.config.sync_projects
        else:
            keys = [p.key for p in self.projects.find_enabled()]
        if not keys:
            logger.warning("No projects selected for sync")
            return []

        results = []
        for key in keys:
            try:
                results.append(await self.sync_project(key, full=full))
            except JiraDbError as e:
                # Raised before a sync_history row existed (unknown project, etc.)
                logger.error(f"Could not start sync for {key}: {e}")
                results.append(
                    SyncResult(project_key=key, success=False, error_message=str(e))
                )
        return results

    def generate_snapshots(
        self, project_key: str, resume: bool = True
    ) -> SnapshotGenerationResult:
        """Regenerate snapshots for a whole project, resuming a failed pass."""
        project = self.projects.find_by_key(project_key)
        if project is None:
            raise NotFoundError(f"Project {project_key} is not in the local database")
        pstate = self.state.for_project(project.key)
        checkpoint = pstate.snapshot_checkpoint if resume else None

        def save_checkpoint(cp: SnapshotCheckpoint) -> None:
            pstate.snapshot_checkpoint = cp

        try:
            result = self.snapshot_generator.execute(
                project.key, project.id, checkpoint=checkpoint, on_progress=save_checkpoint
            )
        finally:
            self._save_state()
        pstate.snapshot_checkpoint = None
        self._save_state()
        return result

    def generate_snapshots_for_issues(self, issue_ids: Sequence[str]) -> int:
        generated = 0
        for issue_id in issue_ids:
            issue = self.issues.find_by_id(issue_id)
            if issue is not None:
                generated += self.snapshot_generator.generate_for_issue(issue)
        return generated

    async def verify_project(self, project_key: str) -> dict[str, Any]:
        """Compare remote issue counts with the local mirror."""
        project = await self.resolve_project(project_key)
        remote_total = await self.jira.get_total_issue_count(project.key)
        remote_by_status = await self.jira.get_issue_count_by_status(project.key)
        local_total = self.issues.count_by_project(project.id)
        local_by_status = self.issues.count_by_status(project.id)

        by_status = [
            {
                "status": status,
                "remote": remote_by_status.get(status, 0),
                "local": local_by_status.get(status, 0),
            }
            for status in sorted(set(remote_by_status) | set(local_by_status))
        ]
        mismatches = [row for row in by_status if row["remote"] != row["local"]]
        if remote_total != local_total or mismatches:
            logger.warning(
                f"{project.key}: remote has {remote_total} issues, local has {local_total}"
            )
        return {
            "project_key": project.key,
            "remote_total": remote_total,
            "local_total": local_total,
            "matches": remote_total == local_total and not mismatches,
            "by_status": by_status,
        }

    def get_sync_status(self) -> dict[str, Any]:
        """Summarize every known project's sync state."""
        status = []
        for project in self.projects.find_all():
            pstate = self.state.projects.get(project.key) or ProjectSyncState()
            latest = self.sync_history.find_latest_by_project(project.id)
            status.append(
                {
                    "project_key": project.key,
                    "sync_enabled": project.sync_enabled,
                    "issues": self.issues.count_by_project(project.id),
                    "watermark": format_timestamp(pstate.watermark),
                    "last_completed_at": format_timestamp(pstate.last_completed_at),
                    "pending_checkpoint": pstate.checkpoint.to_dict() if pstate.checkpoint else None,
                    "latest_run": latest.model_dump(mode="json") if latest else None,
                }
            )
        return {"db_path": str(self.db.path), "projects": status}
