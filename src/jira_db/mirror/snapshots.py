"""Point-in-time issue snapshots derived from change history.

Snapshots answer "what did this issue look like on date X". For an issue
with k distinct change timestamps there are k+1 versions; version N is
valid on [valid_from, valid_to) and ``valid_to`` of version N equals
``valid_from`` of version N+1. Only the latest version has ``valid_to``
None, and only it carries the raw payload.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from jira_db.mirror.repositories import (
    ChangeHistoryRepository,
    IssueRepository,
    SnapshotRepository,
)
from jira_db.mirror.schemas import ChangeHistoryItem, Issue, IssueSnapshot
from jira_db.utils.dates import utcnow

logger = logging.getLogger(__name__)

# Changelog field names that map onto a different snapshot field
FIELD_ALIASES = {
    "issueparentassociation": "parent",
    "parent link": "parent",
}

TRACKED_FIELDS = (
    "summary",
    "description",
    "status",
    "priority",
    "assignee",
    "reporter",
    "issuetype",
    "resolution",
    "sprint",
    "parent",
)


def _state_key(field: str) -> str:
    name = field.lower()
    return FIELD_ALIASES.get(name, name)


def _current_state(issue: Issue) -> dict[str, str]:
    values = {
        "summary": issue.summary,
        "description": issue.description,
        "status": issue.status,
        "priority": issue.priority,
        "assignee": issue.assignee,
        "reporter": issue.reporter,
        "issuetype": issue.issue_type,
        "resolution": issue.resolution,
        "sprint": issue.sprint,
        "parent": issue.parent_key,
    }
    return {k: v for k, v in values.items() if v is not None}


def _snapshot(
    issue: Issue,
    version: int,
    valid_from: datetime,
    valid_to: datetime | None,
    state: dict[str, str],
    created_at: datetime,
) -> IssueSnapshot:
    current = valid_to is None
    return IssueSnapshot(
        issue_id=issue.id,
        issue_key=issue.key,
        project_id=issue.project_id,
        version=version,
        valid_from=valid_from,
        valid_to=valid_to,
        summary=state.get("summary", issue.summary),
        description=state.get("description"),
        status=state.get("status"),
        priority=state.get("priority"),
        assignee=state.get("assignee"),
        reporter=state.get("reporter"),
        issue_type=state.get("issuetype"),
        resolution=state.get("resolution"),
        labels=issue.labels,
        components=issue.components,
        fix_versions=issue.fix_versions,
        sprint=state.get("sprint"),
        parent_key=state.get("parent"),
        raw_data=issue.raw_json if current else None,
        updated_date=issue.updated_date if current else None,
        created_at=created_at,
    )


def build_snapshots(
    issue: Issue,
    history: Sequence[ChangeHistoryItem],
    now: datetime | None = None,
) -> list[IssueSnapshot]:
    """Reconstruct every version of an issue.

    The initial state is found by undoing changes from newest to oldest
    starting at the issue's current values, then changes are replayed
    forward one timestamp at a time.

    Args:
        issue: Issue with its current field values
        history: All change-history records of the issue, any order
        now: Creation time stamped on the snapshots

    Returns:
        Snapshots ordered by version, starting at 1
    """
    now = now or utcnow()
    created = issue.created_date or now

    grouped: dict[datetime, list[ChangeHistoryItem]] = defaultdict(list)
    for item in history:
        grouped[item.changed_at].append(item)
    timestamps = sorted(grouped)

    if not timestamps:
        return [_snapshot(issue, 1, created, None, _current_state(issue), now)]

    state = _current_state(issue)
    for stamp in reversed(timestamps):
        for change in reversed(grouped[stamp]):
            key = _state_key(change.field)
            previous = change.from_string if change.from_string is not None else change.from_value
            if previous is not None:
                state[key] = previous
            else:
                state.pop(key, None)

    snapshots = [_snapshot(issue, 1, created, timestamps[0], state, now)]
    for index, stamp in enumerate(timestamps):
        state = dict(state)
        for change in grouped[stamp]:
            key = _state_key(change.field)
            value = change.to_string if change.to_string is not None else change.to_value
            if value is not None:
                state[key] = value
            else:
                state.pop(key, None)
        valid_to = timestamps[index + 1] if index + 1 < len(timestamps) else None
        snapshots.append(_snapshot(issue, index + 2, stamp, valid_to, state, now))
    return snapshots


@dataclass
class SnapshotCheckpoint:
    """Position in a project-wide snapshot pass, for resuming after a failure."""

    last_issue_id: str
    last_issue_key: str
    issues_processed: int
    total_issues: int
    snapshots_generated: int


@dataclass
class SnapshotGenerationResult:
    project_key: str
    issues_processed: int = 0
    snapshots_generated: int = 0
    checkpoint: SnapshotCheckpoint | None = None


class SnapshotGenerator:
    """Regenerate snapshots for a project, one page of issues at a time."""

    def __init__(
        self,
        issues: IssueRepository,
        history: ChangeHistoryRepository,
        snapshots: SnapshotRepository,
        page_size: int = 100,
    ) -> None:
        self.issues = issues
        self.history = history
        self.snapshots = snapshots
        self.page_size = page_size

    def generate_for_issue(self, issue: Issue) -> int:
        """Replace all snapshots of one issue; returns the number written."""
        built = build_snapshots(issue, self.history.find_by_issue_id(issue.id))
        return self.snapshots.replace_for_issue(issue.id, built)

    def execute(
        self,
        project_key: str,
        project_id: str,
        checkpoint: SnapshotCheckpoint | None = None,
        on_progress: Callable[[SnapshotCheckpoint], None] | None = None,
    ) -> SnapshotGenerationResult:
        """Generate snapshots for every live issue of a project.

        Issues are walked in id order; pass the last checkpoint to continue
        after the issue it names.
        """
        result = SnapshotGenerationResult(project_key=project_key)
        after_id = None
        if checkpoint:
            after_id = checkpoint.last_issue_id
            result.issues_processed = checkpoint.issues_processed
            result.snapshots_generated = checkpoint.snapshots_generated
            logger.info(
                f"Resuming snapshots for {project_key} after {checkpoint.last_issue_key}"
            )

        while True:
            page = self.issues.find_by_project_after_id(project_id, after_id, self.page_size)
            for issue in page.issues:
                result.snapshots_generated += self.generate_for_issue(issue)
                result.issues_processed += 1
            if page.issues:
                last = page.issues[-1]
                after_id = last.id
                result.checkpoint = SnapshotCheckpoint(
                    last_issue_id=last.id,
                    last_issue_key=last.key,
                    issues_processed=result.issues_processed,
                    total_issues=page.total_count,
                    snapshots_generated=result.snapshots_generated,
                )
                if on_progress:
                    on_progress(result.checkpoint)
            if not page.has_more:
                break

        logger.info(
            f"Generated {result.snapshots_generated} snapshots for "
            f"{result.issues_processed} issues in {project_key}"
        )
        return result
