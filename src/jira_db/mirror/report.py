"""Aggregated report data for one or more mirrored projects."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import date, datetime, timedelta

from pydantic import BaseModel, Field

from jira_db.exceptions import NotFoundError
from jira_db.mirror.repositories import (
    SqliteChangeHistoryRepository,
    SqliteIssueRepository,
    SqliteProjectRepository,
)
from jira_db.mirror.schemas import Issue
from jira_db.utils.dates import utcnow

logger = logging.getLogger(__name__)

RESOLVED_MARKERS = ("done", "closed", "resolved", "complete")

# Above this many days the timeline is thinned to about 60 points
MAX_TIMELINE_POINTS = 90


class ChangeHistoryData(BaseModel):
    field: str
    from_string: str
    to_string: str
    changed_at: datetime
    author: str


class IssueReportData(BaseModel):
    key: str
    summary: str
    status: str
    priority: str
    assignee: str
    reporter: str
    issue_type: str
    sprint: str
    components: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    created_date: datetime | None = None
    updated_date: datetime | None = None
    change_history: list[ChangeHistoryData] = Field(default_factory=list)


class TimelineDataPoint(BaseModel):
    """Cumulative created/resolved counts on one day."""

    date: str
    created: int
    resolved: int
    active: int


class ProjectReportData(BaseModel):
    key: str
    name: str
    issues: list[IssueReportData] = Field(default_factory=list)
    status_counts: dict[str, int] = Field(default_factory=dict)
    priority_counts: dict[str, int] = Field(default_factory=dict)
    assignee_counts: dict[str, int] = Field(default_factory=dict)
    issue_type_counts: dict[str, int] = Field(default_factory=dict)
    component_counts: dict[str, int] = Field(default_factory=dict)
    sprint_counts: dict[str, int] = Field(default_factory=dict)
    timeline_data: list[TimelineDataPoint] = Field(default_factory=list)


class ReportData(BaseModel):
    generated_at: datetime
    projects: list[ProjectReportData] = Field(default_factory=list)
    total_issues: int = 0


def _first_resolution(history: list[ChangeHistoryData]) -> date | None:
    for change in sorted(history, key=lambda c: c.changed_at):
        if change.field.lower() != "status":
            continue
        target = change.to_string.lower()
        if any(marker in target for marker in RESOLVED_MARKERS):
            return change.changed_at.date()
    return None


def build_timeline(
    issues: list[IssueReportData], today: date | None = None
) -> list[TimelineDataPoint]:
    """Daily cumulative created/resolved/active counts up to ``today``."""
    created_by_day: Counter[date] = Counter()
    resolved_by_day: Counter[date] = Counter()
    for issue in issues:
        if issue.created_date is not None:
            created_by_day[issue.created_date.date()] += 1
        resolved = _first_resolution(issue.change_history)
        if resolved is not None:
            resolved_by_day[resolved] += 1

    if not created_by_day:
        return []

    end = today or utcnow().date()
    day = min(created_by_day)
    created = resolved = 0
    timeline = []
    while day <= end:
        created += created_by_day[day]
        resolved += resolved_by_day[day]
        timeline.append(
            TimelineDataPoint(
                date=day.isoformat(),
                created=created,
                resolved=resolved,
                active=max(created - resolved, 0),
            )
        )
        day += timedelta(days=1)

    if len(timeline) > MAX_TIMELINE_POINTS:
        step = len(timeline) // 60
        timeline = [point for i, point in enumerate(timeline) if i % step == 0]
    return timeline


class ReportBuilder:
    """Collect per-project breakdowns and issue histories for rendering."""

    def __init__(
        self,
        projects: SqliteProjectRepository,
        issues: SqliteIssueRepository,
        change_history: SqliteChangeHistoryRepository,
    ) -> None:
        self.projects = projects
        self.issues = issues
        self.change_history = change_history

    def _issue_data(self, issue: Issue) -> IssueReportData:
        history = [
            ChangeHistoryData(
                field=item.field,
                from_string=item.from_string or "-",
                to_string=item.to_string or "-",
                changed_at=item.changed_at,
                author=item.author_display_name or "Unknown",
            )
            for item in self.change_history.find_by_issue_key(issue.key)
        ]
        return IssueReportData(
            key=issue.key,
            summary=issue.summary,
            status=issue.status or "Unknown",
            priority=issue.priority or "Unknown",
            assignee=issue.assignee or "Unassigned",
            reporter=issue.reporter or "Unknown",
            issue_type=issue.issue_type or "Unknown",
            sprint=issue.sprint or "No Sprint",
            components=issue.components or [],
            labels=issue.labels or [],
            created_date=issue.created_date,
            updated_date=issue.updated_date,
            change_history=history,
        )

    def build_project(self, project_key: str) -> ProjectReportData:
        project = self.projects.find_by_key(project_key)
        if project is None:
            raise NotFoundError(f"Project {project_key} is not in the local database")

        issues = [self._issue_data(i) for i in self.issues.find_by_project(project.id)]
        components: Counter[str] = Counter()
        for issue in issues:
            components.update(issue.components)

        return ProjectReportData(
            key=project.key,
            name=project.name,
            issues=issues,
            status_counts=dict(Counter(i.status for i in issues)),
            priority_counts=dict(Counter(i.priority for i in issues)),
            assignee_counts=dict(Counter(i.assignee for i in issues)),
            issue_type_counts=dict(Counter(i.issue_type for i in issues)),
            component_counts=dict(components),
            sprint_counts=dict(Counter(i.sprint for i in issues)),
            timeline_data=build_timeline(issues),
        )

    def build(self, project_keys: list[str] | None = None) -> ReportData:
        """Build report data for the given projects, or every enabled project."""
        keys = project_keys or [p.key for p in self.projects.find_enabled()]
        projects = [self.build_project(key) for key in keys]
        total = sum(len(p.issues) for p in projects)
        logger.info(f"Built report for {len(projects)} projects ({total} issues)")
        return ReportData(generated_at=utcnow(), projects=projects, total_issues=total)
