"""Async Jira Cloud REST client used as the sync source."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from jira_db.exceptions import ExternalServiceError, NotFoundError, TransientServiceError
from jira_db.jira.parsing import (
    parse_component,
    parse_field,
    parse_issue,
    parse_issue_type,
    parse_priority,
    parse_project,
    parse_statuses,
    parse_version,
    text_to_adf,
)
from jira_db.mirror.config import MirrorConfig
from jira_db.mirror.schemas import (
    Component,
    CreatedIssue,
    FixVersion,
    Issue,
    IssueType,
    JiraField,
    Label,
    Priority,
    Project,
    Status,
    Transition,
)
from jira_db.utils.dates import format_jql_timestamp

logger = logging.getLogger(__name__)

# JQL dates are read in the account's time zone; widen the window so a UTC
# watermark never skips updates. Already-persisted issues are filtered locally.
JQL_TIMEZONE_MARGIN = timedelta(hours=14)

MAX_ATTEMPTS = 5


@dataclass
class IssueBatch:
    """One page of a project's issues, ordered by ``updated`` ascending."""

    issues: list[Issue] = field(default_factory=list)
    total: int = 0
    fetched_so_far: int = 0
    has_more: bool = False
    next_page_token: str | None = None


class JiraSource(Protocol):
    """What the sync pipeline needs from Jira."""

    async def fetch_projects(self) -> list[Project]: ...

    async def fetch_project_issues_batch(
        self,
        project_key: str,
        after_updated_at: datetime | None = None,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> IssueBatch: ...

    async def fetch_project_statuses(self, project_key: str) -> list[Status]: ...

    async def fetch_priorities(self) -> list[Priority]: ...

    async def fetch_project_issue_types(self, project_id: str) -> list[IssueType]: ...

    async def fetch_project_labels(self, project_key: str) -> list[Label]: ...

    async def fetch_project_components(self, project_key: str) -> list[Component]: ...

    async def fetch_project_versions(self, project_key: str) -> list[FixVersion]: ...

    async def fetch_fields(self) -> list[JiraField]: ...

    async def get_total_issue_count(self, project_key: str) -> int: ...

    async def get_issue_count_by_status(self, project_key: str) -> dict[str, int]: ...


def build_project_jql(project_key: str, after_updated_at: datetime | None = None) -> str:
    """JQL for a project's issues in watermark order."""
    jql = f'project = "{project_key}"'
    if after_updated_at is not None:
        since = format_jql_timestamp(after_updated_at - JQL_TIMEZONE_MARGIN)
        jql += f' AND updated >= "{since}"'
    return f"{jql} ORDER BY updated ASC, key ASC"


class JiraClient:
    """Jira Cloud REST v3 client.

    Authenticates with basic auth (account email + API token) and retries
    rate-limited and 5xx responses with exponential backoff.
    """

    def __init__(
        self,
        config: MirrorConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Mirror configuration with Jira URL and credentials
            transport: Optional httpx transport, used by tests
        """
        self.config = config or MirrorConfig.from_env()
        self.config.validate()
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        # page token -> (issues fetched before that page, total)
        self._page_offsets: dict[str, tuple[int, int]] = {}

    @property
    def http(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.config.jira_url,
                auth=(self.config.jira_username, self.config.jira_api_token),
                headers={"Accept": "application/json"},
                timeout=self.config.request_timeout,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, TransientServiceError)),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Jira API retry {retry_state.attempt_number}/{MAX_ATTEMPTS} "
            f"after {retry_state.outcome.exception() if retry_state.outcome else 'unknown error'}"
        ),
    )
    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self.http.request(method, path, **kwargs)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientServiceError(
                f"Jira returned {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )
        return response

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ExternalServiceError(f"Cannot reach Jira ({method} {path}): {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"Jira resource not found: {path}")
        if response.is_error:
            raise ExternalServiceError(
                f"Jira API error {response.status_code} for {method} {path}: "
                f"{response.text[:300]}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"Jira returned a non-JSON body for {method} {path}: "
                f"{response.text[:100]!r}",
                status_code=response.status_code,
            ) from e

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        return await self._request("POST", path, json=body)

    async def test_connection(self) -> dict[str, Any]:
        """Return the authenticated user, raising if credentials are rejected."""
        return await self._get("/rest/api/3/myself")

    async def fetch_projects(self) -> list[Project]:
        data = await self._get("/rest/api/3/project")
        return [parse_project(p) for p in data or []]

    async def fetch_project(self, project_key: str) -> Project:
        return parse_project(await self._get(f"/rest/api/3/project/{project_key}"))

    async def _count_jql(self, jql: str) -> int:
        data = await self._post("/rest/api/3/search/approximate-count", {"jql": jql})
        return int((data or {}).get("count", 0))

    async def fetch_project_issues_batch(
        self,
        project_key: str,
        after_updated_at: datetime | None = None,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> IssueBatch:
        """Fetch one page of issues with changelogs, oldest update first.

        Pass the returned ``next_page_token`` to continue; a token is only
        meaningful together with the same ``after_updated_at``.
        """
        jql = build_project_jql(project_key, after_updated_at)
        params: dict[str, Any] = {
            "jql": jql,
            "fields": "*navigable",
            "expand": "changelog",
            "maxResults": max_results,
        }
        if page_token:
            params["nextPageToken"] = page_token
            fetched_before, total = self._page_offsets.pop(page_token, (0, -1))
        else:
            fetched_before, total = 0, await self._count_jql(jql)

        data = await self._get("/rest/api/3/search/jql", params=params) or {}
        issues = [parse_issue(raw) for raw in data.get("issues") or []]
        next_token = data.get("nextPageToken")
        has_more = bool(next_token) and not data.get("isLast", False) and bool(issues)
        fetched = fetched_before + len(issues)
        if has_more:
            self._page_offsets[next_token] = (fetched, total)

        logger.debug(
            f"Fetched {len(issues)} issues for {project_key} "
            f"({fetched}/{total}, more={has_more})"
        )
        return IssueBatch(
            issues=issues,
            total=max(total, fetched),
            fetched_so_far=fetched,
            has_more=has_more,
            next_page_token=next_token if has_more else None,
        )

    async def fetch_project_issues(self, project_key: str) -> list[Issue]:
        """Fetch every issue of a project (all pages)."""
        issues: list[Issue] = []
        token: str | None = None
        while True:
            batch = await self.fetch_project_issues_batch(project_key, page_token=token)
            issues.extend(batch.issues)
            if not batch.has_more:
                return issues
            token = batch.next_page_token

    async def fetch_project_statuses(self, project_key: str) -> list[Status]:
        return parse_statuses(await self._get(f"/rest/api/3/project/{project_key}/statuses"))

    async def fetch_priorities(self) -> list[Priority]:
        return [parse_priority(p) for p in await self._get("/rest/api/3/priority") or []]

    async def fetch_project_issue_types(self, project_id: str) -> list[IssueType]:
        data = await self._get("/rest/api/3/issuetype/project", {"projectId": project_id})
        return [parse_issue_type(t) for t in data or []]

    async def fetch_project_labels(self, project_key: str) -> list[Label]:
        """Collect labels in use by a project's issues."""
        labels: set[str] = set()
        token: str | None = None
        while True:
            params: dict[str, Any] = {
                "jql": f'project = "{project_key}" AND labels is not EMPTY',
                "fields": "labels",
                "maxResults": 100,
            }
            if token:
                params["nextPageToken"] = token
            data = await self._get("/rest/api/3/search/jql", params) or {}
            for issue in data.get("issues") or []:
                labels.update((issue.get("fields") or {}).get("labels") or [])
            token = data.get("nextPageToken")
            if not token or data.get("isLast", False):
                break
        return [Label(name=name) for name in sorted(labels)]

    async def fetch_project_components(self, project_key: str) -> list[Component]:
        data = await self._get(f"/rest/api/3/project/{project_key}/components")
        return [parse_component(c) for c in data or []]

    async def fetch_project_versions(self, project_key: str) -> list[FixVersion]:
        data = await self._get(f"/rest/api/3/project/{project_key}/versions")
        return [parse_version(v) for v in data or []]

    async def fetch_fields(self) -> list[JiraField]:
        return [parse_field(f) for f in await self._get("/rest/api/3/field") or []]

    async def get_total_issue_count(self, project_key: str) -> int:
        return await self._count_jql(f'project = "{project_key}"')

    async def get_issue_count_by_status(self, project_key: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for status in await self.fetch_project_statuses(project_key):
            counts[status.name] = await self._count_jql(
                f'project = "{project_key}" AND status = "{status.name}"'
            )
        return counts

    async def create_issue(
        self,
        project_key: str,
        summary: str,
        description: str | None = None,
        issue_type: str = "Task",
    ) -> CreatedIssue:
        fields: dict[str, Any] = {
            "project": {"key": project_key},
            "summary": summary,
            "issuetype": {"name": issue_type},
        }
        if description:
            fields["description"] = text_to_adf(description)
        data = await self._post("/rest/api/3/issue", {"fields": fields}) or {}
        logger.info(f"Created issue {data.get('key')} in {project_key}")
        return CreatedIssue(id=str(data.get("id", "")), key=data.get("key", ""), self_url=data.get("self"))

    async def get_issue_transitions(self, issue_key: str) -> list[Transition]:
        data = await self._get(f"/rest/api/3/issue/{issue_key}/transitions") or {}
        return [Transition.from_api(t) for t in data.get("transitions") or []]

    async def transition_issue(self, issue_key: str, transition_id: str) -> None:
        await self._post(
            f"/rest/api/3/issue/{issue_key}/transitions",
            {"transition": {"id": transition_id}},
        )
        logger.info(f"Transitioned {issue_key} with transition {transition_id}")
