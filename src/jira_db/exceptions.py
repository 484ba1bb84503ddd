"""Error types raised across the mirror.

Every layer raises one of these so callers can tell a missing record from a
rejected query, a store failure, a Jira failure or a bad configuration.
"""

from __future__ import annotations


class JiraDbError(Exception):
    """Base class for all jira-db errors."""


class NotFoundError(JiraDbError):
    """A requested project, issue or record does not exist."""


class ValidationError(JiraDbError):
    """Input was rejected, e.g. a non read-only SQL query."""


class RepositoryError(JiraDbError):
    """The local store failed to read or write."""


class ExternalServiceError(JiraDbError):
    """The Jira API (or another remote service) failed or was unreachable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientServiceError(ExternalServiceError):
    """A remote failure worth retrying (rate limit or 5xx)."""


class ConfigurationError(JiraDbError):
    """Required settings such as Jira credentials are missing or invalid."""
