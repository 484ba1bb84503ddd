"""Local SQL mirror of Jira projects, issues, change history and snapshots."""

__version__ = "0.1.0"
