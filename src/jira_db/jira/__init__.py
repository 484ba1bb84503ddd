"""Jira REST access."""

from jira_db.jira.client import IssueBatch, JiraClient, JiraSource

__all__ = ["IssueBatch", "JiraClient", "JiraSource"]
