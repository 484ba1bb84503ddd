"""Change-history extraction from an issue's raw changelog."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from jira_db.mirror.schemas import ChangeHistoryItem
from jira_db.utils.dates import parse_timestamp, utcnow

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


def extract_change_history(
    issue_id: str,
    issue_key: str,
    raw_json: str | Mapping[str, Any] | None,
) -> list[ChangeHistoryItem]:
    """Turn ``changelog.histories[].items[]`` into change-history records.

    Never raises: malformed JSON is logged and yields no history, a missing
    changelog is simply empty, items without a ``field`` are skipped and an
    unparsable ``created`` timestamp falls back to the current time.

    Args:
        issue_id: Jira issue id
        issue_key: Jira issue key
        raw_json: Full issue payload as a JSON string or decoded mapping

    Returns:
        One record per changed field, in changelog order
    """
    if not raw_json:
        return []
    if isinstance(raw_json, Mapping):
        data: Any = raw_json
    else:
        try:
            data = json.loads(raw_json)
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to parse raw JSON for {issue_key}: {e}")
            return []

    if not isinstance(data, Mapping):
        return []
    changelog = data.get("changelog")
    if not isinstance(changelog, Mapping):
        return []
    histories = changelog.get("histories")
    if not isinstance(histories, list):
        return []

    records: list[ChangeHistoryItem] = []
    for history in histories:
        if not isinstance(history, Mapping):
            continue
        author = history.get("author")
        if not isinstance(author, Mapping):
            author = {}
        changed_at = parse_timestamp(history.get("created"))
        if changed_at is None:
            logger.debug(f"Unparsable changelog timestamp on {issue_key}, using now")
            changed_at = utcnow()

        for item in history.get("items") or []:
            if not isinstance(item, Mapping) or not item.get("field"):
                continue
            records.append(
                ChangeHistoryItem(
                    issue_id=issue_id,
                    issue_key=issue_key,
                    history_id=str(history.get("id") or ""),
                    author_account_id=author.get("accountId"),
                    author_display_name=author.get("displayName"),
                    field=str(item["field"]),
                    field_type=item.get("fieldtype"),
                    from_value=_as_text(item.get("from")),
                    from_string=_as_text(item.get("fromString")),
                    to_value=_as_text(item.get("to")),
                    to_string=_as_text(item.get("toString")),
                    changed_at=changed_at,
                )
            )
    return records
