"""Timestamp helpers.

Jira returns timestamps like ``2024-01-15T10:30:00.000+0000`` which
``datetime.fromisoformat`` only accepts on newer interpreters, so parsing
goes through a short list of explicit formats.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S%z",
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: object) -> datetime | None:
    """Parse a Jira or ISO-8601 timestamp into an aware UTC datetime.

    Naive values are assumed to be UTC. Returns None for empty or
    unparsable input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in _FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date(value: object) -> date | None:
    """Parse a ``YYYY-MM-DD`` date, returning None when absent or invalid."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize a datetime for storage (ISO-8601, UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def format_jql_timestamp(value: datetime) -> str:
    """Format a datetime for a JQL ``updated >=`` clause (minute precision, UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M")
