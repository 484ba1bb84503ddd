"""Environment variable helpers."""

from __future__ import annotations

import os

TRUTHY_VALUES = ("true", "1", "yes", "on")


def is_env_truthy(name: str, default: str = "") -> bool:
    """Check whether an environment variable is set to a truthy value.

    Args:
        name: Environment variable name
        default: Value used when the variable is unset

    Returns:
        True if the value is one of true/1/yes/on (case-insensitive)
    """
    return os.getenv(name, default).strip().lower() in TRUTHY_VALUES


def env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back to ``default``."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)
