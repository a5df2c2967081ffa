"""
Utility functions for the application.
"""
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_int(value: Any, default: int = 0) -> int:
    """Coerce an upstream numeric field (often a float or numeric string) to int."""
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def clean_ref(value: Any) -> Optional[str]:
    """Normalize an identifier coming from a payload to a stripped string, or None."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None
