"""Value normalization used for loop-prevention comparisons.

Dates compare on the calendar day only (time-of-day and zone dropped, UTC
used for zoned timestamps). Assignee values compare as sets of canonical
person keys, so a person referenced by any of their identifiers in either
system compares equal to themselves.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.app.sync.users import UserDirectory

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FALLBACK_FORMATS = ("%m/%d/%Y", "%Y/%m/%d", "%d %b %Y", "%b %d, %Y")


def normalize_date(value: Any) -> str:
    """Return ``YYYY-MM-DD`` for a date-like value, or ``""`` if none/invalid.

    >>> normalize_date("2024-12-15T05:00:00.000Z")
    '2024-12-15'
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip().strip('"').strip()
    if not text:
        return ""
    if _DATE_ONLY.match(text):
        return text

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _FALLBACK_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return ""
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date().isoformat()


def split_user_ids(value: Any) -> list[str]:
    """Split a raw assignee value into identifiers.

    Accepts ``None``, a list, or a string that may be quoted and
    comma-separated (the target system's user custom-field format).
    """
    if value is None:
        return []
    if isinstance(value, str):
        cleaned = value.strip().strip('"').strip()
        items: Iterable[Any] = cleaned.split(",") if cleaned else []
    elif isinstance(value, Iterable):
        items = value
    else:
        items = [value]
    return [str(item).strip().strip('"') for item in items if str(item).strip().strip('"')]


def normalize_user_ids(value: Any, directory: UserDirectory | None = None) -> frozenset[str]:
    """Canonical identifier set for an assignee value."""
    ids = split_user_ids(value)
    if directory is None:
        return frozenset(ids)
    return frozenset(directory.canonical_id(user_id) for user_id in ids)
