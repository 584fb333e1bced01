"""Echo-loop detection for writes between the two systems.

A write from one system to the other produces a change notification on
the receiving side. Propagating that notification back unchanged would
bounce the same value between the systems forever. Before a write that
was triggered by a single-field change, the guard compares the candidate
value with the value already stored on the side about to be written and
skips the write when both normalize to the same thing.

Single-field rule: bookkeeping keys (``updated_at``, ``updated_by_id``,
``lock_version``) are ignored when sizing a change-set. A change-set is
single-field when exactly one key remains and that key is tracked.
Multi-field change-sets always proceed.

The guard fails open: a lookup or normalization error means "proceed".
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from src.app.sync.field_mapping import TRACKED_BY_SOURCE_FIELD, FieldType, TrackedField
from src.app.sync.normalize import normalize_date, normalize_user_ids
from src.app.sync.users import UserDirectory

logger = structlog.get_logger(__name__)

LOOP_PREVENTION = "loop_prevention"
BOOKKEEPING_FIELDS = frozenset({"updated_at", "updated_by_id", "lock_version"})


@dataclass(frozen=True)
class LoopCheck:
    """Verdict of one loop check."""

    skip: bool
    field: str
    reason: str | None = None
    candidate: Any = None
    current: Any = None


def single_tracked_field(changes: dict[str, Any] | None) -> TrackedField | None:
    """Tracked source field a change-set is limited to, if any.

    >>> single_tracked_field({"due_date": ("2024-01-01", "2024-01-05"), "updated_at": (1, 2)}).source_field
    'due_date'
    """
    if not changes:
        return None
    meaningful = [name for name in changes if name not in BOOKKEEPING_FIELDS]
    if len(meaningful) != 1:
        return None
    return TRACKED_BY_SOURCE_FIELD.get(meaningful[0])


class LoopGuard:
    """Compares candidate and stored values by field type.

    Args:
        users: Directory used to fold a person's identifiers into one key.
    """

    def __init__(self, users: UserDirectory) -> None:
        self._users = users

    def normalize(self, field_type: FieldType, value: Any) -> Any:
        if field_type == FieldType.date:
            return normalize_date(value)
        return normalize_user_ids(value, self._users)

    def compare(self, tracked: TrackedField, candidate: Any, current: Any) -> LoopCheck:
        """Decide from two already-fetched values."""
        try:
            normalized_candidate = self.normalize(tracked.field_type, candidate)
            normalized_current = self.normalize(tracked.field_type, current)
        except Exception:
            logger.warning("loop_guard.normalize_failed", field=tracked.source_field, exc_info=True)
            return LoopCheck(skip=False, field=tracked.source_field)

        skip = normalized_candidate == normalized_current
        check = LoopCheck(
            skip=skip,
            field=tracked.source_field,
            reason=LOOP_PREVENTION if skip else None,
            candidate=_loggable(normalized_candidate),
            current=_loggable(normalized_current),
        )
        logger.info(
            "loop_guard.skip" if skip else "loop_guard.proceed",
            field=tracked.source_field,
            candidate=check.candidate,
            current=check.current,
        )
        return check

    async def check(
        self,
        tracked: TrackedField,
        candidate: Any,
        fetch_current: Callable[[], Awaitable[Any]],
    ) -> LoopCheck:
        """Fetch the stored value, then compare.

        Args:
            tracked: Field being written.
            candidate: Value about to be written.
            fetch_current: Reads the value currently stored on the side
                being written to.

        Returns:
            LoopCheck; ``skip`` is False whenever the lookup fails.
        """
        try:
            current = await fetch_current()
        except Exception:
            logger.warning("loop_guard.lookup_failed", field=tracked.source_field, exc_info=True)
            return LoopCheck(skip=False, field=tracked.source_field)
        return self.compare(tracked, candidate, current)


def _loggable(value: Any) -> Any:
    return sorted(value) if isinstance(value, frozenset) else value
