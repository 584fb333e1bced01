"""User directory shared by both systems.

One person can carry three identifiers: the source system user id, the
target system user id, and a legacy target id that older target API
responses and user-type custom fields still return. The directory
translates between them and provides the canonical key (the source id)
used when comparing assignee sets.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class UserEntry(BaseModel):
    """One person known to both systems."""

    name: str
    source_id: str
    target_id: str
    target_legacy_id: str | None = None


class UserDirectory:
    """Lookup table over UserEntry records.

    Args:
        entries: Known people.
        default_target_id: Target user assigned when a source user is unknown.
    """

    def __init__(self, entries: list[UserEntry], default_target_id: str | None = None) -> None:
        self._entries = list(entries)
        self._default_target_id = default_target_id or None
        self._by_any_id: dict[str, UserEntry] = {}
        for entry in self._entries:
            for key in (entry.source_id, entry.target_id, entry.target_legacy_id):
                if key:
                    self._by_any_id[key] = entry

    @classmethod
    def from_settings(cls, settings: Any) -> UserDirectory:
        """Build the directory from USER_DIRECTORY_JSON."""
        entries = [UserEntry(**raw) for raw in settings.get_user_directory_entries()]
        logger.info("users.directory_loaded", count=len(entries))
        return cls(entries, default_target_id=settings.DEFAULT_TARGET_USER_ID)

    def __len__(self) -> int:
        return len(self._entries)

    def find(self, user_id: str | None) -> UserEntry | None:
        """Entry owning ``user_id`` in any of its formats."""
        if not user_id:
            return None
        return self._by_any_id.get(user_id)

    def canonical_id(self, user_id: str) -> str:
        """Source id for a known person; the identifier itself otherwise."""
        entry = self.find(user_id)
        return entry.source_id if entry else user_id

    def to_target(self, source_id: str | None) -> str | None:
        """Target user id for a source user, falling back to the default."""
        entry = self.find(source_id)
        if entry:
            return entry.target_id
        if source_id:
            logger.warning("users.unmapped_source_user", source_id=source_id)
        return self._default_target_id if source_id else None

    def to_source(self, target_id: str | None) -> str | None:
        """Source user id for either target id format, or None if unknown."""
        entry = self.find(target_id)
        if entry is None and target_id:
            logger.warning("users.unmapped_target_user", target_id=target_id)
        return entry.source_id if entry else None
