"""Abstract client interfaces for the two remote systems.

The reconciliation engine only sees these ABCs. The httpx implementations
live beside them; tests substitute in-memory doubles.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.app.sync.schemas import CanonicalRecord, EntityKind, TargetRecordWrite


class RemoteApiError(Exception):
    """A remote system answered with a failure status.

    The message embeds ``status: NNN`` so the retry classifier and the
    error categorizer read the status the same way for every client.
    Request URLs are left out because the source system authenticates
    with a query-string token.

    Attributes:
        service: ``"source"`` or ``"target"``.
        operation: Client method that failed.
        status_code: HTTP status returned.
    """

    is_api_error = True

    def __init__(self, service: str, operation: str, status_code: int, detail: str = "") -> None:
        self.service = service
        self.operation = operation
        self.status_code = status_code
        message = f"{service} API {operation} failed with status: {status_code}"
        if detail:
            message += f"\n{detail[:500]}"
        super().__init__(message)


class SourceClient(ABC):
    """The shop management system: owns quotes and work orders."""

    service_name = "source"

    @abstractmethod
    async def get_record(self, kind: EntityKind, source_id: str) -> CanonicalRecord:
        """Fetch the authoritative record for ``source_id``.

        Raises:
            RemoteCallError: The fetch failed after retries.
        """
        ...

    @abstractmethod
    async def update_fields(self, kind: EntityKind, source_id: str, fields: dict[str, Any]) -> None:
        """Write canonical (snake_case) field values back to a record."""
        ...

    async def close(self) -> None:
        """Release network resources."""


class TargetClient(ABC):
    """The project board: owns tasks with custom fields."""

    service_name = "target"

    @abstractmethod
    async def find_by_source_id(self, kind: EntityKind, source_id: str) -> list[CanonicalRecord]:
        """Every target record whose identifying field equals ``source_id``."""
        ...

    @abstractmethod
    async def get_record(self, kind: EntityKind, target_id: str) -> CanonicalRecord:
        """Fetch one target record by id."""
        ...

    @abstractmethod
    async def create_record(self, kind: EntityKind, write: TargetRecordWrite) -> CanonicalRecord:
        """Create a target record and return it (with its new id)."""
        ...

    @abstractmethod
    async def update_record(
        self, kind: EntityKind, target_id: str, write: TargetRecordWrite
    ) -> CanonicalRecord:
        """Overwrite the managed fields of an existing target record."""
        ...

    async def close(self) -> None:
        """Release network resources."""
