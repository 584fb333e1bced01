"""Shared test fixtures for the reconciliation engine.

Provides:
- InMemorySourceClient / InMemoryTargetClient: client doubles implementing
  the client ABCs, recording every call
- A two-person UserDirectory with legacy target ids
- Factories for source records and target tasks
- An AsyncMock execution repository and a recorder wired to it
"""

from __future__ import annotations

import itertools
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.app.observability.recorder import ExecutionRecorder
from src.app.sync.clients.base import RemoteApiError, SourceClient, TargetClient
from src.app.sync.schemas import CanonicalRecord, EntityKind, SystemSide, TargetRecordWrite
from src.app.sync.users import UserDirectory, UserEntry

ALICE = UserEntry(name="Alice Park", source_id="u-alice", target_id="KUAAAA", target_legacy_id="1001")
BOB = UserEntry(name="Bob Chen", source_id="u-bob", target_id="KUBBBB", target_legacy_id="1002")
DEFAULT_TARGET_USER = "KUDEFAULT"

STATUS_IDS = {"Approved": "ST-APPROVED", "In Production": "ST-PRODUCTION", "void": "ST-VOID"}


# ── In-Memory Client Doubles ─────────────────────────────────────────────────


class InMemorySourceClient(SourceClient):
    """Source system double keyed by (kind, id)."""

    def __init__(self) -> None:
        self.records: dict[tuple[EntityKind, str], CanonicalRecord] = {}
        self.updates: list[tuple[EntityKind, str, dict[str, Any]]] = []
        self.get_calls = 0

    def add(self, record: CanonicalRecord) -> None:
        self.records[(record.kind, record.id)] = record

    async def get_record(self, kind: EntityKind, source_id: str) -> CanonicalRecord:
        self.get_calls += 1
        record = self.records.get((kind, source_id))
        if record is None:
            raise RemoteApiError("source", f"get_{kind.value}", 404, "Record not found")
        return record.model_copy(deep=True)

    async def update_fields(self, kind: EntityKind, source_id: str, fields: dict[str, Any]) -> None:
        self.updates.append((kind, source_id, dict(fields)))
        record = self.records[(kind, source_id)]
        record.fields.update(fields)


class InMemoryTargetClient(TargetClient):
    """Target system double; tasks carry logical field names."""

    def __init__(self) -> None:
        self.tasks: dict[str, CanonicalRecord] = {}
        self.writes: list[tuple[str, str, TargetRecordWrite]] = []
        self._ids = itertools.count(1)

    def add(self, record: CanonicalRecord) -> None:
        self.tasks[record.id] = record

    async def find_by_source_id(self, kind: EntityKind, source_id: str) -> list[CanonicalRecord]:
        return [
            task.model_copy(deep=True)
            for task in self.tasks.values()
            if task.kind == kind and task.get("source_id") == source_id
        ]

    async def get_record(self, kind: EntityKind, target_id: str) -> CanonicalRecord:
        task = self.tasks.get(target_id)
        if task is None:
            raise RemoteApiError("target", "get_task", 404, f"task {target_id} not found")
        return task.model_copy(deep=True)

    def _apply(self, task: CanonicalRecord, write: TargetRecordWrite) -> None:
        if write.title is not None:
            task.title = write.title
        if write.due_date is not None:
            task.fields["due_date"] = write.due_date
        if write.status_id is not None:
            task.fields["status_id"] = write.status_id
        task.fields.update(write.fields)
        responsibles = [r for r in task.fields.get("responsible_ids", []) if r not in write.remove_responsibles]
        responsibles += [r for r in write.add_responsibles if r not in responsibles]
        task.fields["responsible_ids"] = responsibles

    async def create_record(self, kind: EntityKind, write: TargetRecordWrite) -> CanonicalRecord:
        target_id = f"T{next(self._ids)}"
        task = CanonicalRecord(system=SystemSide.target, kind=kind, id=target_id)
        self._apply(task, write)
        self.tasks[target_id] = task
        self.writes.append(("create", target_id, write))
        return task.model_copy(deep=True)

    async def update_record(
        self, kind: EntityKind, target_id: str, write: TargetRecordWrite
    ) -> CanonicalRecord:
        task = self.tasks[target_id]
        self._apply(task, write)
        self.writes.append(("update", target_id, write))
        return task.model_copy(deep=True)


# ── Record Factories ─────────────────────────────────────────────────────────


def make_source_record(
    source_id: str = "42",
    kind: EntityKind = EntityKind.work_order,
    **overrides: Any,
) -> CanonicalRecord:
    """Source work order (or quote) with realistic defaults."""
    fields: dict[str, Any] = {
        "title": "Storefront signage",
        "txn_number": 1042,
        "due_date": "2024-12-15",
        "status": "Approved",
        "project_manager_id": "u-alice",
        "primary_sales_rep_id": "u-bob",
        "estimator_id": None,
        "install_address": "1 Main St, Springfield",
        "total": 1500.0,
        "customer_name": "Acme Hardware",
    }
    fields.update(overrides)
    return CanonicalRecord(
        system=SystemSide.source,
        kind=kind,
        id=source_id,
        title=fields["title"],
        fields=fields,
    )


def make_target_task(
    target_id: str = "T100",
    source_id: str | None = "42",
    kind: EntityKind = EntityKind.work_order,
    **fields: Any,
) -> CanonicalRecord:
    """Target task mirroring a source record."""
    values: dict[str, Any] = {"responsible_ids": ["KUAAAA"], "project_manager": "KUAAAA"}
    if source_id is not None:
        values["source_id"] = source_id
    values.update(fields)
    return CanonicalRecord(
        system=SystemSide.target,
        kind=kind,
        id=target_id,
        title="WO #1042: Storefront signage",
        fields=values,
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def users() -> UserDirectory:
    return UserDirectory([ALICE, BOB], default_target_id=DEFAULT_TARGET_USER)


@pytest.fixture
def source() -> InMemorySourceClient:
    return InMemorySourceClient()


@pytest.fixture
def target() -> InMemoryTargetClient:
    return InMemoryTargetClient()


@pytest.fixture
def engine(source, target, users):
    from src.app.sync.engine import ReconciliationEngine

    return ReconciliationEngine(source, target, users, status_ids=STATUS_IDS)


@pytest.fixture
def repository() -> AsyncMock:
    """ExecutionRepository double returning sequential row ids."""
    repo = AsyncMock()
    repo.start_execution.return_value = "exec-1"
    repo.find_execution_id.return_value = "exec-1"
    repo.start_step.side_effect = [f"step-{i}" for i in range(1, 20)]
    repo.finish_execution.return_value = True
    return repo


@pytest.fixture
def on_finality() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def recorder(repository, on_finality) -> ExecutionRecorder:
    return ExecutionRecorder(repository=repository, on_finality=on_finality, sink_timeout=1.0)
