"""Reconciliation engine: fetch fresh, find the reference, create or update.

State machine per attempt:
    FETCHING_SOURCE -> DECIDING -> CREATING | UPDATING -> DONE | FAILED

Rules:
- Content always comes from a fresh fetch of the originating system; the
  notification only decides what to loop-check.
- The ExternalReference is re-derived on every attempt by searching the
  target system on the stored source id. There is no local id table.
- Zero matches -> create; one -> update the managed fields; more than one
  -> DuplicateReferenceError, nothing written.
- Changes to the ownership field become an add/remove responsible delta.

Clients are injected, so the engine runs against fakes in tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog

from src.app.core.monitoring import record_loop_skip
from src.app.observability.recorder import StepHandle, TraceContext
from src.app.sync.clients.base import SourceClient, TargetClient
from src.app.sync.errors import DuplicateReferenceError, RecordNotFoundError
from src.app.sync.field_mapping import (
    OWNER_FIELD,
    PARENT_IDS_FIELD,
    SOURCE_ID_FIELD,
    TASK_NATIVE_FIELDS,
    TRACKED_BY_TARGET_FIELD,
    MappingContext,
    apply_mappings,
    to_source_value,
)
from src.app.sync.loop_guard import LOOP_PREVENTION, LoopCheck, LoopGuard, single_tracked_field
from src.app.sync.schemas import (
    CanonicalRecord,
    ChangeNotification,
    EntityKind,
    ExternalReference,
    ReconcileOutcome,
    ReconcileResult,
    ReconcileState,
    TargetFieldChange,
    TargetRecordWrite,
)
from src.app.sync.users import UserDirectory

logger = structlog.get_logger(__name__)

T = TypeVar("T")

VOID_STATUS_KEY = "void"


class ReconciliationEngine:
    """Keeps target records in agreement with source records, and back.

    Args:
        source: Source system client.
        target: Target system client.
        users: Directory translating people between the systems.
        status_ids: Target custom status id per source workflow status.
        loop_guard: Echo detector; built from ``users`` when omitted.
    """

    def __init__(
        self,
        source: SourceClient,
        target: TargetClient,
        users: UserDirectory,
        status_ids: dict[str, str] | None = None,
        loop_guard: LoopGuard | None = None,
    ) -> None:
        self._source = source
        self._target = target
        self._users = users
        self._status_ids = {k.lower(): v for k, v in (status_ids or {}).items()}
        self._mapping_context = MappingContext(users=users, status_ids=self._status_ids)
        self._guard = loop_guard or LoopGuard(users)

    # ── Trace helpers ───────────────────────────────────────────────────────

    @staticmethod
    @asynccontextmanager
    async def _step(trace: TraceContext | None, name: str) -> AsyncGenerator[StepHandle, None]:
        if trace is None:
            yield StepHandle(name)
            return
        async with trace.step(name) as handle:
            yield handle

    @staticmethod
    async def _call(
        trace: TraceContext | None,
        service: str,
        operation: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        if trace is None:
            return await call()
        async with trace.api_call(service, operation):
            return await call()

    @staticmethod
    def _transition(result: ReconcileResult, state: ReconcileState) -> None:
        result.state = state
        logger.debug(
            "reconcile.state",
            kind=result.kind.value,
            source_id=result.source_id,
            state=state.value,
        )

    async def _search(
        self, kind: EntityKind, source_id: str, trace: TraceContext | None
    ) -> CanonicalRecord | None:
        candidates = await self._call(
            trace,
            "target",
            "search_tasks",
            lambda: self._target.find_by_source_id(kind, source_id),
        )
        if len(candidates) > 1:
            # Subtasks inherit the identifying field from their parent.
            ids = {c.id for c in candidates}
            candidates = [c for c in candidates if not ids.intersection(c.get(PARENT_IDS_FIELD) or [])]
        if len(candidates) > 1:
            raise DuplicateReferenceError(kind.value, source_id, [c.id for c in candidates])
        return candidates[0] if candidates else None

    # ── Source -> Target ────────────────────────────────────────────────────

    async def reconcile(
        self,
        kind: EntityKind,
        source_id: str,
        *,
        notification: ChangeNotification | None = None,
        trace: TraceContext | None = None,
    ) -> ReconcileResult:
        """Create or update the target record mirroring a source record.

        Args:
            kind: Entity kind.
            source_id: Source record id.
            notification: Change that triggered the attempt; used for the
                loop check and the ownership delta only.
            trace: Trace to record steps and calls on.

        Returns:
            ReconcileResult in state DONE.

        Raises:
            RemoteCallError: A remote call failed for good.
            DuplicateReferenceError: More than one target record references
                ``source_id``.
        """
        result = ReconcileResult(kind=kind, source_id=source_id, state=ReconcileState.fetching_source)

        try:
            async with self._step(trace, "fetch_source_record") as step:
                record = await self._call(
                    trace,
                    "source",
                    f"get_{kind.value}",
                    lambda: self._source.get_record(kind, source_id),
                )
                step.metadata["title"] = record.title

            self._transition(result, ReconcileState.deciding)
            async with self._step(trace, "sync_target_record") as step:
                existing = await self._search(kind, source_id, trace)
                write = apply_mappings(record, self._mapping_context)

                if existing is None:
                    self._transition(result, ReconcileState.creating)
                    owner = self._users.to_target(record.get(OWNER_FIELD))
                    if owner:
                        write.add_responsibles = [owner]
                    written = await self._call(
                        trace,
                        "target",
                        "create_task",
                        lambda: self._target.create_record(kind, write),
                    )
                    result.outcome = ReconcileOutcome.created
                else:
                    check = self._loop_check(notification, write, existing)
                    if check is not None and check.skip:
                        step.skip(LOOP_PREVENTION, field=check.field, value=check.candidate)
                        record_loop_skip(trace.flow_name if trace else "untraced", check.field)
                        result.outcome = ReconcileOutcome.skipped
                        result.skip_reason = LOOP_PREVENTION
                        result.reference = ExternalReference(kind=kind, source_id=source_id, target_id=existing.id)
                        self._transition(result, ReconcileState.done)
                        logger.info("reconcile.skipped", source_id=source_id, target_id=existing.id, reason=LOOP_PREVENTION)
                        return result

                    self._transition(result, ReconcileState.updating)
                    write.add_responsibles, write.remove_responsibles = self._responsible_delta(
                        notification, record, existing
                    )
                    written = await self._call(
                        trace,
                        "target",
                        "update_task",
                        lambda: self._target.update_record(kind, existing.id, write),
                    )
                    result.outcome = ReconcileOutcome.updated

                result.reference = ExternalReference(kind=kind, source_id=source_id, target_id=written.id)
                result.written_fields = _written_fields(write)
                step.metadata.update(target_id=written.id, outcome=result.outcome.value)
        except Exception:
            self._transition(result, ReconcileState.failed)
            raise

        self._transition(result, ReconcileState.done)
        logger.info(
            f"reconcile.{result.outcome.value}",
            kind=kind.value,
            source_id=source_id,
            target_id=result.reference.target_id,
        )
        return result

    def _loop_check(
        self,
        notification: ChangeNotification | None,
        write: TargetRecordWrite,
        existing: CanonicalRecord,
    ) -> LoopCheck | None:
        """Compare the mapped value with the one on the found target record.

        Only single tracked-field change-sets are checked, and only when the
        field is part of this kind's managed set.
        """
        if notification is None:
            return None
        tracked = single_tracked_field(notification.changes)
        if tracked is None or tracked.target_field not in write.fields:
            return None
        return self._guard.compare(
            tracked, write.fields[tracked.target_field], existing.get(tracked.target_field)
        )

    def _responsible_delta(
        self,
        notification: ChangeNotification | None,
        record: CanonicalRecord,
        existing: CanonicalRecord,
    ) -> tuple[list[str], list[str]]:
        """Add the current owner if missing; remove the previous owner if it changed."""
        current = {self._users.canonical_id(i) for i in existing.get("responsible_ids") or []}
        new_owner = self._users.to_target(record.get(OWNER_FIELD))

        add: list[str] = []
        if new_owner and self._users.canonical_id(new_owner) not in current:
            add.append(new_owner)

        remove: list[str] = []
        changes = notification.changes if notification else None
        if changes and OWNER_FIELD in changes:
            previous = self._users.find(changes[OWNER_FIELD][0])
            if previous is not None and previous.target_id != new_owner:
                remove.append(previous.target_id)
        return add, remove

    # ── Source destroyed ────────────────────────────────────────────────────

    async def void(
        self, kind: EntityKind, source_id: str, *, trace: TraceContext | None = None
    ) -> ReconcileResult:
        """Move the target record of a destroyed source record to the void status.

        Skips when no target record references ``source_id`` or no void
        status is configured.
        """
        result = ReconcileResult(kind=kind, source_id=source_id, state=ReconcileState.deciding)
        void_status = self._status_ids.get(VOID_STATUS_KEY)

        try:
            async with self._step(trace, "void_target_record") as step:
                existing = await self._search(kind, source_id, trace)
                if existing is None or not void_status:
                    reason = "no_reference" if existing is None else "void_status_not_configured"
                    step.skip(reason)
                    result.outcome = ReconcileOutcome.skipped
                    result.skip_reason = reason
                    self._transition(result, ReconcileState.done)
                    logger.info("reconcile.void_skipped", source_id=source_id, reason=reason)
                    return result

                self._transition(result, ReconcileState.updating)
                await self._call(
                    trace,
                    "target",
                    "update_task",
                    lambda: self._target.update_record(kind, existing.id, TargetRecordWrite(status_id=void_status)),
                )
                result.outcome = ReconcileOutcome.updated
                result.reference = ExternalReference(kind=kind, source_id=source_id, target_id=existing.id)
                result.written_fields = ["status_id"]
        except Exception:
            self._transition(result, ReconcileState.failed)
            raise

        self._transition(result, ReconcileState.done)
        logger.info("reconcile.voided", source_id=source_id, target_id=existing.id)
        return result

    # ── Target -> Source ────────────────────────────────────────────────────

    async def apply_target_change(
        self, change: TargetFieldChange, *, trace: TraceContext | None = None
    ) -> ReconcileResult:
        """Write a tracked target field back to the source record.

        Steps: resolve the target record (fresh) and its source id; loop
        check against the source record; update the source record.

        Raises:
            ValueError: ``change.field`` is not a tracked field.
            RecordNotFoundError: The target record carries no source id.
            RemoteCallError: A remote call failed for good.
        """
        tracked = TRACKED_BY_TARGET_FIELD.get(change.field)
        if tracked is None:
            raise ValueError(f"invalid field for write-back: {change.field}")

        kind = change.kind
        result = ReconcileResult(kind=kind, source_id="", state=ReconcileState.fetching_source)

        try:
            async with self._step(trace, "resolve_target_record") as step:
                task = await self._call(
                    trace,
                    "target",
                    "get_task",
                    lambda: self._target.get_record(kind, change.target_id),
                )
                source_id = task.get(SOURCE_ID_FIELD)
                if not source_id:
                    raise RecordNotFoundError("target", change.target_id, f"no {SOURCE_ID_FIELD} value on task")
                result.source_id = str(source_id)
                result.reference = ExternalReference(kind=kind, source_id=result.source_id, target_id=task.id)
                step.metadata.update(source_id=result.source_id, field=change.field)

                try:
                    candidate = to_source_value(tracked, task.get(change.field), self._mapping_context)
                except ValueError as exc:
                    step.skip("invalid_value", error=str(exc))
                    result.outcome = ReconcileOutcome.skipped
                    result.skip_reason = "invalid_value"
                    self._transition(result, ReconcileState.done)
                    logger.info("reconcile.write_back_skipped", target_id=change.target_id, reason=str(exc))
                    return result

            self._transition(result, ReconcileState.deciding)
            async with self._step(trace, "loop_guard_check") as step:

                async def _current_source_value() -> Any:
                    record = await self._call(
                        trace,
                        "source",
                        f"get_{kind.value}",
                        lambda: self._source.get_record(kind, result.source_id),
                    )
                    return record.get(tracked.source_field)

                check = await self._guard.check(tracked, candidate, _current_source_value)
                if check.skip:
                    step.skip(LOOP_PREVENTION, field=tracked.source_field, value=check.candidate)
                    record_loop_skip(trace.flow_name if trace else "untraced", tracked.source_field)
                    result.outcome = ReconcileOutcome.skipped
                    result.skip_reason = LOOP_PREVENTION
                    self._transition(result, ReconcileState.done)
                    logger.info("reconcile.write_back_skipped", source_id=result.source_id, reason=LOOP_PREVENTION)
                    return result

            self._transition(result, ReconcileState.updating)
            async with self._step(trace, "update_source_record") as step:
                await self._call(
                    trace,
                    "source",
                    f"update_{kind.value}",
                    lambda: self._source.update_fields(kind, result.source_id, {tracked.source_field: candidate}),
                )
                step.metadata.update(field=tracked.source_field, value=candidate)
            result.outcome = ReconcileOutcome.updated
            result.written_fields = [tracked.source_field]
        except Exception:
            self._transition(result, ReconcileState.failed)
            raise

        self._transition(result, ReconcileState.done)
        logger.info(
            "reconcile.written_back",
            source_id=result.source_id,
            target_id=change.target_id,
            field=tracked.source_field,
        )
        return result

    # ── Target subtasks ─────────────────────────────────────────────────────

    async def sync_subtask(
        self, kind: EntityKind, subtask_id: str, *, trace: TraceContext | None = None
    ) -> ReconcileResult:
        """Give a newly created subtask its parent's title and custom fields.

        Skips when the subtask has no parent or several, and when its title
        already matches the parent's (the update has been applied before).

        Raises:
            RemoteCallError: A remote call failed for good.
        """
        result = ReconcileResult(kind=kind, source_id="", state=ReconcileState.fetching_source)

        try:
            async with self._step(trace, "resolve_parent_task") as step:
                subtask = await self._call(
                    trace,
                    "target",
                    "get_task",
                    lambda: self._target.get_record(kind, subtask_id),
                )
                parent_ids = subtask.get(PARENT_IDS_FIELD) or []
                if len(parent_ids) != 1:
                    reason = "no_parent" if not parent_ids else "multiple_parents"
                    step.skip(reason, parent_ids=list(parent_ids))
                    result.outcome = ReconcileOutcome.skipped
                    result.skip_reason = reason
                    self._transition(result, ReconcileState.done)
                    logger.info("reconcile.subtask_skipped", subtask_id=subtask_id, reason=reason)
                    return result

                parent = await self._call(
                    trace,
                    "target",
                    "get_task",
                    lambda: self._target.get_record(kind, parent_ids[0]),
                )
                result.source_id = str(parent.get(SOURCE_ID_FIELD) or "")
                result.reference = ExternalReference(kind=kind, source_id=result.source_id, target_id=subtask.id)
                step.metadata.update(parent_id=parent.id, parent_title=parent.title)

            self._transition(result, ReconcileState.deciding)
            async with self._step(trace, "copy_parent_fields") as step:
                if subtask.title == parent.title:
                    step.skip("title_matches", title=subtask.title)
                    result.outcome = ReconcileOutcome.skipped
                    result.skip_reason = "title_matches"
                    self._transition(result, ReconcileState.done)
                    logger.info("reconcile.subtask_skipped", subtask_id=subtask_id, reason="title_matches")
                    return result

                self._transition(result, ReconcileState.updating)
                write = TargetRecordWrite(title=parent.title, fields=_custom_fields(parent))
                await self._call(
                    trace,
                    "target",
                    "update_task",
                    lambda: self._target.update_record(kind, subtask.id, write),
                )
                result.outcome = ReconcileOutcome.updated
                result.written_fields = _written_fields(write)
                step.metadata.update(copied_fields=len(write.fields))
        except Exception:
            self._transition(result, ReconcileState.failed)
            raise

        self._transition(result, ReconcileState.done)
        logger.info("reconcile.subtask_synced", subtask_id=subtask_id, parent_id=parent.id)
        return result


def _custom_fields(record: CanonicalRecord) -> dict[str, Any]:
    return {
        name: value
        for name, value in record.fields.items()
        if name not in TASK_NATIVE_FIELDS and value is not None
    }


def _written_fields(write: TargetRecordWrite) -> list[str]:
    attributes = [name for name in ("title", "due_date", "status_id") if getattr(write, name) is not None]
    return sorted(attributes + list(write.fields))
