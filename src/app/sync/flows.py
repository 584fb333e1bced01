"""Flow handlers wiring dispatcher topics to the reconciliation engine.

Each inbound event runs as one traced flow:
- ``quote:*`` / ``work_order:*`` -> ``{entity}-{action}`` flows of type
  ``source-to-target`` (``destroyed`` voids the target record)
- ``target_field:changed`` -> ``target-field-updated`` of type
  ``target-to-source``
- ``target_task:created`` -> ``subtask-created`` of type
  ``target-to-target``

Every run ends in exactly one ``complete_flow`` call, which publishes the
finality event picked up by the notifier.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.app.events.bus import EventDispatcher
from src.app.events.schemas import (
    TARGET_FIELD_CHANGED,
    TARGET_TASK_CREATED,
    SyncEvent,
    entity_topic,
    finality_error_topic,
    finality_success_topic,
)
from src.app.observability.recorder import ExecutionRecorder, TraceContext
from src.app.sync.engine import ReconciliationEngine
from src.app.sync.schemas import (
    ChangeNotification,
    EntityAction,
    EntityKind,
    ReconcileResult,
    SubtaskCreated,
    TargetFieldChange,
)

logger = structlog.get_logger(__name__)

SOURCE_TO_TARGET = "source-to-target"
TARGET_TO_SOURCE = "target-to-source"
TARGET_TO_TARGET = "target-to-target"
TARGET_FIELD_FLOW = "target-field-updated"
SUBTASK_FLOW = "subtask-created"


def flow_name_for(kind: EntityKind, action: EntityAction) -> str:
    """``work_order`` + ``updated`` -> ``work-order-updated``."""
    return f"{kind.value.replace('_', '-')}-{action.value}"


FLOW_NAMES: list[str] = [
    flow_name_for(kind, action) for kind in EntityKind for action in EntityAction
] + [TARGET_FIELD_FLOW, SUBTASK_FLOW]


class SyncFlows:
    """Runs engine operations as traced flows.

    Args:
        engine: Reconciliation engine.
        recorder: Execution recorder (owns finality).
    """

    def __init__(self, engine: ReconciliationEngine, recorder: ExecutionRecorder) -> None:
        self._engine = engine
        self._recorder = recorder

    def register(self, dispatcher: EventDispatcher) -> None:
        """Subscribe every flow handler."""
        for kind in EntityKind:
            for action in EntityAction:
                dispatcher.subscribe(entity_topic(kind, action), self.handle_source_event)
        dispatcher.subscribe(TARGET_FIELD_CHANGED, self.handle_target_change)
        dispatcher.subscribe(TARGET_TASK_CREATED, self.handle_task_created)

    async def handle_source_event(self, event: SyncEvent) -> ReconcileResult | None:
        notification = ChangeNotification.model_validate(event.data)
        kind, action = notification.entity_kind, notification.action

        async def _body(trace: TraceContext) -> ReconcileResult:
            if action == EntityAction.destroyed:
                return await self._engine.void(kind, notification.entity_id, trace=trace)
            return await self._engine.reconcile(
                kind, notification.entity_id, notification=notification, trace=trace
            )

        return await self._run(
            event.trace_id,
            flow_name_for(kind, action),
            SOURCE_TO_TARGET,
            {
                "source_id": notification.entity_id,
                "kind": kind.value,
                "action": action.value,
                "changed_fields": sorted(notification.changes or {}),
            },
            _body,
        )

    async def handle_target_change(self, event: SyncEvent) -> ReconcileResult | None:
        change = TargetFieldChange.model_validate(event.data)
        return await self._run(
            event.trace_id,
            TARGET_FIELD_FLOW,
            TARGET_TO_SOURCE,
            {
                "target_id": change.target_id,
                "kind": change.kind.value,
                "field": change.field,
                "new_value": change.new_value,
            },
            lambda trace: self._engine.apply_target_change(change, trace=trace),
        )

    async def handle_task_created(self, event: SyncEvent) -> ReconcileResult | None:
        created = SubtaskCreated.model_validate(event.data)
        return await self._run(
            event.trace_id,
            SUBTASK_FLOW,
            TARGET_TO_TARGET,
            {"target_id": created.task_id, "kind": created.kind.value},
            lambda trace: self._engine.sync_subtask(created.kind, created.task_id, trace=trace),
        )

    async def _run(
        self,
        trace_id: str,
        flow_name: str,
        flow_type: str,
        input_summary: dict[str, Any],
        body: Callable[[TraceContext], Awaitable[ReconcileResult]],
    ) -> ReconcileResult | None:
        """Run ``body`` inside a trace and record its terminal outcome.

        A failing body ends the flow as ``failed`` with the error's
        category; the error is reported through finality, not re-raised.
        A redelivered event whose trace already reached finality is not run
        again.
        """
        trace = await self._recorder.start_flow(trace_id, flow_name, flow_type, input_summary)
        if trace.finalized:
            logger.info("flow.already_final", trace_id=trace_id, flow_name=flow_name)
            return None
        try:
            result = await body(trace)
        except Exception as exc:
            logger.error("flow.failed", trace_id=trace_id, flow_name=flow_name, exc_info=True)
            await self._recorder.complete_flow(trace, "failed", error=exc, result=input_summary)
            return None

        await self._recorder.complete_flow(trace, "success", result=result.summary())
        return result


def register_finality_handler(
    dispatcher: EventDispatcher, handler: Callable[[SyncEvent], Awaitable[None]]
) -> None:
    """Subscribe ``handler`` to both finality topics of every flow."""
    for name in FLOW_NAMES:
        dispatcher.subscribe(finality_success_topic(name), handler)
        dispatcher.subscribe(finality_error_topic(name), handler)
