"""End-to-end flow tests: dispatch -> flow handler -> engine -> recorder.

Tests cover:
- A work order update recorded as two steps and three API calls, ending
  in exactly one success finality
- Failure finality carrying the failing step and error category
- Destroyed events voiding the target record
- Target field changes running the write-back flow
- Subtask creation copying the parent task, recorded as its own flow
- Redelivered events of a finalized trace not run again
- Finality handlers subscribed for every flow
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import make_source_record, make_target_task
from src.app.events.bus import EventDispatcher, StreamEventBus
from src.app.events.dlq import DeadLetterQueue
from src.app.events.schemas import TARGET_FIELD_CHANGED, TARGET_TASK_CREATED, SyncEvent, entity_topic
from src.app.sync.flows import (
    FLOW_NAMES,
    SOURCE_TO_TARGET,
    TARGET_TO_SOURCE,
    TARGET_TO_TARGET,
    SyncFlows,
    flow_name_for,
    register_finality_handler,
)
from src.app.sync.schemas import (
    ChangeNotification,
    EntityAction,
    EntityKind,
    ReconcileOutcome,
    SubtaskCreated,
    TargetFieldChange,
)

WO = EntityKind.work_order


def _dispatcher() -> EventDispatcher:
    redis = AsyncMock()
    return EventDispatcher(StreamEventBus(redis), DeadLetterQueue(redis), consumer_name="test")


def _source_event(action: EntityAction = EntityAction.updated, trace_id: str = "trace-1", changes=None) -> SyncEvent:
    notification = ChangeNotification(entity_id="42", entity_kind=WO, action=action, changes=changes)
    return SyncEvent(topic=entity_topic(WO, action), trace_id=trace_id, data=notification.model_dump())


@pytest.fixture
def dispatcher(engine, recorder) -> EventDispatcher:
    dispatcher = _dispatcher()
    SyncFlows(engine, recorder).register(dispatcher)
    return dispatcher


# ── Naming ───────────────────────────────────────────────────────────────────


class TestFlowNames:
    """Flow names derived from entity and action."""

    def test_flow_name_for(self):
        assert flow_name_for(WO, EntityAction.updated) == "work-order-updated"
        assert flow_name_for(EntityKind.quote, EntityAction.created) == "quote-created"

    def test_every_flow_listed(self):
        assert len(FLOW_NAMES) == 8
        assert "target-field-updated" in FLOW_NAMES
        assert "subtask-created" in FLOW_NAMES


# ── Source -> Target ─────────────────────────────────────────────────────────


class TestSourceFlow:
    """Source lifecycle events run as traced flows."""

    @pytest.mark.asyncio
    async def test_work_order_update_end_to_end(self, dispatcher, source, target, repository, on_finality):
        source.add(make_source_record(title="Window decals"))
        target.add(make_target_task())

        handled = await dispatcher.dispatch(_source_event())

        assert handled == 1
        assert target.tasks["T100"].title == "WO #1042: Window decals"

        repository.start_execution.assert_awaited_once()
        args = repository.start_execution.await_args.args
        assert args[:3] == ("trace-1", "work-order-updated", SOURCE_TO_TARGET)

        steps = [c.args[2] for c in repository.start_step.await_args_list]
        assert steps == ["fetch_source_record", "sync_target_record"]
        finished = [c.args[1] for c in repository.finish_step.await_args_list]
        assert finished == ["success", "success"]

        calls = [(c.args[2], c.args[3]) for c in repository.record_api_call.await_args_list]
        assert calls == [
            ("source", "get_work_order"),
            ("target", "search_tasks"),
            ("target", "update_task"),
        ]
        # every call is attributed to the step it ran in
        step_ids = [c.kwargs["step_execution_id"] for c in repository.record_api_call.await_args_list]
        assert step_ids == ["step-1", "step-2", "step-2"]

        repository.finish_execution.assert_awaited_once()
        assert repository.finish_execution.await_args.args[:2] == ("trace-1", "success")

        on_finality.assert_awaited_once()
        finality = on_finality.await_args.args[0]
        assert finality.status == "success"
        assert finality.flow_name == "work-order-updated"
        assert finality.result["outcome"] == ReconcileOutcome.updated.value
        assert finality.result["target_id"] == "T100"

    @pytest.mark.asyncio
    async def test_failure_finality_names_step_and_category(
        self, engine, recorder, source, target, repository, on_finality
    ):
        source.add(make_source_record())
        target.add(make_target_task("T1"))
        target.add(make_target_task("T2"))

        result = await SyncFlows(engine, recorder).handle_source_event(_source_event())

        assert result is None
        repository.finish_execution.assert_awaited_once()
        trace_id, status, _, message, category = repository.finish_execution.await_args.args
        assert (trace_id, status, category) == ("trace-1", "failed", "validation_error")
        assert "Data integrity anomaly" in message

        finality = on_finality.await_args.args[0]
        assert finality.status == "failed"
        assert finality.step_name == "sync_target_record"
        assert finality.error_category == "validation_error"
        assert finality.result["source_id"] == "42"

    @pytest.mark.asyncio
    async def test_source_fetch_failure_is_api_error(self, engine, recorder, on_finality):
        await SyncFlows(engine, recorder).handle_source_event(_source_event())

        finality = on_finality.await_args.args[0]
        assert finality.step_name == "fetch_source_record"
        assert finality.error_category == "api_error"

    @pytest.mark.asyncio
    async def test_loop_skip_recorded_as_skipped_step(self, engine, recorder, source, target, repository):
        source.add(make_source_record(due_date="2024-12-15"))
        target.add(make_target_task(target_install_date="2024-12-15"))
        event = _source_event(changes={"due_date": ("2024-12-01", "2024-12-15")})

        result = await SyncFlows(engine, recorder).handle_source_event(event)

        assert result.outcome == ReconcileOutcome.skipped
        last_step = repository.finish_step.await_args_list[-1].args
        assert last_step[1] == "skipped"
        assert last_step[5] == "loop_prevention"
        assert target.writes == []

    @pytest.mark.asyncio
    async def test_destroyed_voids_target(self, dispatcher, target, repository):
        target.add(make_target_task())

        await dispatcher.dispatch(_source_event(EntityAction.destroyed))

        assert target.tasks["T100"].get("status_id") == "ST-VOID"
        assert repository.start_execution.await_args.args[1] == "work-order-destroyed"


# ── Target -> Source ─────────────────────────────────────────────────────────


class TestTargetFlow:
    """Target field changes run the write-back flow."""

    @pytest.mark.asyncio
    async def test_write_back_end_to_end(self, dispatcher, source, target, repository, on_finality):
        source.add(make_source_record(due_date="2024-12-15"))
        target.add(make_target_task(target_install_date="2025-01-10"))
        change = TargetFieldChange(kind=WO, target_id="T100", field="target_install_date", new_value="2025-01-10")

        await dispatcher.dispatch(SyncEvent(topic=TARGET_FIELD_CHANGED, trace_id="trace-2", data=change.model_dump()))

        assert source.updates == [(WO, "42", {"due_date": "2025-01-10"})]
        assert repository.start_execution.await_args.args[1:3] == ("target-field-updated", TARGET_TO_SOURCE)
        steps = [c.args[2] for c in repository.start_step.await_args_list]
        assert steps == ["resolve_target_record", "loop_guard_check", "update_source_record"]
        assert on_finality.await_args.args[0].status == "success"


# ── Target -> Target ─────────────────────────────────────────────────────────


class TestSubtaskFlow:
    """A created subtask takes its parent's title and custom fields."""

    @pytest.mark.asyncio
    async def test_subtask_end_to_end(self, dispatcher, target, repository, on_finality):
        target.add(make_target_task())
        subtask = make_target_task("T200", source_id=None, parent_ids=["T100"])
        subtask.title = "Install crew"
        target.add(subtask)
        created = SubtaskCreated(kind=WO, task_id="T200")

        await dispatcher.dispatch(SyncEvent(topic=TARGET_TASK_CREATED, trace_id="trace-3", data=created.model_dump()))

        assert target.tasks["T200"].title == "WO #1042: Storefront signage"
        assert target.tasks["T200"].get("source_id") == "42"
        assert repository.start_execution.await_args.args[:3] == ("trace-3", "subtask-created", TARGET_TO_TARGET)
        steps = [c.args[2] for c in repository.start_step.await_args_list]
        assert steps == ["resolve_parent_task", "copy_parent_fields"]
        finality = on_finality.await_args.args[0]
        assert finality.status == "success"
        assert finality.result["outcome"] == ReconcileOutcome.updated.value

    @pytest.mark.asyncio
    async def test_matching_title_recorded_as_skipped_step(self, dispatcher, target, repository, on_finality):
        target.add(make_target_task())
        target.add(make_target_task("T200", source_id=None, parent_ids=["T100"]))
        created = SubtaskCreated(kind=WO, task_id="T200")

        await dispatcher.dispatch(SyncEvent(topic=TARGET_TASK_CREATED, trace_id="trace-4", data=created.model_dump()))

        last_step = repository.finish_step.await_args_list[-1].args
        assert last_step[1] == "skipped"
        assert last_step[5] == "title_matches"
        assert target.writes == []
        assert on_finality.await_args.args[0].status == "success"


# ── Redelivery ───────────────────────────────────────────────────────────────


class TestRedelivery:
    """At-least-once delivery never runs a finalized trace twice."""

    @pytest.mark.asyncio
    async def test_redelivered_event_not_rerun(self, dispatcher, source, target, repository, on_finality):
        repository.finish_execution.side_effect = [True, False]
        source.add(make_source_record())
        target.add(make_target_task())
        event = _source_event()

        await dispatcher.dispatch(event)
        await dispatcher.dispatch(event)

        assert source.get_calls == 1
        assert len(target.writes) == 1
        on_finality.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_malformed_payload_raises_for_retry(self, dispatcher, repository):
        bad = SyncEvent(topic=TARGET_TASK_CREATED, trace_id="trace-5", data={"kind": "work_order"})

        with pytest.raises(ValueError):
            await dispatcher.dispatch(bad)
        repository.start_execution.assert_not_awaited()


# ── Finality Fan-out ─────────────────────────────────────────────────────────


class TestFinalityHandler:
    """register_finality_handler covers both outcomes of every flow."""

    def test_subscribes_success_and_error_topics(self):
        dispatcher = _dispatcher()

        async def handler(event):
            return None

        register_finality_handler(dispatcher, handler)

        topics = dispatcher.topics()
        assert "finality:work-order-updated-success" in topics
        assert "finality:error:target-field-updated" in topics
        assert len(topics) == 2 * len(FLOW_NAMES)
