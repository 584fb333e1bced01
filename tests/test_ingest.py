"""Unit tests for webhook payload translation.

Tests cover:
- Source envelopes to ChangeNotification (numeric ids, changes, bad events)
- Target event arrays to tracked field changes (whitelist, untracked fields)
- TaskCreated arrays to one SubtaskCreated per distinct task
"""

from __future__ import annotations

import pytest

from src.app.sync.ingest import created_tasks, notification_from_envelope, target_changes
from src.app.sync.schemas import (
    EntityAction,
    EntityKind,
    SourceWebhookEnvelope,
    TargetTaskCreatedEvent,
    TargetWebhookEvent,
)

CUSTOM_FIELD_IDS = {
    "source_id": "CF-SRC",
    "target_install_date": "CF-DATE",
    "project_manager": "CF-PM",
    "sales_rep": "CF-REP",
    "estimator": "CF-EST",
    "customer": "CF-CUST",
}


def _envelope(**overrides) -> SourceWebhookEnvelope:
    payload = {
        "event_object": "work_order",
        "event_action": "updated",
        "timestamp": 1733000000,
        "webhook_token": "tok",
        "event": {"id": 42, "name": "Storefront signage", "changes": {"due_date": ["2024-12-01", "2024-12-15"]}},
    }
    payload.update(overrides)
    return SourceWebhookEnvelope.model_validate(payload)


def _target_event(custom_field_id: str = "CF-DATE", event_type: str = "TaskCustomFieldChanged", **overrides):
    payload = {
        "taskId": "T100",
        "customFieldId": custom_field_id,
        "webhookId": "WH1",
        "eventAuthorId": "KUAAAA",
        "eventType": event_type,
        "lastUpdatedDate": "2024-12-01T10:00:00Z",
        "oldValue": "2024-12-15",
        "value": "2024-12-20",
    }
    payload.update(overrides)
    return TargetWebhookEvent.model_validate(payload)


# ── Source Envelopes ─────────────────────────────────────────────────────────


class TestNotificationFromEnvelope:
    """Source webhook envelope translation."""

    def test_builds_notification(self):
        notification = notification_from_envelope(_envelope())

        assert notification.entity_id == "42"
        assert notification.entity_kind == EntityKind.work_order
        assert notification.action == EntityAction.updated
        assert notification.name == "Storefront signage"
        assert notification.changes == {"due_date": ("2024-12-01", "2024-12-15")}

    def test_empty_name_becomes_none(self):
        envelope = _envelope(event={"id": "7"}, event_object="quote", event_action="created")
        notification = notification_from_envelope(envelope)

        assert notification.entity_kind == EntityKind.quote
        assert notification.action == EntityAction.created
        assert notification.name is None
        assert notification.changes is None

    @pytest.mark.parametrize("event_object, event_action", [("invoice", "updated"), ("quote", "archived")])
    def test_unsupported_event(self, event_object, event_action):
        with pytest.raises(ValueError, match="invalid source event"):
            notification_from_envelope(_envelope(event_object=event_object, event_action=event_action))


# ── Target Events ────────────────────────────────────────────────────────────


class TestTargetChanges:
    """Tracked custom-field changes from the target webhook array."""

    def test_tracked_change(self):
        changes = target_changes(
            EntityKind.work_order, [_target_event()], CUSTOM_FIELD_IDS, {"TaskCustomFieldChanged"}
        )

        assert len(changes) == 1
        change = changes[0]
        assert change.target_id == "T100"
        assert change.field == "target_install_date"
        assert change.old_value == "2024-12-15"
        assert change.new_value == "2024-12-20"
        assert change.kind == EntityKind.work_order

    def test_drops_non_whitelisted_event_types(self):
        events = [_target_event(event_type="TaskStatusChanged"), _target_event("CF-PM", value="KUBBBB")]
        changes = target_changes(EntityKind.work_order, events, CUSTOM_FIELD_IDS, {"TaskCustomFieldChanged"})

        assert [c.field for c in changes] == ["project_manager"]

    def test_drops_untracked_and_unknown_fields(self):
        events = [_target_event("CF-CUST"), _target_event("CF-UNKNOWN"), _target_event("CF-EST")]
        changes = target_changes(EntityKind.quote, events, CUSTOM_FIELD_IDS, {"TaskCustomFieldChanged"})

        assert [c.field for c in changes] == ["estimator"]

    def test_preserves_delivery_order(self):
        events = [_target_event("CF-REP"), _target_event("CF-DATE"), _target_event("CF-PM")]
        changes = target_changes(EntityKind.work_order, events, CUSTOM_FIELD_IDS, {"TaskCustomFieldChanged"})

        assert [c.field for c in changes] == ["sales_rep", "target_install_date", "project_manager"]


# ── Target Task Created ──────────────────────────────────────────────────────


def _created(task_id: str) -> TargetTaskCreatedEvent:
    return TargetTaskCreatedEvent.model_validate(
        {
            "taskId": task_id,
            "webhookId": "WH2",
            "eventAuthorId": "KUAAAA",
            "eventType": "TaskCreated",
            "lastUpdatedDate": "2024-12-01T10:00:00Z",
        }
    )


class TestCreatedTasks:
    """TaskCreated arrays to SubtaskCreated payloads."""

    def test_one_per_distinct_task(self):
        created = created_tasks(EntityKind.work_order, [_created("T200"), _created("T201"), _created("T200")])

        assert [c.task_id for c in created] == ["T200", "T201"]
        assert all(c.kind == EntityKind.work_order for c in created)

    def test_other_event_types_rejected(self):
        with pytest.raises(ValueError):
            TargetTaskCreatedEvent.model_validate(
                {
                    "taskId": "T200",
                    "webhookId": "WH2",
                    "eventAuthorId": "KUAAAA",
                    "eventType": "TaskDeleted",
                    "lastUpdatedDate": "2024-12-01T10:00:00Z",
                }
            )
