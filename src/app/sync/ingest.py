"""Translate validated webhook payloads into internal notifications.

Source envelopes become one ChangeNotification each. Target webhook
arrays become zero or more TargetFieldChange records: events outside the
configured whitelist and changes to untracked custom fields are dropped.
TaskCreated arrays become one SubtaskCreated per distinct task.
"""

from __future__ import annotations

import structlog

from src.app.sync.field_mapping import TRACKED_BY_TARGET_FIELD
from src.app.sync.schemas import (
    ChangeNotification,
    EntityAction,
    EntityKind,
    SourceWebhookEnvelope,
    SubtaskCreated,
    TargetFieldChange,
    TargetTaskCreatedEvent,
    TargetWebhookEvent,
)

logger = structlog.get_logger(__name__)


def notification_from_envelope(envelope: SourceWebhookEnvelope) -> ChangeNotification:
    """Build the ChangeNotification carried by a source webhook.

    Raises:
        ValueError: Unsupported ``event_object`` or ``event_action``.
    """
    try:
        kind = EntityKind(envelope.event_object)
        action = EntityAction(envelope.event_action)
    except ValueError as exc:
        raise ValueError(
            f"invalid source event {envelope.event_object}:{envelope.event_action}"
        ) from exc
    return ChangeNotification(
        entity_id=envelope.event.id,
        entity_kind=kind,
        action=action,
        name=envelope.event.name or None,
        changes=envelope.event.changes,
    )


def target_changes(
    kind: EntityKind,
    events: list[TargetWebhookEvent],
    custom_field_ids: dict[str, str],
    allowed_event_types: set[str],
) -> list[TargetFieldChange]:
    """Tracked custom-field changes in a target webhook delivery.

    Args:
        kind: Entity kind the webhook was registered for.
        events: Validated webhook events.
        custom_field_ids: Custom field id per logical field name.
        allowed_event_types: Whitelisted ``eventType`` values.

    Returns:
        One TargetFieldChange per relevant event, in delivery order.
    """
    field_names = {field_id: name for name, field_id in custom_field_ids.items()}
    changes = []
    for event in events:
        if event.event_type not in allowed_event_types:
            logger.info("ingest.event_type_ignored", event_type=event.event_type, task_id=event.task_id)
            continue
        name = field_names.get(event.custom_field_id)
        if name not in TRACKED_BY_TARGET_FIELD:
            logger.debug("ingest.untracked_field_ignored", custom_field_id=event.custom_field_id)
            continue
        changes.append(
            TargetFieldChange(
                kind=kind,
                target_id=event.task_id,
                field=name,
                old_value=event.old_value,
                new_value=event.value,
            )
        )
    return changes


def created_tasks(kind: EntityKind, events: list[TargetTaskCreatedEvent]) -> list[SubtaskCreated]:
    """One SubtaskCreated per distinct task id, in delivery order."""
    seen: set[str] = set()
    created = []
    for event in events:
        if event.task_id in seen:
            continue
        seen.add(event.task_id)
        created.append(SubtaskCreated(kind=kind, task_id=event.task_id))
    return created
