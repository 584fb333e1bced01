"""Pydantic schemas for cross-system reconciliation.

Covers the records the engine works with (ChangeNotification,
CanonicalRecord, ExternalReference, TargetRecordWrite, ReconcileResult)
and the validated shapes of both systems' webhook payloads. Nothing past
the HTTP boundary handles raw dicts from either remote system.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class SystemSide(str, Enum):
    """Which record store a record or notification belongs to."""

    source = "source"
    target = "target"


class EntityKind(str, Enum):
    """Entity types kept in sync. Values match the source webhook's event_object."""

    quote = "quote"
    work_order = "work_order"


class EntityAction(str, Enum):
    """Lifecycle verbs carried by source notifications."""

    created = "created"
    updated = "updated"
    destroyed = "destroyed"


class ReconcileState(str, Enum):
    """States of one reconciliation attempt."""

    fetching_source = "fetching_source"
    deciding = "deciding"
    creating = "creating"
    updating = "updating"
    done = "done"
    failed = "failed"


class ReconcileOutcome(str, Enum):
    """What a finished attempt did to the destination system."""

    created = "created"
    updated = "updated"
    skipped = "skipped"


# ── Core Records ─────────────────────────────────────────────────────────────


class ChangeNotification(BaseModel):
    """What arrived from a webhook. Only used to decide what to loop-check.

    ``changes`` maps field name to ``(old, new)``.
    """

    model_config = ConfigDict(frozen=True)

    entity_id: str
    entity_kind: EntityKind
    action: EntityAction = EntityAction.updated
    name: str | None = None
    changes: dict[str, tuple[Any, Any]] | None = None


class CanonicalRecord(BaseModel):
    """Freshly fetched snapshot of one entity from one system.

    ``fields`` uses the owning system's logical field names (snake_case for
    the source system, mapped custom-field names for the target system).
    """

    system: SystemSide
    kind: EntityKind
    id: str
    title: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def get(self, name: str, default: Any = None) -> Any:
        """Field value by logical name."""
        return self.fields.get(name, default)


class ExternalReference(BaseModel):
    """Link between a source record and the target record that mirrors it."""

    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    source_id: str
    target_id: str


class TargetRecordWrite(BaseModel):
    """Managed field set written to a target record on create or update.

    ``fields`` holds custom-field values keyed by logical name. Responsible
    changes are deltas because the target ownership model is set-based.
    """

    title: str | None = None
    due_date: str | None = None
    status_id: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    add_responsibles: list[str] = Field(default_factory=list)
    remove_responsibles: list[str] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation attempt."""

    kind: EntityKind
    source_id: str
    state: ReconcileState
    outcome: ReconcileOutcome | None = None
    reference: ExternalReference | None = None
    skip_reason: str | None = None
    written_fields: list[str] = Field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        """Compact dict for finality events and log trails."""
        return {
            "source_id": self.source_id,
            "kind": self.kind.value,
            "outcome": self.outcome.value if self.outcome else None,
            "target_id": self.reference.target_id if self.reference else None,
            "skipped": self.outcome == ReconcileOutcome.skipped,
            "reason": self.skip_reason,
        }


class TargetFieldChange(BaseModel):
    """A single custom-field change reported by the target system."""

    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    target_id: str
    field: str
    old_value: str | None = None
    new_value: str | None = None


class SubtaskCreated(BaseModel):
    """A task created on the target, possibly as a subtask of another."""

    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    task_id: str


# ── Webhook Payloads ─────────────────────────────────────────────────────────


class SourceEventBody(BaseModel):
    """The ``event`` object inside a source webhook envelope."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    name: str = ""
    changes: dict[str, tuple[Any, Any]] | None = None


class SourceWebhookEnvelope(BaseModel):
    """Source system webhook body."""

    event_object: str
    event_action: str
    timestamp: int | float | None = None
    webhook_token: str
    event: SourceEventBody


class TargetWebhookEvent(BaseModel):
    """One entry of the target system's webhook array."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId")
    custom_field_id: str = Field(alias="customFieldId")
    webhook_id: str = Field(alias="webhookId")
    event_author_id: str = Field(alias="eventAuthorId")
    event_type: str = Field(alias="eventType")
    last_updated_date: str = Field(alias="lastUpdatedDate")
    old_value: str | None = Field(default=None, alias="oldValue")
    value: str | None = None


class TargetTaskCreatedEvent(BaseModel):
    """One ``TaskCreated`` entry of the target system's webhook array."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId")
    webhook_id: str = Field(alias="webhookId")
    event_author_id: str = Field(alias="eventAuthorId")
    event_type: Literal["TaskCreated"] = Field(alias="eventType")
    last_updated_date: str = Field(alias="lastUpdatedDate")


class TargetHandshake(BaseModel):
    """Body of the target system's one-time secret verification request."""

    request_type: Literal["WebHook secret verification"] = Field(alias="requestType")
