"""Internal event schemas and topic names.

Topics:
- ``{entity}:{action}`` -- a source record changed, e.g. ``work_order:updated``
- ``target_field:changed`` -- a tracked custom field changed on the target
- ``target_task:created`` -- a subtask was created under a target task
- ``finality:{flow}-success`` / ``finality:error:{flow}`` -- a flow finished

Every event carries the trace id generated at ingress.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from src.app.sync.schemas import EntityAction, EntityKind

TARGET_FIELD_CHANGED = "target_field:changed"
TARGET_TASK_CREATED = "target_task:created"


def entity_topic(kind: EntityKind | str, action: EntityAction | str) -> str:
    """Topic for a source lifecycle event, e.g. ``quote:created``."""
    kind_value = kind.value if isinstance(kind, EntityKind) else kind
    action_value = action.value if isinstance(action, EntityAction) else action
    return f"{kind_value}:{action_value}"


def finality_success_topic(flow_name: str) -> str:
    return f"finality:{flow_name}-success"


def finality_error_topic(flow_name: str) -> str:
    return f"finality:error:{flow_name}"


def new_trace_id() -> str:
    """Correlation id generated once per inbound event."""
    return str(uuid.uuid4())


class SyncEvent(BaseModel):
    """One message on the event streams.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        topic: Routing key, also the stream name.
        trace_id: Correlation id threaded through the whole flow.
        timestamp: UTC creation time.
        data: Validated payload (a ChangeNotification, TargetFieldChange or
            SubtaskCreated dump, or a FinalityEvent dump for finality topics).
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    topic: str
    trace_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = Field(default_factory=dict)

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to the flat string dict XADD expects.

        ``data`` is JSON-encoded; values JSON cannot represent natively
        (dates, enums) are stringified.
        """
        return {
            "event_id": self.event_id,
            "topic": self.topic,
            "trace_id": self.trace_id,
            "timestamp": self.timestamp.isoformat(),
            "data": json.dumps(self.data, default=str),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> SyncEvent:
        """Rebuild an event from an XREADGROUP entry.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If ``data`` or ``timestamp`` cannot be decoded.
        """
        return cls(
            event_id=raw["event_id"],
            topic=raw["topic"],
            trace_id=raw["trace_id"],
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            data=json.loads(raw.get("data") or "{}"),
        )


class FinalityEvent(BaseModel):
    """Terminal outcome of one flow run, emitted exactly once per trace."""

    trace_id: str
    flow_name: str
    status: str
    duration_ms: int = 0
    step_name: str | None = None
    error_message: str | None = None
    error_category: str | None = None
    result: dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def topic(self) -> str:
        if self.succeeded:
            return finality_success_topic(self.flow_name)
        return finality_error_topic(self.flow_name)

    def to_event(self) -> SyncEvent:
        return SyncEvent(topic=self.topic, trace_id=self.trace_id, data=self.model_dump())
