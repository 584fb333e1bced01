"""Declarative field mappings between source records and target tasks.

Defines:
- FieldMapping: one ``(source_field, target_field, transform)`` triple.
- MAPPINGS: the explicit mapping table per entity kind.
- apply_mappings(): the interpreter turning a CanonicalRecord into a
  TargetRecordWrite (the managed field set).
- TRACKED_FIELDS: fields the loop guard knows how to compare, with the
  name each one has in both systems.
- to_source_value(): converts a target-side value for write-back.

Target field names are logical; the target client translates them to
custom-field ids. ``title``, ``due_date`` and ``status_id`` are task
attributes rather than custom fields.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.app.sync.normalize import normalize_date, split_user_ids
from src.app.sync.schemas import CanonicalRecord, EntityKind, TargetRecordWrite
from src.app.sync.users import UserDirectory

CUSTOM_FIELD_MAX_LENGTH = 4000
OVERSIZED_VALUE = "Over 4k symbols"
_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")

# Target custom field holding the source id -- the identifying attribute
# searched on to find an existing ExternalReference.
SOURCE_ID_FIELD = "source_id"

# Source field whose change is applied to the target as a responsible delta.
OWNER_FIELD = "project_manager_id"

TASK_ATTRIBUTES = frozenset({"title", "due_date", "status_id"})

# Target record field listing the ids of the tasks a task is a subtask of.
PARENT_IDS_FIELD = "parent_ids"

# Target record fields that are not custom fields.
TASK_NATIVE_FIELDS = TASK_ATTRIBUTES | {"responsible_ids", PARENT_IDS_FIELD}


class FieldType(str, Enum):
    """How a tracked field's values are normalized for comparison."""

    date = "date"
    user = "user"


@dataclass
class MappingContext:
    """Lookups the transforms need beyond the record itself."""

    users: UserDirectory
    status_ids: dict[str, str] = field(default_factory=dict)


Transform = Callable[[Any, CanonicalRecord, MappingContext], Any]


# ── Transforms ───────────────────────────────────────────────────────────────


def sanitize_custom_field_value(value: Any, record: CanonicalRecord | None = None, context: MappingContext | None = None) -> str:
    """Render a value the way target custom fields accept it.

    Control characters are stripped and values over 4000 characters are
    replaced by a fixed marker.
    """
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        text = "; ".join(sanitize_custom_field_value(item) for item in value)
    elif isinstance(value, dict):
        text = ", ".join(f"{k}: {sanitize_custom_field_value(v)}" for k, v in value.items())
    else:
        text = str(value)
    text = _CONTROL_CHARS.sub("", text)
    if len(text) > CUSTOM_FIELD_MAX_LENGTH:
        return OVERSIZED_VALUE
    return text


def to_date(value: Any, record: CanonicalRecord, context: MappingContext) -> str | None:
    return normalize_date(value) or None


def to_target_user(value: Any, record: CanonicalRecord, context: MappingContext) -> str | None:
    return context.users.to_target(value) if value else None


def to_target_status(value: Any, record: CanonicalRecord, context: MappingContext) -> str | None:
    if not value:
        return None
    return context.status_ids.get(str(value).lower())


def title_template(prefix: str) -> Transform:
    """Task title such as ``WO #1042: Storefront signage``."""

    def _title(value: Any, record: CanonicalRecord, context: MappingContext) -> str:
        number = record.get("txn_number")
        label = sanitize_custom_field_value(value) or "Untitled"
        return f"{prefix} #{number}: {label}" if number else label

    return _title


# ── Mapping Tables ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FieldMapping:
    """Copy ``source_field`` to ``target_field`` through ``transform``."""

    source_field: str
    target_field: str
    transform: Transform = sanitize_custom_field_value


QUOTE_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping("id", SOURCE_ID_FIELD),
    FieldMapping("title", "title", title_template("QT")),
    FieldMapping("txn_number", "txn_number"),
    FieldMapping("due_date", "due_date", to_date),
    FieldMapping("status", "status_id", to_target_status),
    FieldMapping("customer_name", "customer"),
    FieldMapping("primary_sales_rep_id", "sales_rep", to_target_user),
    FieldMapping("estimator_id", "estimator", to_target_user),
    FieldMapping("total", "total"),
)

WORK_ORDER_MAPPINGS: tuple[FieldMapping, ...] = (
    FieldMapping("id", SOURCE_ID_FIELD),
    FieldMapping("title", "title", title_template("WO")),
    FieldMapping("txn_number", "txn_number"),
    FieldMapping("due_date", "due_date", to_date),
    FieldMapping("due_date", "target_install_date", to_date),
    FieldMapping("status", "status_id", to_target_status),
    FieldMapping("customer_name", "customer"),
    FieldMapping("project_manager_id", "project_manager", to_target_user),
    FieldMapping("primary_sales_rep_id", "sales_rep", to_target_user),
    FieldMapping("estimator_id", "estimator", to_target_user),
    FieldMapping("install_address", "install_address"),
    FieldMapping("total", "total"),
)

MAPPINGS: dict[EntityKind, tuple[FieldMapping, ...]] = {
    EntityKind.quote: QUOTE_MAPPINGS,
    EntityKind.work_order: WORK_ORDER_MAPPINGS,
}


def managed_target_fields(kind: EntityKind) -> set[str]:
    """Target fields this system owns for an entity kind."""
    return {m.target_field for m in MAPPINGS[kind]}


def apply_mappings(
    record: CanonicalRecord,
    context: MappingContext,
    mappings: tuple[FieldMapping, ...] | None = None,
) -> TargetRecordWrite:
    """Evaluate a mapping table against a source record.

    Args:
        record: Canonical source record.
        context: User directory and status lookup.
        mappings: Table to use. Defaults to MAPPINGS[record.kind].

    Returns:
        TargetRecordWrite with every managed field populated.
    """
    if mappings is None:
        mappings = MAPPINGS[record.kind]

    attributes: dict[str, Any] = {}
    custom_fields: dict[str, Any] = {}
    for mapping in mappings:
        source_value = record.id if mapping.source_field == "id" else record.get(mapping.source_field)
        value = mapping.transform(source_value, record, context)
        if mapping.target_field in TASK_ATTRIBUTES:
            attributes[mapping.target_field] = value
        else:
            custom_fields[mapping.target_field] = value

    return TargetRecordWrite(fields=custom_fields, **attributes)


# ── Loop-Tracked Fields ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class TrackedField:
    """A field the loop guard compares, named in both systems."""

    source_field: str
    target_field: str
    field_type: FieldType


TRACKED_FIELDS: tuple[TrackedField, ...] = (
    TrackedField("due_date", "target_install_date", FieldType.date),
    TrackedField("project_manager_id", "project_manager", FieldType.user),
    TrackedField("primary_sales_rep_id", "sales_rep", FieldType.user),
    TrackedField("estimator_id", "estimator", FieldType.user),
)

TRACKED_BY_SOURCE_FIELD: dict[str, TrackedField] = {t.source_field: t for t in TRACKED_FIELDS}
TRACKED_BY_TARGET_FIELD: dict[str, TrackedField] = {t.target_field: t for t in TRACKED_FIELDS}


def to_source_value(tracked: TrackedField, raw_value: Any, context: MappingContext) -> Any:
    """Convert a target-side value into the source system's representation.

    Raises:
        ValueError: The value cannot be written back (empty date, not exactly
            one assignee, or an assignee unknown to the directory).
    """
    if tracked.field_type == FieldType.date:
        normalized = normalize_date(raw_value)
        if not normalized:
            raise ValueError(f"invalid date value for {tracked.target_field}: {raw_value!r}")
        return normalized

    user_ids = split_user_ids(raw_value)
    if len(user_ids) != 1:
        raise ValueError(
            f"invalid value for {tracked.target_field}: expected exactly one user, got {len(user_ids)}"
        )
    source_id = context.users.to_source(user_ids[0])
    if source_id is None:
        raise ValueError(f"invalid value for {tracked.target_field}: unknown user {user_ids[0]}")
    return source_id
