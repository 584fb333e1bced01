"""Execution trace persistence models.

Three tables record every flow run:
- flow_executions: one row per trace (``trace_id`` unique), ``running``
  until it reaches finality, then ``success`` or ``failed`` exactly once.
- step_executions: one row per named processing stage.
- external_api_calls: one row per outbound call to a remote system.

Child rows carry both the trace id (for querying without a join) and the
parent row id.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base

FLOW_STATUSES = ("running", "success", "failed")
STEP_STATUSES = ("started", "success", "failed", "skipped")
API_CALL_STATUSES = ("success", "failed", "timeout")
ERROR_CATEGORIES = ("api_error", "validation_error", "timeout", "unknown")


def _in(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class FlowExecutionModel(Base):
    """One end-to-end flow run."""

    __tablename__ = "flow_executions"
    __table_args__ = (
        CheckConstraint(_in("status", FLOW_STATUSES), name="ck_flow_executions_status"),
        CheckConstraint(
            f"error_category IS NULL OR {_in('error_category', ERROR_CATEGORIES)}",
            name="ck_flow_executions_error_category",
        ),
        Index("ix_flow_executions_status_started_at", "status", "started_at"),
        Index("ix_flow_executions_flow_name", "flow_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    trace_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    flow_name: Mapped[str] = mapped_column(String(100), nullable=False)
    flow_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="running", server_default=text("'running'")
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_category: Mapped[str | None] = mapped_column(String(30), nullable=True)
    input_summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class StepExecutionModel(Base):
    """One named stage inside a flow run."""

    __tablename__ = "step_executions"
    __table_args__ = (
        CheckConstraint(_in("status", STEP_STATUSES), name="ck_step_executions_status"),
        CheckConstraint(
            f"error_category IS NULL OR {_in('error_category', ERROR_CATEGORIES)}",
            name="ck_step_executions_error_category",
        ),
        Index("ix_step_executions_trace_id", "trace_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    trace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    execution_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("flow_executions.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="started", server_default=text("'started'")
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_category: Mapped[str | None] = mapped_column(String(30), nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)


class ExternalApiCallModel(Base):
    """One outbound call to a remote system (retries included)."""

    __tablename__ = "external_api_calls"
    __table_args__ = (
        CheckConstraint(_in("status", API_CALL_STATUSES), name="ck_external_api_calls_status"),
        Index("ix_external_api_calls_trace_id", "trace_id"),
        Index("ix_external_api_calls_service_called_at", "service", "called_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    trace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    execution_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("flow_executions.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_execution_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("step_executions.id", ondelete="SET NULL"),
        nullable=True,
    )
    service: Mapped[str] = mapped_column(String(50), nullable=False)
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    called_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
