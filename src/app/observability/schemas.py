"""Pydantic schemas for execution traces and time-series events.

Read models returned by the repository and the executions API, plus the
ExecutionEvent row shape shared by the time-series sink and the
reliability aggregation.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class FlowStatus(str, Enum):
    running = "running"
    success = "success"
    failed = "failed"


class StepStatus(str, Enum):
    started = "started"
    success = "success"
    failed = "failed"
    skipped = "skipped"


class ApiCallStatus(str, Enum):
    success = "success"
    failed = "failed"
    timeout = "timeout"


class ExecutionEventType(str, Enum):
    """Lifecycle events written to the time-series sink."""

    execution_started = "execution_started"
    step_started = "step_started"
    step_completed = "step_completed"
    step_failed = "step_failed"
    execution_completed = "execution_completed"
    execution_failed = "execution_failed"
    api_call = "api_call"


# ── Row Store Read Models ────────────────────────────────────────────────────


class FlowExecution(BaseModel):
    id: str
    trace_id: str
    flow_name: str
    flow_type: str
    status: FlowStatus
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    error_category: str | None = None
    input_summary: dict[str, Any] | None = None


class OrphanedTrace(BaseModel):
    """A trace the orphan sweep moved from ``running`` to ``failed``."""

    trace_id: str
    flow_name: str
    started_at: datetime
    error_message: str


class StepExecution(BaseModel):
    id: str
    trace_id: str
    execution_id: str
    step_name: str
    status: StepStatus
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    error_category: str | None = None
    skip_reason: str | None = None
    metadata: dict[str, Any] | None = None


class ExternalApiCall(BaseModel):
    id: str
    trace_id: str
    execution_id: str
    step_execution_id: str | None = None
    service: str
    operation: str
    status: ApiCallStatus
    http_status: int | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    called_at: datetime


class ExecutionDetail(BaseModel):
    """A trace with all of its children, as served by the executions API."""

    execution: FlowExecution
    steps: list[StepExecution] = Field(default_factory=list)
    api_calls: list[ExternalApiCall] = Field(default_factory=list)


# ── Time-Series Rows ─────────────────────────────────────────────────────────


class ExecutionEvent(BaseModel):
    """One row of the ``execution_events`` table."""

    event_type: ExecutionEventType
    trace_id: str
    flow_name: str = ""
    flow_type: str = ""
    step_name: str = ""
    status: str = ""
    error_category: str = ""
    error_message: str = ""
    error_code: int | None = None
    duration_ms: int | None = None
    service: str = ""
    operation: str = ""
    event_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_row(self) -> dict[str, Any]:
        """JSONEachRow-ready dict (ClickHouse DateTime64 text format)."""
        row = self.model_dump(mode="json")
        row["event_time"] = self.event_time.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        return row


class ReliabilitySnapshot(BaseModel):
    """Daily aggregate for one flow or one external service."""

    snapshot_date: str
    scope: str  # "flow" or "service"
    name: str
    total: int
    succeeded: int
    failed: int
    success_rate: float
    avg_duration_ms: float
    p50_duration_ms: float
    p95_duration_ms: float
    p99_duration_ms: float
