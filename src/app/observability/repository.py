"""Execution trace repository -- async persistence for the trace tables.

Provides ExecutionRepository with the session_factory callable pattern.
The terminal transition of a trace is a conditional UPDATE restricted to
``status = 'running'``, so a second completion for the same trace id is a
no-op in the store regardless of which process sends it.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.observability.models import (
    ExternalApiCallModel,
    FlowExecutionModel,
    StepExecutionModel,
)
from src.app.observability.schemas import (
    ExecutionDetail,
    ExternalApiCall,
    FlowExecution,
    OrphanedTrace,
    StepExecution,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_execution(model: FlowExecutionModel) -> FlowExecution:
    return FlowExecution(
        id=str(model.id),
        trace_id=model.trace_id,
        flow_name=model.flow_name,
        flow_type=model.flow_type,
        status=model.status,
        started_at=model.started_at,
        completed_at=model.completed_at,
        duration_ms=model.duration_ms,
        error_message=model.error_message,
        error_category=model.error_category,
        input_summary=model.input_summary,
    )


def _model_to_step(model: StepExecutionModel) -> StepExecution:
    return StepExecution(
        id=str(model.id),
        trace_id=model.trace_id,
        execution_id=str(model.execution_id),
        step_name=model.step_name,
        status=model.status,
        started_at=model.started_at,
        completed_at=model.completed_at,
        duration_ms=model.duration_ms,
        error_message=model.error_message,
        error_category=model.error_category,
        skip_reason=model.skip_reason,
        metadata=model.metadata_,
    )


def _model_to_api_call(model: ExternalApiCallModel) -> ExternalApiCall:
    return ExternalApiCall(
        id=str(model.id),
        trace_id=model.trace_id,
        execution_id=str(model.execution_id),
        step_execution_id=str(model.step_execution_id) if model.step_execution_id else None,
        service=model.service,
        operation=model.operation,
        status=model.status,
        http_status=model.http_status,
        duration_ms=model.duration_ms,
        error_message=model.error_message,
        called_at=model.called_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class ExecutionRepository:
    """Row store for flow executions, step executions and API calls.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Flow Executions ─────────────────────────────────────────────────────

    async def start_execution(
        self,
        trace_id: str,
        flow_name: str,
        flow_type: str,
        input_summary: dict[str, Any] | None = None,
    ) -> str:
        """Insert the ``running`` row for a trace.

        A repeated start for the same trace id keeps the first row.

        Returns:
            Row id of the trace's flow execution.
        """
        async for session in self._session_factory():
            stmt = (
                insert(FlowExecutionModel)
                .values(
                    trace_id=trace_id,
                    flow_name=flow_name,
                    flow_type=flow_type,
                    status="running",
                    input_summary=input_summary,
                )
                .on_conflict_do_nothing(index_elements=["trace_id"])
                .returning(FlowExecutionModel.id)
            )
            result = await session.execute(stmt)
            row_id = result.scalar_one_or_none()
            if row_id is None:
                existing = await session.execute(
                    select(FlowExecutionModel.id).where(FlowExecutionModel.trace_id == trace_id)
                )
                row_id = existing.scalar_one()
            await session.commit()
            return str(row_id)

    async def find_execution_id(self, trace_id: str) -> str | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(FlowExecutionModel.id).where(FlowExecutionModel.trace_id == trace_id)
            )
            row_id = result.scalar_one_or_none()
            return str(row_id) if row_id else None

    async def finish_execution(
        self,
        trace_id: str,
        status: str,
        duration_ms: int,
        error_message: str | None = None,
        error_category: str | None = None,
    ) -> bool:
        """Move a running trace to its terminal status.

        Returns:
            True if this call performed the transition, False if the trace
            was already terminal (or never started).
        """
        async for session in self._session_factory():
            stmt = (
                update(FlowExecutionModel)
                .where(
                    FlowExecutionModel.trace_id == trace_id,
                    FlowExecutionModel.status == "running",
                )
                .values(
                    status=status,
                    completed_at=datetime.now(timezone.utc),
                    duration_ms=duration_ms,
                    error_message=error_message,
                    error_category=error_category,
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    # ── Step Executions ─────────────────────────────────────────────────────

    async def start_step(self, trace_id: str, execution_id: str, step_name: str) -> str:
        async for session in self._session_factory():
            model = StepExecutionModel(
                trace_id=trace_id,
                execution_id=uuid.UUID(execution_id),
                step_name=step_name,
                status="started",
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return str(model.id)

    async def finish_step(
        self,
        step_id: str,
        status: str,
        duration_ms: int,
        error_message: str | None = None,
        error_category: str | None = None,
        skip_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(StepExecutionModel)
                .where(StepExecutionModel.id == uuid.UUID(step_id))
                .values(
                    status=status,
                    completed_at=datetime.now(timezone.utc),
                    duration_ms=duration_ms,
                    error_message=error_message,
                    error_category=error_category,
                    skip_reason=skip_reason,
                    metadata_=metadata,
                )
            )
            await session.commit()

    # ── External API Calls ──────────────────────────────────────────────────

    async def record_api_call(
        self,
        trace_id: str,
        execution_id: str,
        service: str,
        operation: str,
        status: str,
        duration_ms: int,
        http_status: int | None = None,
        error_message: str | None = None,
        step_execution_id: str | None = None,
    ) -> str:
        async for session in self._session_factory():
            model = ExternalApiCallModel(
                trace_id=trace_id,
                execution_id=uuid.UUID(execution_id),
                step_execution_id=uuid.UUID(step_execution_id) if step_execution_id else None,
                service=service,
                operation=operation,
                status=status,
                http_status=http_status,
                duration_ms=duration_ms,
                error_message=error_message,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return str(model.id)

    # ── Queries ─────────────────────────────────────────────────────────────

    async def get_execution(self, trace_id: str) -> ExecutionDetail | None:
        """A trace with its steps and API calls, oldest first."""
        async for session in self._session_factory():
            result = await session.execute(
                select(FlowExecutionModel).where(FlowExecutionModel.trace_id == trace_id)
            )
            execution = result.scalar_one_or_none()
            if execution is None:
                return None

            steps = await session.execute(
                select(StepExecutionModel)
                .where(StepExecutionModel.execution_id == execution.id)
                .order_by(StepExecutionModel.started_at)
            )
            calls = await session.execute(
                select(ExternalApiCallModel)
                .where(ExternalApiCallModel.execution_id == execution.id)
                .order_by(ExternalApiCallModel.called_at)
            )
            return ExecutionDetail(
                execution=_model_to_execution(execution),
                steps=[_model_to_step(m) for m in steps.scalars().all()],
                api_calls=[_model_to_api_call(m) for m in calls.scalars().all()],
            )

    async def list_executions(
        self,
        status: str | None = None,
        flow_name: str | None = None,
        limit: int = 50,
    ) -> list[FlowExecution]:
        """Most recent traces first, optionally filtered."""
        async for session in self._session_factory():
            stmt = select(FlowExecutionModel)
            if status:
                stmt = stmt.where(FlowExecutionModel.status == status)
            if flow_name:
                stmt = stmt.where(FlowExecutionModel.flow_name == flow_name)
            stmt = stmt.order_by(FlowExecutionModel.started_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_execution(m) for m in result.scalars().all()]

    # ── Housekeeping ────────────────────────────────────────────────────────

    async def mark_orphans_failed(self, max_age_minutes: int) -> list[OrphanedTrace]:
        """Fail every trace still ``running`` after ``max_age_minutes``.

        Returns:
            The traces that were marked, for finality signalling.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)
        message = f"Orphaned: still running after {max_age_minutes} minutes"
        async for session in self._session_factory():
            stmt = (
                update(FlowExecutionModel)
                .where(
                    FlowExecutionModel.status == "running",
                    FlowExecutionModel.started_at < cutoff,
                )
                .values(
                    status="failed",
                    completed_at=datetime.now(timezone.utc),
                    error_message=message,
                    error_category="timeout",
                )
                .returning(
                    FlowExecutionModel.trace_id,
                    FlowExecutionModel.flow_name,
                    FlowExecutionModel.started_at,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            orphans = [
                OrphanedTrace(trace_id=row.trace_id, flow_name=row.flow_name, started_at=row.started_at, error_message=message)
                for row in result.all()
            ]
            await session.commit()
            if orphans:
                logger.warning("executions.orphans_marked_failed", count=len(orphans))
            return orphans

    async def delete_older_than(self, days: int) -> int:
        """Delete traces started more than ``days`` ago (children cascade)."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async for session in self._session_factory():
            result = await session.execute(
                delete(FlowExecutionModel).where(FlowExecutionModel.started_at < cutoff)
            )
            await session.commit()
            logger.info("executions.retention_cleanup", deleted=result.rowcount, days=days)
            return result.rowcount
