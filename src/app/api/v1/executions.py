"""Execution trace query endpoints.

Serves the row store: one trace with its steps and API calls, or a list
of recent traces filtered by status and flow.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.app.api.deps import get_execution_repository
from src.app.observability.schemas import ExecutionDetail, FlowExecution, FlowStatus

router = APIRouter(prefix="/executions", tags=["executions"])


@router.get("", response_model=list[FlowExecution])
async def list_executions(
    status_filter: FlowStatus | None = Query(default=None, alias="status"),
    flow_name: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    repository: Any = Depends(get_execution_repository),
) -> list[FlowExecution]:
    """Most recent traces first."""
    return await repository.list_executions(
        status=status_filter.value if status_filter else None,
        flow_name=flow_name,
        limit=limit,
    )


@router.get("/{trace_id}", response_model=ExecutionDetail)
async def get_execution(
    trace_id: str,
    repository: Any = Depends(get_execution_repository),
) -> ExecutionDetail:
    """One trace with its steps and external API calls."""
    detail = await repository.get_execution(trace_id)
    if detail is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Execution {trace_id} not found",
        )
    return detail
