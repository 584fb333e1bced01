"""FastAPI dependencies resolving services built by the application lifespan.

Services live on ``app.state``; an endpoint whose service failed to
initialize answers 503 instead of crashing.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.app.config import Settings, get_settings


def _from_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not available",
        )
    return service


def get_dispatcher(request: Request) -> Any:
    """EventDispatcher from app.state, 503 if not available."""
    return _from_state(request, "dispatcher", "Event dispatcher")


def get_execution_repository(request: Request) -> Any:
    """ExecutionRepository from app.state, 503 if not available."""
    return _from_state(request, "execution_repository", "Execution store")


def get_app_settings(request: Request) -> Settings:
    """Settings stored by the lifespan, falling back to the process singleton."""
    return getattr(request.app.state, "settings", None) or get_settings()
