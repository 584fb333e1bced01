"""Background housekeeping for the execution trace store.

Defines async task functions for orphan-trace cleanup and retention.
Tasks are decoupled from the loop runner so tests and scripts can run
them directly.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.events.schemas import FinalityEvent
from src.app.observability.schemas import OrphanedTrace

logger = structlog.get_logger(__name__)

RETENTION_INTERVAL_SECONDS = 24 * 60 * 60

FinalityPublisher = Callable[[FinalityEvent], Awaitable[Any]]


def orphan_finality(orphan: OrphanedTrace, now: datetime | None = None) -> FinalityEvent:
    """The error finality a swept trace never got from its own flow."""
    now = now or datetime.now(timezone.utc)
    return FinalityEvent(
        trace_id=orphan.trace_id,
        flow_name=orphan.flow_name,
        status="failed",
        duration_ms=max(0, int((now - orphan.started_at).total_seconds() * 1000)),
        error_message=orphan.error_message,
        error_category="timeout",
    )


async def publish_orphan_finality(orphans: list[OrphanedTrace], publish: FinalityPublisher) -> int:
    """Publish ``finality:error:{flow}`` for each swept trace.

    Returns:
        Number of finality events published; failures are logged per trace.
    """
    published = 0
    for orphan in orphans:
        try:
            await publish(orphan_finality(orphan))
            published += 1
        except Exception:
            logger.warning("housekeeping.orphan_finality_failed", trace_id=orphan.trace_id, exc_info=True)
    return published


def setup_housekeeping_tasks(
    repository: Any, settings: Any, publish_finality: FinalityPublisher | None = None
) -> dict:
    """Build the housekeeping task callables.

    1. cleanup_orphans: fail traces stuck in ``running`` past the max age and
       publish their error finality
    2. enforce_retention: delete traces older than the retention window

    Each task logs its result and returns a count; failures are logged and
    reported as zero so one bad run does not end the loop.

    Args:
        repository: ExecutionRepository instance.
        settings: Settings carrying the age and retention thresholds.
        publish_finality: Publishes a FinalityEvent (normally onto the
            event streams); None skips finality for swept traces.

    Returns:
        Dict mapping task name to async callable.
    """

    async def cleanup_orphans_task() -> int:
        try:
            marked = await repository.mark_orphans_failed(settings.ORPHAN_TRACE_MAX_AGE_MINUTES)
        except Exception:
            logger.warning("housekeeping.orphan_cleanup_failed", exc_info=True)
            return 0
        if marked and publish_finality is not None:
            published = await publish_orphan_finality(marked, publish_finality)
            logger.info("housekeeping.orphan_finality_published", marked=len(marked), published=published)
        return len(marked)

    async def enforce_retention_task() -> int:
        try:
            return await repository.delete_older_than(settings.EXECUTION_RETENTION_DAYS)
        except Exception:
            logger.warning("housekeeping.retention_failed", exc_info=True)
            return 0

    return {
        "cleanup_orphans": cleanup_orphans_task,
        "enforce_retention": enforce_retention_task,
    }


def task_intervals(settings: Any) -> dict[str, int]:
    return {
        "cleanup_orphans": settings.ORPHAN_CLEANUP_INTERVAL_SECONDS,
        "enforce_retention": RETENTION_INTERVAL_SECONDS,
    }


def start_housekeeping_background(tasks: dict, intervals: dict[str, int], app_state: Any) -> None:
    """Start each task as an asyncio loop and keep the task refs on app_state."""
    background_tasks: list[asyncio.Task] = []

    for task_name, task_fn in tasks.items():
        interval = intervals.get(task_name, 3600)

        async def _loop(fn=task_fn, name=task_name, sleep=interval):
            while True:
                try:
                    await asyncio.sleep(sleep)
                    await fn()
                except asyncio.CancelledError:
                    logger.info("housekeeping.task_cancelled", task=name)
                    break
                except Exception:
                    logger.warning("housekeeping.task_loop_error", task=name, exc_info=True)

        background_tasks.append(asyncio.create_task(_loop(), name=f"housekeeping_{task_name}"))

    app_state.housekeeping_tasks = background_tasks

    logger.info(
        "housekeeping.background_tasks_started",
        task_count=len(background_tasks),
        tasks=list(tasks.keys()),
    )
