#!/usr/bin/env python3
"""Execution trace housekeeping.

Usage:
    uv run python scripts/cleanup_executions.py
    uv run python scripts/cleanup_executions.py --max-age-minutes 60 --retention-days 30
    uv run python scripts/cleanup_executions.py --orphans-only

Marks traces stuck in ``running`` as failed (timeout) and deletes traces
older than the retention window. Intended for cron when the API process
does not run the housekeeping loops itself. Each orphan also gets its
error finality published onto the event streams unless --no-finality.

Reads DATABASE_URL and REDIS_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

logger = structlog.get_logger(__name__)


async def main_async(args: argparse.Namespace) -> None:
    from src.app.config import get_settings
    from src.app.core.database import close_db, get_session
    from src.app.core.redis import close_redis, get_redis_pool
    from src.app.events.bus import EventDispatcher
    from src.app.observability.housekeeping import publish_orphan_finality
    from src.app.observability.repository import ExecutionRepository

    settings = get_settings()
    repository = ExecutionRepository(session_factory=get_session)
    max_age = args.max_age_minutes or settings.ORPHAN_TRACE_MAX_AGE_MINUTES
    retention = args.retention_days or settings.EXECUTION_RETENTION_DAYS

    published = 0
    try:
        orphans = await repository.mark_orphans_failed(max_age)
        logger.info("Orphan traces marked failed", count=len(orphans), max_age_minutes=max_age)

        if orphans and not args.no_finality:
            dispatcher = EventDispatcher.from_settings(get_redis_pool(), settings)
            try:
                published = await publish_orphan_finality(orphans, dispatcher.publish_finality)
            finally:
                await close_redis()
            logger.info("Orphan finality published", count=published)

        deleted = 0
        if not args.orphans_only:
            deleted = await repository.delete_older_than(retention)
            logger.info("Old traces deleted", count=deleted, retention_days=retention)
    finally:
        await close_db()

    print(f"\nOrphans marked failed: {len(orphans)} (finality published: {published})")
    for orphan in orphans:
        print(f"  {orphan.trace_id}  {orphan.flow_name}  started {orphan.started_at.isoformat()}")
    if not args.orphans_only:
        print(f"Traces deleted (older than {retention} days): {deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Clean up execution traces")
    parser.add_argument("--max-age-minutes", type=int, help="Age after which a running trace is an orphan")
    parser.add_argument("--retention-days", type=int, help="Delete traces started before this many days ago")
    parser.add_argument("--orphans-only", action="store_true", help="Skip the retention delete")
    parser.add_argument("--no-finality", action="store_true", help="Do not publish error finality for orphans")
    args = parser.parse_args()

    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
