#!/usr/bin/env python3
"""Build the daily reliability snapshots from the time-series store.

Usage:
    uv run python scripts/reliability_snapshot.py
    uv run python scripts/reliability_snapshot.py --date 2026-03-01

Defaults to yesterday (UTC). Snapshots are written to the
``reliability_snapshots`` table, which collapses reruns for the same day.

Reads CLICKHOUSE_* from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import date, datetime, timedelta, timezone

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import httpx  # noqa: E402
import structlog  # noqa: E402

logger = structlog.get_logger(__name__)


async def main_async(args: argparse.Namespace) -> None:
    from src.app.config import get_settings
    from src.app.observability.reliability import build_daily_snapshots
    from src.app.observability.timeseries import ClickHouseSink

    settings = get_settings()
    if not settings.CLICKHOUSE_URL:
        print("Error: CLICKHOUSE_URL is not configured")
        sys.exit(1)

    day = args.date or (datetime.now(timezone.utc).date() - timedelta(days=1))

    async with httpx.AsyncClient(timeout=60.0) as http:
        sink = ClickHouseSink(
            http,
            settings.CLICKHOUSE_URL,
            user=settings.CLICKHOUSE_USER,
            password=settings.CLICKHOUSE_PASSWORD,
            database=settings.CLICKHOUSE_DATABASE,
        )
        await sink.ensure_schema()
        snapshots = await build_daily_snapshots(sink, day)

    logger.info("Reliability snapshots written", day=day.isoformat(), count=len(snapshots))
    print(f"\nReliability for {day.isoformat()}: {len(snapshots)} snapshot(s)")
    for s in snapshots:
        print(
            f"  {s.scope:8s} {s.name:28s} success={s.success_rate:6.2%} "
            f"total={s.total:5d} p95={s.p95_duration_ms:8.1f}ms"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Build daily reliability snapshots")
    parser.add_argument("--date", type=date.fromisoformat, help="Day to summarize (YYYY-MM-DD), default yesterday")
    args = parser.parse_args()

    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
