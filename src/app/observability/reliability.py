"""Daily reliability snapshots computed from execution events.

For one calendar day (UTC) the snapshot job reads finished flow runs and
external API calls from the time-series sink and writes one row per flow
and one row per external service: totals, success rate, and average,
p50, p95 and p99 latency.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable
from datetime import date
from typing import Any

import structlog

from src.app.observability.schemas import ReliabilitySnapshot
from src.app.observability.timeseries import EVENTS_TABLE, ClickHouseSink

logger = structlog.get_logger(__name__)

_FLOW_QUERY = (
    f"SELECT flow_name AS name, status, duration_ms FROM {EVENTS_TABLE} "
    "WHERE event_type IN ('execution_completed', 'execution_failed') "
    "AND toDate(event_time) = {day:Date}"
)
_SERVICE_QUERY = (
    f"SELECT service AS name, status, duration_ms FROM {EVENTS_TABLE} "
    "WHERE event_type = 'api_call' AND toDate(event_time) = {day:Date}"
)


def percentile(values: list[float], pct: float) -> float:
    """Linear-interpolated percentile of ``values`` (0 for an empty list).

    >>> percentile([10, 20, 30, 40], 50)
    25.0
    """
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = (len(ordered) - 1) * pct / 100
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(ordered[lower])
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower)


def summarize(
    day: date, scope: str, rows: Iterable[dict[str, Any]]
) -> list[ReliabilitySnapshot]:
    """Group rows by name and aggregate each group.

    Args:
        day: Day the rows belong to.
        scope: ``"flow"`` or ``"service"``.
        rows: Dicts with ``name``, ``status`` and ``duration_ms``.

    Returns:
        One snapshot per name, sorted by name.
    """
    groups: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for row in rows:
        groups[row["name"]].append(row)

    snapshots = []
    for name in sorted(groups):
        group = groups[name]
        succeeded = sum(1 for r in group if r["status"] == "success")
        durations = [float(r["duration_ms"]) for r in group if r.get("duration_ms") is not None]
        snapshots.append(
            ReliabilitySnapshot(
                snapshot_date=day.isoformat(),
                scope=scope,
                name=name,
                total=len(group),
                succeeded=succeeded,
                failed=len(group) - succeeded,
                success_rate=round(succeeded / len(group), 4),
                avg_duration_ms=round(sum(durations) / len(durations), 2) if durations else 0.0,
                p50_duration_ms=percentile(durations, 50),
                p95_duration_ms=percentile(durations, 95),
                p99_duration_ms=percentile(durations, 99),
            )
        )
    return snapshots


async def build_daily_snapshots(sink: ClickHouseSink, day: date) -> list[ReliabilitySnapshot]:
    """Compute and store the snapshots for ``day``.

    Returns:
        The snapshots written.
    """
    params = {"day": day.isoformat()}
    flow_rows = await sink.query(_FLOW_QUERY, params)
    service_rows = await sink.query(_SERVICE_QUERY, params)

    snapshots = summarize(day, "flow", flow_rows) + summarize(day, "service", service_rows)
    await sink.insert_snapshots(snapshots)
    logger.info(
        "reliability.snapshots_written",
        day=day.isoformat(),
        flows=len(flow_rows),
        api_calls=len(service_rows),
        snapshots=len(snapshots),
    )
    return snapshots
