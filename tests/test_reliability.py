"""Unit tests for the daily reliability snapshots.

Tests cover:
- Interpolated percentiles
- Per-name aggregation of success rate and latency
- build_daily_snapshots reading both queries and writing the result
"""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import pytest

from src.app.observability.reliability import build_daily_snapshots, percentile, summarize

DAY = date(2024, 12, 1)


class TestPercentile:
    """Linear-interpolated percentiles."""

    def test_empty(self):
        assert percentile([], 95) == 0.0

    def test_single_value(self):
        assert percentile([42.0], 99) == 42.0

    def test_interpolates(self):
        assert percentile([10, 20, 30, 40], 50) == 25.0
        assert percentile([40, 10, 30, 20], 0) == 10.0
        assert percentile([10, 20, 30, 40], 100) == 40.0

    def test_p95(self):
        values = list(range(1, 101))
        assert percentile(values, 95) == pytest.approx(95.05)


class TestSummarize:
    """Grouping rows into snapshots."""

    def test_groups_by_name(self):
        rows = [
            {"name": "work-order-updated", "status": "success", "duration_ms": 100},
            {"name": "work-order-updated", "status": "failed", "duration_ms": 300},
            {"name": "quote-created", "status": "success", "duration_ms": 50},
            {"name": "work-order-updated", "status": "success", "duration_ms": None},
        ]

        snapshots = summarize(DAY, "flow", rows)

        assert [s.name for s in snapshots] == ["quote-created", "work-order-updated"]
        wo = snapshots[1]
        assert wo.snapshot_date == "2024-12-01"
        assert wo.scope == "flow"
        assert (wo.total, wo.succeeded, wo.failed) == (3, 2, 1)
        assert wo.success_rate == 0.6667
        assert wo.avg_duration_ms == 200.0
        assert wo.p50_duration_ms == 200.0

    def test_no_rows(self):
        assert summarize(DAY, "service", []) == []


class TestBuildDailySnapshots:
    """Query, aggregate and store."""

    @pytest.mark.asyncio
    async def test_writes_flow_and_service_rows(self):
        sink = AsyncMock()
        sink.query.side_effect = [
            [{"name": "quote-created", "status": "success", "duration_ms": 80}],
            [
                {"name": "source", "status": "success", "duration_ms": 40},
                {"name": "target", "status": "timeout", "duration_ms": 30000},
            ],
        ]

        snapshots = await build_daily_snapshots(sink, DAY)

        assert [(s.scope, s.name) for s in snapshots] == [
            ("flow", "quote-created"),
            ("service", "source"),
            ("service", "target"),
        ]
        assert snapshots[2].success_rate == 0.0
        for call in sink.query.await_args_list:
            assert call.args[1] == {"day": "2024-12-01"}
        sink.insert_snapshots.assert_awaited_once_with(snapshots)
