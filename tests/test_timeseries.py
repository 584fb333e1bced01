"""Tests for the ClickHouse HTTP sink.

Tests cover:
- JSONEachRow inserts with DateTime64 text timestamps
- Query parameter binding and row decoding
- Schema creation and ping
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from src.app.observability.schemas import ExecutionEvent, ExecutionEventType
from src.app.observability.timeseries import ClickHouseSink


def _sink(handler) -> tuple[ClickHouseSink, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ClickHouseSink(http, "http://clickhouse.test:8123/", user="u", password="p", database="sync"), http


class TestClickHouseSink:
    """HTTP interface usage."""

    @pytest.mark.asyncio
    async def test_insert_events(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text="")

        sink, http = _sink(handler)
        event = ExecutionEvent(
            event_type=ExecutionEventType.api_call,
            trace_id="t-1",
            service="target",
            operation="update_task",
            status="failed",
            error_code=503,
            duration_ms=41,
            event_time=datetime(2024, 12, 1, 10, 0, 0, 123456, tzinfo=timezone.utc),
        )
        async with http:
            await sink.insert_events([event])

        request = requests[0]
        assert request.url.params["query"] == "INSERT INTO execution_events FORMAT JSONEachRow"
        assert request.url.params["database"] == "sync"
        assert request.headers["X-ClickHouse-User"] == "u"
        row = json.loads(request.content)
        assert row["event_type"] == "api_call"
        assert row["error_code"] == 503
        assert row["event_time"] == "2024-12-01 10:00:00.123"

    @pytest.mark.asyncio
    async def test_empty_inserts_skip_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        sink, http = _sink(handler)
        async with http:
            await sink.insert_events([])
            await sink.insert_snapshots([])

    @pytest.mark.asyncio
    async def test_query_binds_params(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text='{"name": "source", "status": "success"}\n{"name": "target", "status": "failed"}\n')

        sink, http = _sink(handler)
        async with http:
            rows = await sink.query("SELECT name, status FROM t WHERE d = {day:Date}", {"day": "2024-12-01"})

        assert rows == [{"name": "source", "status": "success"}, {"name": "target", "status": "failed"}]
        params = requests[0].url.params
        assert params["param_day"] == "2024-12-01"
        assert params["query"].endswith("FORMAT JSONEachRow")

    @pytest.mark.asyncio
    async def test_ensure_schema_creates_both_tables(self):
        queries: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            queries.append(request.url.params["query"])
            return httpx.Response(200)

        sink, http = _sink(handler)
        async with http:
            await sink.ensure_schema()

        assert "sync.execution_events" in queries[0]
        assert "sync.reliability_snapshots" in queries[1]

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        sink, http = _sink(lambda request: httpx.Response(500, text="DB::Exception"))
        async with http:
            with pytest.raises(httpx.HTTPStatusError):
                await sink.query("SELECT 1")

    @pytest.mark.asyncio
    async def test_ping(self):
        sink, http = _sink(lambda request: httpx.Response(200, text="Ok.\n"))
        async with http:
            assert await sink.ping() is True
