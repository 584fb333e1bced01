"""Time-series sink for execution events (ClickHouse HTTP interface).

Rows are appended to ``execution_events`` (one per lifecycle event,
partitioned by month, kept 12 months) and aggregated daily into
``reliability_snapshots``. Talks to ClickHouse over plain HTTP with
``JSONEachRow`` bodies, so the only client library needed is httpx.

When ``CLICKHOUSE_URL`` is empty the sink is not constructed and the
recorder writes to the row store only.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from src.app.observability.schemas import ExecutionEvent, ReliabilitySnapshot

logger = structlog.get_logger(__name__)

EVENTS_TABLE = "execution_events"
SNAPSHOTS_TABLE = "reliability_snapshots"

_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS {database}.{table} (
    event_type LowCardinality(String),
    trace_id String,
    flow_name LowCardinality(String),
    flow_type LowCardinality(String),
    step_name String,
    status LowCardinality(String),
    error_category LowCardinality(String),
    error_message String,
    error_code Nullable(UInt16),
    duration_ms Nullable(UInt32),
    service LowCardinality(String),
    operation String,
    event_time DateTime64(3, 'UTC')
)
ENGINE = MergeTree
PARTITION BY toYYYYMM(event_time)
ORDER BY (flow_name, event_time, trace_id)
TTL toDateTime(event_time) + INTERVAL 12 MONTH
"""

_SNAPSHOTS_DDL = """
CREATE TABLE IF NOT EXISTS {database}.{table} (
    snapshot_date Date,
    scope LowCardinality(String),
    name String,
    total UInt64,
    succeeded UInt64,
    failed UInt64,
    success_rate Float64,
    avg_duration_ms Float64,
    p50_duration_ms Float64,
    p95_duration_ms Float64,
    p99_duration_ms Float64
)
ENGINE = ReplacingMergeTree
ORDER BY (snapshot_date, scope, name)
"""


class ClickHouseSink:
    """Append-only writer and query runner for the event tables.

    Args:
        http: Shared async HTTP client (owned by the caller).
        url: ClickHouse HTTP endpoint, e.g. ``http://localhost:8123``.
        user: ClickHouse user.
        password: ClickHouse password.
        database: Database holding both tables.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        url: str,
        user: str = "default",
        password: str = "",
        database: str = "default",
    ) -> None:
        self._http = http
        self._url = url.rstrip("/")
        self._database = database
        self._headers = {"X-ClickHouse-User": user, "X-ClickHouse-Key": password}

    async def _post(self, query: str, body: str = "", params: dict[str, str] | None = None) -> str:
        request_params = {"query": query, "database": self._database}
        for name, value in (params or {}).items():
            request_params[f"param_{name}"] = value
        response = await self._http.post(
            f"{self._url}/",
            params=request_params,
            content=body.encode("utf-8"),
            headers=self._headers,
        )
        response.raise_for_status()
        return response.text

    async def ensure_schema(self) -> None:
        """Create both tables if missing."""
        await self._post(_EVENTS_DDL.format(database=self._database, table=EVENTS_TABLE))
        await self._post(_SNAPSHOTS_DDL.format(database=self._database, table=SNAPSHOTS_TABLE))
        logger.info("timeseries.schema_ready", database=self._database)

    async def insert_events(self, events: list[ExecutionEvent]) -> None:
        if not events:
            return
        body = "\n".join(json.dumps(event.to_row()) for event in events)
        await self._post(f"INSERT INTO {EVENTS_TABLE} FORMAT JSONEachRow", body)

    async def insert_snapshots(self, snapshots: list[ReliabilitySnapshot]) -> None:
        if not snapshots:
            return
        body = "\n".join(json.dumps(s.model_dump(mode="json")) for s in snapshots)
        await self._post(f"INSERT INTO {SNAPSHOTS_TABLE} FORMAT JSONEachRow", body)

    async def query(self, sql: str, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        """Run a SELECT and return its rows.

        Args:
            sql: Query without a FORMAT clause; ``{name:Type}`` placeholders
                are bound from ``params``.
            params: Query parameter values.
        """
        text = await self._post(f"{sql} FORMAT JSONEachRow", params=params)
        return [json.loads(line) for line in text.splitlines() if line.strip()]

    async def ping(self) -> bool:
        response = await self._http.get(f"{self._url}/ping")
        return response.is_success
