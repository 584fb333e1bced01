"""Per-trace flow log trail stored in Redis.

Every meaningful stage of a flow appends an entry (level, message,
metadata, timestamp) to a Redis list keyed by trace id. The notification
layer reads the trail when rendering a finality report and clears it
afterwards; a TTL removes trails nobody reads.

Key pattern: flow_log:{trace_id}
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class FlowLogTrail:
    """Append/read/clear access to flow log trails.

    Args:
        redis: Async Redis client (``decode_responses=True``).
        ttl_seconds: Expiry applied on every append.
    """

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @staticmethod
    def _key(trace_id: str) -> str:
        return f"flow_log:{trace_id}"

    async def append(
        self,
        trace_id: str,
        level: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        entry = {
            "level": level,
            "message": message,
            "metadata": metadata or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        key = self._key(trace_id)
        await self._redis.rpush(key, json.dumps(entry, default=str))
        await self._redis.expire(key, self._ttl)

    async def read(self, trace_id: str) -> list[dict[str, Any]]:
        """All entries for a trace, oldest first. Unparseable entries are dropped."""
        raw_entries = await self._redis.lrange(self._key(trace_id), 0, -1)
        entries = []
        for raw in raw_entries:
            try:
                entries.append(json.loads(raw))
            except (TypeError, ValueError):
                logger.warning("trail.entry_unreadable", trace_id=trace_id)
        return entries

    async def clear(self, trace_id: str) -> None:
        await self._redis.delete(self._key(trace_id))
