"""Dead letter queue for events that could not be processed.

Entries that exhausted their retries, or could not be decoded at all, are
moved to a per-topic DLQ stream for review and optional replay.

DLQ key pattern: {prefix}:{topic}:dlq
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class DeadLetterQueue:
    """Dead letter queue backed by Redis Streams.

    Args:
        redis: Async Redis client.
        prefix: Stream key prefix shared with the event bus.
        maxlen: Stream cap applied when replaying into the original topic.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "sync:events", maxlen: int = 10000) -> None:
        self._redis = redis
        self._prefix = prefix
        self._maxlen = maxlen

    def _dlq_key(self, topic: str) -> str:
        return f"{self._prefix}:{topic}:dlq"

    def _original_stream_key(self, topic: str) -> str:
        return f"{self._prefix}:{topic}"

    async def send_to_dlq(
        self,
        original_topic: str,
        message_id: str,
        data: dict[str, str],
        error: str,
        retry_count: int,
    ) -> str:
        """Move a failed entry to the dead letter queue.

        Stores the original entry along with failure metadata (error,
        retry count, timestamp, original message ID).

        Returns:
            DLQ message ID assigned by XADD.
        """
        dlq_key = self._dlq_key(original_topic)
        dlq_data: dict[str, str] = {
            **data,
            "_dlq_original_topic": original_topic,
            "_dlq_original_id": message_id,
            "_dlq_error": error,
            "_dlq_retry_count": str(retry_count),
            "_dlq_timestamp": datetime.now(timezone.utc).isoformat(),
        }

        dlq_message_id = await self._redis.xadd(dlq_key, dlq_data)

        logger.warning(
            "event.dead_lettered",
            dlq_key=dlq_key,
            topic=original_topic,
            original_id=message_id,
            trace_id=data.get("trace_id"),
            error=error,
            retry_count=retry_count,
        )
        return dlq_message_id

    async def list_dlq_messages(self, topic: str, count: int = 50) -> list[tuple[str, dict[str, Any]]]:
        """``(message_id, data)`` pairs from the DLQ of ``topic``, oldest first."""
        return await self._redis.xrange(self._dlq_key(topic), count=count)

    async def replay_message(self, topic: str, dlq_message_id: str) -> str:
        """Re-publish a DLQ entry to its original topic and delete it from the DLQ.

        DLQ metadata and the retry count are stripped so the entry starts
        over with a fresh retry budget.

        Returns:
            New message ID in the original stream.

        Raises:
            ValueError: If the DLQ message ID is not found.
        """
        dlq_key = self._dlq_key(topic)
        messages = await self._redis.xrange(dlq_key, min=dlq_message_id, max=dlq_message_id, count=1)
        if not messages:
            msg = f"DLQ message '{dlq_message_id}' not found in {dlq_key}"
            raise ValueError(msg)

        _msg_id, data = messages[0]
        replay_data = {k: v for k, v in data.items() if not k.startswith("_dlq_")}
        replay_data.pop("_retry_count", None)

        new_id = await self._redis.xadd(
            self._original_stream_key(topic),
            replay_data,
            maxlen=self._maxlen,
            approximate=True,
        )
        await self._redis.xdel(dlq_key, dlq_message_id)

        logger.info(
            "event.replayed",
            topic=topic,
            dlq_message_id=dlq_message_id,
            new_message_id=new_id,
        )
        return new_id
