"""Event consumer with retry and dead-lettering.

Reads one topic stream through a consumer group, decodes each entry into a
SyncEvent and runs the handler. An entry is acknowledged only after the
handler has returned. Failed entries are re-published with backoff (1s, 4s,
16s) and moved to the dead letter queue after 3 retries; entries that
cannot be decoded go to the dead letter queue straight away.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from src.app.events.schemas import SyncEvent

if TYPE_CHECKING:
    from src.app.events.bus import StreamEventBus
    from src.app.events.dlq import DeadLetterQueue

logger = structlog.get_logger(__name__)


class EventConsumer:
    """One consumer of one topic's consumer group.

    Args:
        bus: Stream bus to read from.
        topic: Topic (stream) to consume.
        group: Consumer group name.
        consumer_name: Consumer identifier within the group.
        dlq: Dead letter queue for entries that cannot be processed.
        reclaim_idle_ms: Pending entries idle this long (typically left by
            a crashed process) are claimed and processed here.
    """

    MAX_RETRIES: int = 3
    RETRY_DELAYS: list[int] = [1, 4, 16]
    READ_ERROR_DELAY: float = 1.0

    def __init__(
        self,
        bus: StreamEventBus,
        topic: str,
        group: str,
        consumer_name: str,
        dlq: DeadLetterQueue,
        reclaim_idle_ms: int = 60000,
    ) -> None:
        self._bus = bus
        self._topic = topic
        self._group = group
        self._consumer_name = consumer_name
        self._dlq = dlq
        self._reclaim_idle_ms = reclaim_idle_ms
        self._next_reclaim = 0.0
        self._running = False

    @property
    def topic(self) -> str:
        return self._topic

    async def process_loop(self, handler: Callable[[SyncEvent], Awaitable[Any]]) -> None:
        """Read, decode, handle, ack until ``stop()`` is called.

        Redis errors pause the loop for ``READ_ERROR_DELAY`` instead of
        ending it; the entry being processed stays pending and is claimed
        again later.
        """
        self._running = True
        logger.info("consumer.started", topic=self._topic, group=self._group, consumer=self._consumer_name)

        while self._running:
            try:
                messages = await self._bus.subscribe(self._topic, self._group, self._consumer_name)
                for _stream_key, stream_messages in messages:
                    for message_id, raw_data in stream_messages:
                        await self._process_with_retry(message_id, raw_data, handler)

                for message_id, raw_data in await self._reclaim_if_due():
                    await self._process_with_retry(message_id, raw_data, handler)
            except aioredis.RedisError:
                logger.warning("consumer.redis_error", topic=self._topic, consumer=self._consumer_name, exc_info=True)
                await asyncio.sleep(self.READ_ERROR_DELAY)

        logger.info("consumer.stopped", topic=self._topic, consumer=self._consumer_name)

    async def _process_with_retry(
        self,
        message_id: str,
        raw_data: dict[str, str] | None,
        handler: Callable[[SyncEvent], Awaitable[Any]],
    ) -> None:
        """Process one entry.

        On success the entry is acknowledged. On handler failure:
        - below MAX_RETRIES: sleep, re-publish with ``_retry_count`` + 1,
          then ack the original
        - at MAX_RETRIES: send to the DLQ, then ack
        Undecodable entries are dead-lettered without retrying.
        """
        if raw_data is None:
            # Trimmed from the stream while pending; nothing left to process.
            await self._bus.ack(self._topic, self._group, message_id)
            return

        retry_count = int(raw_data.get("_retry_count", "0"))

        try:
            event = SyncEvent.from_stream_dict(raw_data)
        except (KeyError, ValueError, ValidationError) as exc:
            await self._dead_letter(message_id, raw_data, f"undecodable entry: {exc}", retry_count)
            return

        try:
            await handler(event)
        except Exception as exc:
            logger.warning(
                "consumer.event_failed",
                topic=self._topic,
                trace_id=event.trace_id,
                message_id=message_id,
                retry_count=retry_count,
                error=str(exc),
            )
            if retry_count >= self.MAX_RETRIES:
                await self._dead_letter(message_id, raw_data, str(exc), retry_count)
            else:
                await self._retry_later(message_id, raw_data, retry_count)
            return

        await self._bus.ack(self._topic, self._group, message_id)
        logger.debug("consumer.event_processed", topic=self._topic, trace_id=event.trace_id, message_id=message_id)

    async def _retry_later(self, message_id: str, raw_data: dict[str, str], retry_count: int) -> None:
        delay = self.RETRY_DELAYS[min(retry_count, len(self.RETRY_DELAYS) - 1)]
        await asyncio.sleep(delay)

        retry_data = dict(raw_data)
        retry_data["_retry_count"] = str(retry_count + 1)
        await self._bus.append(self._topic, retry_data)
        await self._bus.ack(self._topic, self._group, message_id)

        logger.info(
            "consumer.event_retried",
            topic=self._topic,
            message_id=message_id,
            retry_count=retry_count + 1,
            delay=delay,
        )

    async def _dead_letter(self, message_id: str, raw_data: dict[str, str], error: str, retry_count: int) -> None:
        await self._dlq.send_to_dlq(
            original_topic=self._topic,
            message_id=message_id,
            data=raw_data,
            error=error,
            retry_count=retry_count,
        )
        await self._bus.ack(self._topic, self._group, message_id)

    async def _reclaim_if_due(self) -> list[tuple[str, dict[str, str] | None]]:
        now = time.monotonic()
        if now < self._next_reclaim:
            return []
        self._next_reclaim = now + self._reclaim_idle_ms / 1000
        return await self.reclaim_abandoned()

    async def reclaim_abandoned(self, idle_time_ms: int | None = None) -> list[tuple[str, dict[str, str] | None]]:
        """Claim entries idle in the pending list for at least ``idle_time_ms``."""
        claimed = await self._bus.claim_abandoned(
            self._topic,
            self._group,
            self._consumer_name,
            idle_time_ms=self._reclaim_idle_ms if idle_time_ms is None else idle_time_ms,
        )
        if claimed:
            logger.info("consumer.reclaimed", topic=self._topic, consumer=self._consumer_name, count=len(claimed))
        return claimed

    def stop(self) -> None:
        """Signal the loop to stop after the current iteration."""
        self._running = False
