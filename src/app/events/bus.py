"""Event bus on Redis Streams.

Every topic is its own stream, read through a consumer group, so an event
accepted by a webhook survives a restart before its flow has finished.
Messages are acknowledged only once their handlers have returned.

Stream key pattern: {prefix}:{topic}, e.g. ``sync:events:work_order:updated``
"""

from __future__ import annotations

import asyncio
import os
import socket
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.app.events.consumer import EventConsumer
from src.app.events.dlq import DeadLetterQueue
from src.app.events.schemas import FinalityEvent, SyncEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[SyncEvent], Awaitable[Any]]

DEFAULT_PREFIX = "sync:events"


def default_consumer_name() -> str:
    """Consumer name unique to this process, e.g. ``web-1-4242``."""
    return f"{socket.gethostname()}-{os.getpid()}"


class StreamEventBus:
    """Publish to and read from per-topic Redis Streams.

    Args:
        redis: Async Redis client (decode_responses=True).
        prefix: Stream key prefix.
        maxlen: Approximate cap on entries kept per stream.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = DEFAULT_PREFIX, maxlen: int = 10000) -> None:
        self._redis = redis
        self._prefix = prefix
        self._maxlen = maxlen

    def stream_key(self, topic: str) -> str:
        return f"{self._prefix}:{topic}"

    async def publish(self, event: SyncEvent) -> str:
        """Append ``event`` to the stream of its topic.

        Returns:
            Redis message ID assigned by XADD.
        """
        message_id = await self.append(event.topic, event.to_stream_dict())
        logger.debug(
            "event.published",
            topic=event.topic,
            trace_id=event.trace_id,
            event_id=event.event_id,
            message_id=message_id,
        )
        return message_id

    async def append(self, topic: str, data: dict[str, str]) -> str:
        """XADD an already serialized entry (used for retries and replays)."""
        return await self._redis.xadd(
            self.stream_key(topic),
            data,
            maxlen=self._maxlen,
            approximate=True,
        )

    async def ensure_group(self, topic: str, group: str) -> None:
        """Create the consumer group for ``topic`` if it does not exist."""
        try:
            await self._redis.xgroup_create(self.stream_key(topic), group, id="0", mkstream=True)
        except aioredis.ResponseError:
            pass  # BUSYGROUP: group already exists

    async def subscribe(
        self,
        topic: str,
        group: str,
        consumer: str,
        count: int = 10,
        block: int = 5000,
    ) -> list[tuple[str, list[tuple[str, dict[str, str]]]]]:
        """Read new entries as ``consumer`` of ``group``.

        Returns:
            List of ``(stream_key, [(message_id, data), ...])`` tuples,
            empty when ``block`` elapsed without new entries.
        """
        await self.ensure_group(topic, group)
        messages = await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={self.stream_key(topic): ">"},
            count=count,
            block=block,
        )
        return messages or []

    async def ack(self, topic: str, group: str, message_id: str) -> None:
        await self._redis.xack(self.stream_key(topic), group, message_id)

    async def claim_abandoned(
        self,
        topic: str,
        group: str,
        consumer: str,
        idle_time_ms: int,
        count: int = 10,
    ) -> list[tuple[str, dict[str, str] | None]]:
        """Take over entries left pending by a dead or stalled consumer.

        Returns:
            ``(message_id, data)`` pairs; ``data`` is None for entries
            trimmed from the stream while pending.
        """
        result = await self._redis.xautoclaim(
            self.stream_key(topic),
            group,
            consumer,
            min_idle_time=idle_time_ms,
            start_id="0",
            count=count,
        )
        if not result or len(result) < 2:
            return []
        return [(message_id, data) for message_id, data in result[1] if message_id is not None]

    async def get_stream_info(self, topic: str) -> dict[str, Any]:
        return await self._redis.xinfo_stream(self.stream_key(topic))

    async def get_pending(self, topic: str, group: str) -> dict[str, Any]:
        """Pending summary (count, min/max ids, per-consumer counts)."""
        return await self._redis.xpending(self.stream_key(topic), group)


class EventDispatcher:
    """Topic routing on top of the stream bus.

    ``publish`` only appends to the stream. Delivery happens in the consumer
    loops started by ``start()``: one consumer group per topic, each entry
    handed to ``dispatch`` and acknowledged after it returns. Handlers of
    one topic run in subscription order; if one raises, the entry is
    retried as a whole and dead-lettered once its retries are spent.

    Args:
        bus: Stream bus to publish to and read from.
        dlq: Dead letter queue for entries that cannot be processed.
        group: Consumer group name, created on every topic stream.
        consumer_name: Consumer name prefix for this process.
        consumers_per_topic: Concurrent consumer loops per topic.
        reclaim_idle_ms: Idle time after which another consumer's pending
            entries are claimed.
    """

    def __init__(
        self,
        bus: StreamEventBus,
        dlq: DeadLetterQueue,
        group: str = "sync-bridge",
        consumer_name: str | None = None,
        consumers_per_topic: int = 1,
        reclaim_idle_ms: int = 60000,
    ) -> None:
        self._bus = bus
        self._dlq = dlq
        self._group = group
        self._consumer_name = consumer_name or default_consumer_name()
        self._consumers_per_topic = max(1, consumers_per_topic)
        self._reclaim_idle_ms = reclaim_idle_ms
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._consumers: list[EventConsumer] = []
        self._tasks: list[asyncio.Task[None]] = []

    @classmethod
    def from_settings(cls, redis: aioredis.Redis, settings: Any) -> EventDispatcher:
        prefix = settings.EVENT_STREAM_PREFIX
        return cls(
            StreamEventBus(redis, prefix=prefix, maxlen=settings.EVENT_STREAM_MAXLEN),
            DeadLetterQueue(redis, prefix=prefix, maxlen=settings.EVENT_STREAM_MAXLEN),
            group=settings.EVENT_CONSUMER_GROUP,
            consumer_name=settings.EVENT_CONSUMER_NAME or None,
            consumers_per_topic=settings.EVENT_CONSUMERS_PER_TOPIC,
            reclaim_idle_ms=settings.EVENT_RECLAIM_IDLE_MS,
        )

    @property
    def bus(self) -> StreamEventBus:
        return self._bus

    @property
    def dlq(self) -> DeadLetterQueue:
        return self._dlq

    @property
    def group(self) -> str:
        return self._group

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        """Register ``handler`` for ``topic``."""
        self._handlers[topic].append(handler)
        logger.debug("event.subscribed", topic=topic, handler=getattr(handler, "__qualname__", repr(handler)))

    def topics(self) -> list[str]:
        return sorted(topic for topic, handlers in self._handlers.items() if handlers)

    @property
    def running(self) -> int:
        """Number of consumer loops still running."""
        return sum(1 for task in self._tasks if not task.done())

    async def publish(self, event: SyncEvent) -> str:
        """Append ``event`` to its topic stream.

        Returns:
            Redis message ID; the event is durable once this returns.
        """
        return await self._bus.publish(event)

    async def publish_finality(self, finality: FinalityEvent) -> str:
        """Publish ``finality`` on ``finality:{success|error}:{flow}``."""
        return await self._bus.publish(finality.to_event())

    async def dispatch(self, event: SyncEvent) -> int:
        """Run every handler of ``event.topic`` in order.

        Returns:
            Number of handlers run.
        """
        handlers = list(self._handlers.get(event.topic, []))
        if not handlers:
            logger.info("event.no_subscribers", topic=event.topic, trace_id=event.trace_id)
            return 0
        for handler in handlers:
            await handler(event)
        return len(handlers)

    def start(self) -> None:
        """Start the consumer loops for every subscribed topic."""
        for topic in self.topics():
            for index in range(self._consumers_per_topic):
                consumer = EventConsumer(
                    self._bus,
                    topic,
                    self._group,
                    f"{self._consumer_name}-{index}",
                    self._dlq,
                    reclaim_idle_ms=self._reclaim_idle_ms,
                )
                self._consumers.append(consumer)
                self._tasks.append(
                    asyncio.create_task(consumer.process_loop(self.dispatch), name=f"consumer:{topic}:{index}")
                )
        logger.info("event.consumers_started", topics=len(self.topics()), consumers=len(self._tasks))

    async def stop(self) -> None:
        """Stop the consumer loops.

        A handler interrupted here leaves its entry pending; it is claimed
        again once ``reclaim_idle_ms`` has passed.
        """
        for consumer in self._consumers:
            consumer.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._consumers.clear()
        self._tasks.clear()
        logger.info("event.consumers_stopped")
