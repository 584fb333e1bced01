"""Internal event backbone for the reconciliation flows.

Exports:
    SyncEvent: Message carried on the topic streams.
    FinalityEvent: Terminal outcome of one flow run.
    EventDispatcher: Topic routing over Redis Streams consumer groups.
    StreamEventBus: Per-topic stream publish/read/ack.
    DeadLetterQueue: Entries that could not be processed, with replay.
    FlowLogTrail: Per-trace log trail kept in Redis.
"""

from __future__ import annotations

from src.app.events.schemas import (
    TARGET_FIELD_CHANGED,
    TARGET_TASK_CREATED,
    FinalityEvent,
    SyncEvent,
    entity_topic,
    finality_error_topic,
    finality_success_topic,
    new_trace_id,
)

__all__ = [
    "DeadLetterQueue",
    "EventDispatcher",
    "FinalityEvent",
    "FlowLogTrail",
    "StreamEventBus",
    "SyncEvent",
    "TARGET_FIELD_CHANGED",
    "TARGET_TASK_CREATED",
    "entity_topic",
    "finality_error_topic",
    "finality_success_topic",
    "new_trace_id",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the Redis-backed classes to keep redis off the import path of schemas."""
    if name in ("EventDispatcher", "StreamEventBus"):
        from src.app.events import bus

        return getattr(bus, name)
    if name == "DeadLetterQueue":
        from src.app.events.dlq import DeadLetterQueue

        return DeadLetterQueue
    if name == "FlowLogTrail":
        from src.app.events.trail import FlowLogTrail

        return FlowLogTrail
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
