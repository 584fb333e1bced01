#!/usr/bin/env python3
"""Inspect and replay dead-lettered events.

Usage:
    uv run python scripts/replay_dead_letters.py work_order:updated
    uv run python scripts/replay_dead_letters.py work_order:updated --replay 1733047200000-0
    uv run python scripts/replay_dead_letters.py target_task:created --replay-all

Lists the dead letter queue of one topic, or moves entries back onto the
topic stream with a fresh retry budget.

Reads REDIS_URL and EVENT_STREAM_* from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

logger = structlog.get_logger(__name__)


async def main_async(args: argparse.Namespace) -> None:
    from src.app.config import get_settings
    from src.app.core.redis import close_redis, get_redis_pool
    from src.app.events.dlq import DeadLetterQueue

    settings = get_settings()
    dlq = DeadLetterQueue(
        get_redis_pool(),
        prefix=settings.EVENT_STREAM_PREFIX,
        maxlen=settings.EVENT_STREAM_MAXLEN,
    )

    try:
        messages = await dlq.list_dlq_messages(args.topic, count=args.count)
        if args.replay:
            targets = [args.replay]
        elif args.replay_all:
            targets = [message_id for message_id, _ in messages]
        else:
            targets = []

        replayed = []
        for message_id in targets:
            new_id = await dlq.replay_message(args.topic, message_id)
            replayed.append((message_id, new_id))
            logger.info("Dead letter replayed", topic=args.topic, dlq_message_id=message_id, new_message_id=new_id)
    finally:
        await close_redis()

    if replayed:
        print(f"\nReplayed {len(replayed)} entr{'y' if len(replayed) == 1 else 'ies'} onto {args.topic}:")
        for message_id, new_id in replayed:
            print(f"  {message_id} -> {new_id}")
        return

    print(f"\nDead letters for {args.topic}: {len(messages)}")
    for message_id, data in messages:
        print(
            f"  {message_id}  trace={data.get('trace_id', '?')}  "
            f"retries={data.get('_dlq_retry_count', '0')}  error={data.get('_dlq_error', '')}"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="List or replay dead-lettered events")
    parser.add_argument("topic", help="Topic whose dead letter queue to read, e.g. work_order:updated")
    parser.add_argument("--count", type=int, default=50, help="Maximum entries to list")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--replay", metavar="MESSAGE_ID", help="Replay one dead letter")
    group.add_argument("--replay-all", action="store_true", help="Replay every listed dead letter")
    args = parser.parse_args()

    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
