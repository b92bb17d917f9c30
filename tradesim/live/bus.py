"""Producer-side event bus on Redis pub/sub.

Lets code outside the web process (trade execution, leaderboard
recompute jobs) hand events to the live hub. Payloads are published
without a timestamp; the hub stamps them when it dispatches.

Usage from sync code (workers, scripts):
    from tradesim.live.bus import publish_event_sync
    from tradesim.live.events import TradeEvent

    publish_event_sync(TradeEvent(team="Team Alpha", instrument="TECH", side="buy", quantity=50))

Usage from async code:
    from tradesim.live.bus import publish_event

    await publish_event(SystemEvent(message="Market update: all prices refreshed"))
"""

from __future__ import annotations

import json

import redis.asyncio as aioredis
from asgiref.sync import async_to_sync
from redis.exceptions import RedisError

from tradesim.common.config import get_settings
from tradesim.common.exceptions import PublishError
from tradesim.common.logging import get_logger
from tradesim.live.events import LiveEvent

logger = get_logger("BUS")

# Redis channel name for live overlay events
LIVE_CHANNEL = "tradesim:live"


async def publish_event(event: LiveEvent) -> None:
    """Publish an event to the Redis tradesim:live channel.

    Raises:
        PublishError: Redis refused or dropped the publish.
    """
    settings = get_settings()
    r = aioredis.from_url(settings.redis_url)
    try:
        await r.publish(LIVE_CHANNEL, json.dumps(event.payload(), ensure_ascii=False))
    except RedisError as exc:
        raise PublishError(
            "Could not publish live event",
            context={"event_type": event.event_type.value, "channel": LIVE_CHANNEL},
        ) from exc
    finally:
        await r.aclose()


def publish_event_sync(event: LiveEvent) -> None:
    """Synchronous wrapper for publish_event.

    Catches all exceptions so a Redis outage never breaks the trade or
    leaderboard job that produced the event. Logs a warning instead.
    """
    try:
        async_to_sync(publish_event)(event)
    except Exception as exc:
        logger.warning(
            "Failed to publish live event",
            extra={
                "data": {
                    "event_type": event.event_type.value,
                    "error": str(exc),
                }
            },
        )
