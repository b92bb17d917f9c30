"""Redis pub/sub subscriber that feeds producer events into the hub.

Subscribes to the Redis "tradesim:live" channel, decodes each message
into a domain event, and publishes it through the BroadcastHub. Invalid
messages are logged and skipped. Redis disconnects are retried with
exponential backoff.

Started as an asyncio.Task during the FastAPI lifespan when
``event_bus_enabled`` is set. Each process has its own hub and
connections; the bus only carries events in from producers.
"""

from __future__ import annotations

import asyncio
import json

import redis.asyncio as aioredis

from tradesim.common.config import get_settings
from tradesim.common.exceptions import InvalidEventError
from tradesim.common.logging import get_logger
from tradesim.common.metrics import LIVE_BUS_EVENTS_RECEIVED_TOTAL
from tradesim.live.bus import LIVE_CHANNEL
from tradesim.live.events import parse_event
from tradesim.live.hub import BroadcastHub

logger = get_logger("BUS")

MAX_BACKOFF_SECONDS = 30


async def handle_bus_message(hub: BroadcastHub, data: str | bytes) -> bool:
    """Decode one pub/sub payload and publish it. Returns False if skipped."""
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        event = parse_event(json.loads(data))
    except (UnicodeDecodeError, json.JSONDecodeError, InvalidEventError) as exc:
        logger.warning("Skipping invalid bus message", extra={"data": {"error": str(exc)}})
        return False

    LIVE_BUS_EVENTS_RECEIVED_TOTAL.labels(event_type=event.event_type.value).inc()
    await hub.publish(event)
    return True


async def redis_subscriber(hub: BroadcastHub) -> None:
    """Subscribe to Redis tradesim:live and forward events to the hub.

    Runs as a long-lived background task. On Redis disconnect, retries
    with exponential backoff up to MAX_BACKOFF_SECONDS.
    """
    attempt = 0

    while True:
        try:
            settings = get_settings()
            r = aioredis.from_url(settings.redis_url)
            pubsub = r.pubsub()
            await pubsub.subscribe(LIVE_CHANNEL)

            logger.info(
                "Redis subscriber connected",
                extra={"data": {"channel": LIVE_CHANNEL}},
            )
            attempt = 0

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                await handle_bus_message(hub, message["data"])

        except asyncio.CancelledError:
            logger.info("Redis subscriber shutting down")
            break

        except Exception as exc:
            wait = min(2**attempt, MAX_BACKOFF_SECONDS)
            logger.warning(
                "Redis subscriber error, reconnecting",
                extra={
                    "data": {
                        "error": str(exc),
                        "attempt": attempt + 1,
                        "wait_seconds": wait,
                    }
                },
            )
            attempt += 1
            await asyncio.sleep(wait)
