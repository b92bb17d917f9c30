"""Broadcast hub: fans domain events out to every live viewer.

One publish() call reaches both transports. The event is stamped with the
dispatch time, encoded once per transport kind, and offered to each
connection's queue. Offers never block, so a dead or slow viewer cannot
delay the others; a viewer whose offer fails is unregistered and logged,
and the producer never sees the failure.

A single producer's events reach any one connection in publish order
(per-connection FIFO). Nothing orders events across connections or
across the two transports.

The hub is constructed in the FastAPI lifespan and stored on
``app.state.hub``; routes get it through ``tradesim.api.deps.get_hub``.

Usage:
    hub = BroadcastHub(settings=get_settings())
    await hub.start()
    await hub.ring_bell(BellAction.START_DAY)
    await hub.stop()
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from tradesim.common.config import Settings, get_settings
from tradesim.common.logging import get_logger
from tradesim.common.metrics import (
    LIVE_EVENTS_PUBLISHED_TOTAL,
    LIVE_MESSAGES_SENT_TOTAL,
    LIVE_SEND_FAILURES_TOTAL,
)
from tradesim.live.events import (
    BellAction,
    BellEvent,
    EventType,
    LeaderboardEntry,
    LeaderboardEvent,
    LiveEvent,
    SystemEvent,
    TradeEvent,
    TradeSide,
    utc_timestamp,
)
from tradesim.live.heartbeat import HeartbeatScheduler
from tradesim.live.registry import Connection, ConnectionRegistry
from tradesim.live.transports import TransportKind, transport_for

logger = get_logger("HUB")


class BroadcastHub:
    """Publishes events to every registered connection.

    Args:
        registry: Connection registry to fan out over (a fresh one if omitted).
        settings: Source of queue size, heartbeat interval and replay flag.
    """

    def __init__(
        self,
        registry: ConnectionRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.registry = registry or ConnectionRegistry()
        self.heartbeat = HeartbeatScheduler(self.registry, interval=settings.heartbeat_interval_seconds)
        self.queue_size = settings.live_send_queue_size
        self.replay_on_connect = settings.live_replay_on_connect
        # Last stamped bell / leaderboard payloads, replayed to new viewers
        # only when replay_on_connect is set.
        self._latest: dict[EventType, dict[str, Any]] = {}

    # ─── Lifecycle ───

    async def start(self) -> None:
        await self.heartbeat.start()
        logger.info("Broadcast hub started")

    async def stop(self) -> None:
        await self.heartbeat.stop()
        removed = await self.registry.clear()
        logger.info("Broadcast hub stopped", extra={"data": {"connections_closed": removed}})

    # ─── Connections ───

    def open_connection(self, kind: TransportKind | str) -> Connection:
        """Create an unregistered connection with this hub's queue size."""
        return Connection(kind, queue_size=self.queue_size)

    async def attach(self, connection: Connection) -> str:
        """Register a connection so it receives subsequent events."""
        prime = self._replay_latest if self.replay_on_connect else None
        return await self.registry.register(connection, prime=prime)

    async def detach(self, handle: str) -> None:
        """Unregister a connection. Safe to call from every teardown path."""
        await self.registry.unregister(handle)

    def _replay_latest(self, connection: Connection) -> None:
        transport = transport_for(connection.kind)
        for event_type in (EventType.BELL, EventType.LEADERBOARD):
            payload = self._latest.get(event_type)
            if payload is not None:
                connection.offer(transport.encode(payload))

    # ─── Publishing ───

    async def publish(self, event: LiveEvent) -> int:
        """Deliver ``event`` to every registered connection.

        Returns:
            Number of connections the event was queued for.
        """
        payload = event.payload()
        payload["timestamp"] = utc_timestamp()
        event_type = payload["type"]

        frames = {kind: transport_for(kind).encode(payload) for kind in TransportKind}
        failed: list[Connection] = []
        delivered = 0

        def deliver(conn: Connection) -> None:
            nonlocal delivered
            if conn.offer(frames[conn.kind]):
                delivered += 1
                LIVE_MESSAGES_SENT_TOTAL.labels(
                    transport=conn.kind.value, event_type=event_type
                ).inc()
            else:
                failed.append(conn)

        await self.registry.for_each(deliver)

        for conn in failed:
            LIVE_SEND_FAILURES_TOTAL.labels(transport=conn.kind.value).inc()
            logger.warning(
                "Dropping unreachable connection",
                extra={
                    "data": {
                        "connection_id": conn.id,
                        "transport": conn.kind.value,
                        "event_type": event_type,
                    }
                },
            )
            await self.registry.unregister(conn.id)

        if event.event_type in (EventType.BELL, EventType.LEADERBOARD):
            self._latest[event.event_type] = payload

        LIVE_EVENTS_PUBLISHED_TOTAL.labels(event_type=event_type).inc()
        logger.info(
            "Event published",
            extra={
                "data": {
                    "event_type": event_type,
                    "deliveries": delivered,
                    "failures": len(failed),
                }
            },
        )
        return delivered

    async def ring_bell(self, action: BellAction | str) -> int:
        return await self.publish(BellEvent(action=action))

    async def announce_trade(
        self,
        team: str,
        instrument: str,
        side: TradeSide | str,
        quantity: int,
    ) -> int:
        return await self.publish(
            TradeEvent(team=team, instrument=instrument, side=side, quantity=quantity)
        )

    async def update_leaderboard(self, entries: Iterable[LeaderboardEntry | dict]) -> int:
        return await self.publish(LeaderboardEvent(entries=tuple(entries)))

    async def announce(self, message: str) -> int:
        return await self.publish(SystemEvent(message=message))

    # ─── Introspection ───

    def stats(self) -> dict[str, Any]:
        return {
            "connections": {
                TransportKind.CHANNEL.value: self.registry.count(TransportKind.CHANNEL),
                TransportKind.STREAM.value: self.registry.count(TransportKind.STREAM),
                "total": self.registry.count(),
            },
            "heartbeat_running": self.heartbeat.running,
            "replay_on_connect": self.replay_on_connect,
        }
