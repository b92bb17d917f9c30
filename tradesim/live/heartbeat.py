"""Keepalive scheduler for live connections.

Every interval, each registered connection is offered its transport's
no-op frame (a ``: heartbeat`` comment on the push stream, a
``heartbeat`` JSON message on the channel) so idle proxies keep the
socket open. A connection that cannot take the frame, because it is
already closed or its queue is backed up, is unregistered on the spot.

Liveness is judged on the send side only: a peer that never answers is
kept as long as frames can be queued and written to it.

Started and stopped by BroadcastHub; one task serves every connection,
so unregistering a connection is all it takes to stop its heartbeats.
"""

from __future__ import annotations

import asyncio
import contextlib

from tradesim.common.logging import get_logger
from tradesim.common.metrics import (
    LIVE_CONNECTIONS_REAPED_TOTAL,
    LIVE_HEARTBEATS_SENT_TOTAL,
)
from tradesim.live.registry import Connection, ConnectionRegistry
from tradesim.live.transports import transport_for

logger = get_logger("HEARTBEAT")

DEFAULT_INTERVAL_SECONDS = 30.0


class HeartbeatScheduler:
    """Periodically pings every connection and reaps the ones that fail.

    Args:
        registry: Registry to sweep.
        interval: Seconds between sweeps.
    """

    def __init__(self, registry: ConnectionRegistry, interval: float = DEFAULT_INTERVAL_SECONDS) -> None:
        self.registry = registry
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="live-heartbeat")
        logger.info("Heartbeat scheduler started", extra={"data": {"interval_seconds": self.interval}})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Heartbeat scheduler stopped")

    async def sweep(self) -> int:
        """Run one keepalive pass. Returns the number of connections reaped."""
        dead: list[Connection] = []

        def ping(conn: Connection) -> None:
            if conn.offer(transport_for(conn.kind).keepalive()):
                LIVE_HEARTBEATS_SENT_TOTAL.labels(transport=conn.kind.value).inc()
            else:
                dead.append(conn)

        await self.registry.for_each(ping)

        # Closed connections are skipped by for_each but may still be registered.
        dead.extend(c for c in self.registry.snapshot() if c.closed and c not in dead)

        for conn in dead:
            logger.warning(
                "Reaped connection that failed heartbeat",
                extra={
                    "data": {
                        "connection_id": conn.id,
                        "transport": conn.kind.value,
                        "pending_frames": conn.pending,
                    }
                },
            )
            await self.registry.unregister(conn.id)
            LIVE_CONNECTIONS_REAPED_TOTAL.inc()
        return len(dead)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as exc:
                logger.error("Heartbeat sweep failed", extra={"data": {"error": str(exc)}})
