"""Live viewer connections and the registry that tracks them.

A Connection never touches its socket directly. Producers offer frames to
its bounded outbound queue; the transport endpoint that owns the socket
drains the queue and writes. Offering never blocks, so one slow viewer
cannot hold up a broadcast to the others.

The registry is the single owner of connection lifecycles. Every teardown
path (peer close, send failure, stream abort, heartbeat reap, hub stop)
ends in ConnectionRegistry.unregister(), which closes the connection so
its pump exits.

Usage:
    registry = ConnectionRegistry()
    conn = Connection(TransportKind.CHANNEL)
    handle = await registry.register(conn)
    await registry.for_each(lambda c: c.offer('{"type": "system"}'))
    await registry.unregister(handle)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import uuid4

from tradesim.common.logging import get_logger
from tradesim.common.metrics import LIVE_CONNECTIONS_ACTIVE
from tradesim.live.transports import TransportKind

logger = get_logger("REGISTRY")


class Connection:
    """One attached viewer session on either transport.

    Args:
        kind: Transport the viewer is attached through.
        queue_size: Frames that may wait for the socket before the
            viewer counts as backed up and offers start failing.
    """

    def __init__(self, kind: TransportKind | str, queue_size: int = 100) -> None:
        self.id = uuid4().hex
        self.kind = TransportKind(kind)
        self.last_seen = datetime.now(UTC)
        self.subscriptions: set[str] = set()
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of frames waiting to be written."""
        return self._outbox.qsize()

    def offer(self, frame: str) -> bool:
        """Queue a frame for delivery. Returns False if closed or backed up."""
        if self._closed:
            return False
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    async def next_frame(self, timeout: float | None = None) -> str | None:
        """Wait for the next queued frame.

        Returns None once the connection is closed. Raises TimeoutError
        when ``timeout`` elapses with nothing queued.
        """
        if self._closed:
            return None
        frame = await asyncio.wait_for(self._outbox.get(), timeout)
        if frame is None or self._closed:
            return None
        return frame

    def drain(self) -> list[str]:
        """Remove and return every queued frame without waiting."""
        frames = []
        while not self._outbox.empty():
            frame = self._outbox.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    def touch(self) -> None:
        """Record liveness (a successful write or an inbound frame)."""
        self.last_seen = datetime.now(UTC)

    def close(self) -> None:
        """Mark closed and wake any pump blocked in next_frame()."""
        if self._closed:
            return
        self._closed = True
        # Discard undelivered frames so the wake-up sentinel always fits.
        self.drain()
        self._outbox.put_nowait(None)

    def __repr__(self) -> str:
        return f"Connection(id={self.id[:8]}, kind={self.kind.value}, closed={self._closed})"


class ConnectionRegistry:
    """Concurrency-safe set of attached connections keyed by handle.

    Mutations and enumeration snapshots are taken under one asyncio.Lock.
    register/unregister are idempotent per handle.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def register(
        self,
        connection: Connection,
        prime: Callable[[Connection], None] | None = None,
    ) -> str:
        """Add a connection and return its handle.

        Args:
            connection: The connection to track.
            prime: Optional hook run under the registry lock right after
                insertion, before any concurrent broadcast can see the
                connection. Used to queue catch-up frames first.
        """
        async with self._lock:
            if connection.id not in self._connections:
                self._connections[connection.id] = connection
                LIVE_CONNECTIONS_ACTIVE.labels(transport=connection.kind.value).inc()
                if prime is not None:
                    prime(connection)
        logger.info(
            "Connection registered",
            extra={
                "data": {
                    "connection_id": connection.id,
                    "transport": connection.kind.value,
                    "active_connections": len(self._connections),
                }
            },
        )
        return connection.id

    async def unregister(self, handle: str) -> Connection | None:
        """Remove and close a connection. Unknown handles are ignored."""
        async with self._lock:
            connection = self._connections.pop(handle, None)
            if connection is None:
                return None
            connection.close()
            LIVE_CONNECTIONS_ACTIVE.labels(transport=connection.kind.value).dec()
        logger.info(
            "Connection unregistered",
            extra={
                "data": {
                    "connection_id": handle,
                    "transport": connection.kind.value,
                    "active_connections": len(self._connections),
                }
            },
        )
        return connection

    async def for_each(
        self,
        visit: Callable[[Connection], None],
        kind: TransportKind | None = None,
    ) -> int:
        """Call ``visit`` on every registered connection, optionally of one kind.

        Enumerates a snapshot taken at call time. A member unregistered
        before its turn is skipped; a member registered after the snapshot
        is picked up by the next call. ``visit`` must not block.

        Returns:
            Number of connections visited.
        """
        async with self._lock:
            snapshot = [
                conn for conn in self._connections.values() if kind is None or conn.kind is kind
            ]

        visited = 0
        for conn in snapshot:
            if conn.closed or conn.id not in self._connections:
                continue
            visit(conn)
            visited += 1
        return visited

    def get(self, handle: str) -> Connection | None:
        return self._connections.get(handle)

    def snapshot(self, kind: TransportKind | None = None) -> list[Connection]:
        return [c for c in self._connections.values() if kind is None or c.kind is kind]

    def count(self, kind: TransportKind | None = None) -> int:
        if kind is None:
            return len(self._connections)
        return sum(1 for c in self._connections.values() if c.kind is kind)

    async def clear(self) -> int:
        """Unregister every connection. Returns how many were removed."""
        handles = list(self._connections)
        for handle in handles:
            await self.unregister(handle)
        return len(handles)
