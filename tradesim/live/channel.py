"""Bidirectional WebSocket channel for the OBS overlay.

Server → client: ``connected`` on accept, ``heartbeat`` keepalives,
``pong`` and ``subscribed`` replies, and every broadcast domain event.
Client → server: ``ping`` and ``subscribe`` (acknowledged; every viewer
receives every event regardless of subscriptions).

Each socket runs two tasks: a reader that answers client frames and a
writer that drains the connection queue. Whichever finishes first (peer
close, send error, hub teardown) ends the session, and the connection is
detached from the hub on the way out.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from tradesim.api.deps import get_hub
from tradesim.common.exceptions import MalformedFrameError
from tradesim.common.logging import get_logger
from tradesim.live.events import utc_timestamp
from tradesim.live.hub import BroadcastHub
from tradesim.live.registry import Connection
from tradesim.live.transports import TransportKind, transport_for

logger = get_logger("CHANNEL")

router = APIRouter()


def handle_client_frame(connection: Connection, raw: str) -> dict[str, Any] | None:
    """Interpret one inbound frame and return the reply, if any.

    Raises:
        MalformedFrameError: Frame is not a JSON object.
    """
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedFrameError("Frame is not valid JSON", context={"length": len(raw)}) from exc
    if not isinstance(message, dict):
        raise MalformedFrameError("Frame is not a JSON object")

    kind = message.get("type")
    if kind == "ping":
        return {"type": "pong", "timestamp": utc_timestamp()}
    if kind == "subscribe":
        channel = message.get("channel")
        if isinstance(channel, str):
            connection.subscriptions.add(channel)
        return {"type": "subscribed", "channel": channel, "timestamp": utc_timestamp()}

    logger.info(
        "Unknown client message type",
        extra={"data": {"connection_id": connection.id, "type": kind}},
    )
    return None


async def _read_frames(websocket: WebSocket, connection: Connection) -> None:
    transport = transport_for(connection.kind)
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        connection.touch()
        raw = message.get("text")
        try:
            if raw is None:
                raise MalformedFrameError("Frame is not text", context={"connection_id": connection.id})
            reply = handle_client_frame(connection, raw)
        except MalformedFrameError as exc:
            logger.warning(
                "Ignoring malformed client frame",
                extra={"data": {"connection_id": connection.id, "error": str(exc)}},
            )
            continue
        if reply is not None and not connection.offer(transport.encode(reply)):
            return


async def _write_frames(websocket: WebSocket, connection: Connection) -> None:
    while True:
        frame = await connection.next_frame()
        if frame is None:
            # Detached by the hub (stop, backpressure, heartbeat reap).
            with contextlib.suppress(Exception):
                await websocket.close(code=1001)
            return
        try:
            await websocket.send_text(frame)
        except Exception as exc:
            logger.warning(
                "WebSocket send failed",
                extra={"data": {"connection_id": connection.id, "error": str(exc)}},
            )
            return
        connection.touch()


@router.websocket("/api/obs/websocket")
async def channel_endpoint(websocket: WebSocket, hub: BroadcastHub = Depends(get_hub)) -> None:
    """Attach a viewer to the live hub over a WebSocket."""
    await websocket.accept()
    connection = hub.open_connection(TransportKind.CHANNEL)
    transport = transport_for(connection.kind)

    try:
        await websocket.send_text(
            transport.encode(
                {
                    "type": "connected",
                    "message": "Connected to OBS WebSocket server",
                    "timestamp": utc_timestamp(),
                }
            )
        )
    except (WebSocketDisconnect, RuntimeError):
        logger.info("WebSocket closed before attach")
        return

    await hub.attach(connection)
    reader = asyncio.create_task(_read_frames(websocket, connection), name=f"ws-read-{connection.id[:8]}")
    writer = asyncio.create_task(_write_frames(websocket, connection), name=f"ws-write-{connection.id[:8]}")
    try:
        await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (reader, writer):
            task.cancel()
        try:
            results = await asyncio.gather(reader, writer, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(
                        "WebSocket session error",
                        extra={"data": {"connection_id": connection.id, "error": str(result)}},
                    )
        finally:
            await hub.detach(connection.id)
        logger.info("WebSocket client disconnected", extra={"data": {"connection_id": connection.id}})
