"""Server-sent events push stream for the OBS overlay.

GET /api/obs/events returns a never-ending ``text/event-stream`` response.
The first record is a ``system`` greeting; after that the body is whatever
the hub queues for this viewer, including ``: heartbeat`` comments.

The stream ends when the client aborts (request disconnect or generator
cancellation) or the hub closes the connection. All three paths leave
through the generator's ``finally`` and detach from the hub.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from tradesim.api.deps import get_hub
from tradesim.common.logging import get_logger
from tradesim.live.events import SystemEvent, utc_timestamp
from tradesim.live.hub import BroadcastHub
from tradesim.live.registry import Connection
from tradesim.live.transports import TransportKind, transport_for

logger = get_logger("STREAM")

router = APIRouter()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Cache-Control",
}

# How often the generator checks for a client abort while idle.
DISCONNECT_POLL_SECONDS = 1.0


async def stream_frames(
    request: Request,
    hub: BroadcastHub,
    connection: Connection,
    poll_interval: float = DISCONNECT_POLL_SECONDS,
) -> AsyncIterator[str]:
    """Yield SSE records for one viewer until it goes away."""
    transport = transport_for(connection.kind)
    await hub.attach(connection)
    try:
        greeting = SystemEvent(message="Connected to live notification stream").payload()
        greeting["timestamp"] = utc_timestamp()
        yield transport.encode(greeting)

        while True:
            if await request.is_disconnected():
                logger.info("Push stream client aborted", extra={"data": {"connection_id": connection.id}})
                break
            try:
                frame = await connection.next_frame(timeout=poll_interval)
            except TimeoutError:
                continue
            if frame is None:
                break
            yield frame
            connection.touch()
    finally:
        await hub.detach(connection.id)


@router.get("/api/obs/events")
async def event_stream(request: Request, hub: BroadcastHub = Depends(get_hub)) -> StreamingResponse:
    """Open a push-stream subscription to the live hub."""
    connection = hub.open_connection(TransportKind.STREAM)
    return StreamingResponse(
        stream_frames(request, hub, connection),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
