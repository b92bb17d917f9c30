"""Tests for the server-sent events push stream.

The response body never ends on its own, so these tests drive the
stream_frames generator directly with a mocked Request whose
is_disconnected() is scripted per test.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradesim.live.hub import BroadcastHub
from tradesim.live.stream import STREAM_HEADERS, event_stream, stream_frames
from tradesim.live.transports import TransportKind


def _mock_request(disconnected: list[bool] | None = None) -> MagicMock:
    request = MagicMock()
    if disconnected is None:
        request.is_disconnected = AsyncMock(return_value=False)
    else:
        request.is_disconnected = AsyncMock(side_effect=disconnected)
    return request


def _decode(frame: str) -> dict:
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: ") : -2])


class TestStreamFrames:
    @pytest.mark.asyncio
    async def test_greeting_then_broadcast(self, hub: BroadcastHub):
        conn = hub.open_connection(TransportKind.STREAM)
        frames = stream_frames(_mock_request(), hub, conn, poll_interval=0.01)

        greeting = _decode(await frames.__anext__())
        assert greeting["type"] == "system"
        assert greeting["message"] == "Connected to live notification stream"
        assert greeting["timestamp"].endswith("Z")
        assert hub.registry.count(TransportKind.STREAM) == 1

        await hub.ring_bell("start_day")
        bell = _decode(await frames.__anext__())
        assert bell["type"] == "bell"
        assert bell["action"] == "start_day"

        await frames.aclose()
        assert hub.registry.count() == 0

    @pytest.mark.asyncio
    async def test_leaderboard_renamed_on_stream(self, hub, sample_leaderboard):
        conn = hub.open_connection(TransportKind.STREAM)
        frames = stream_frames(_mock_request(), hub, conn, poll_interval=0.01)
        await frames.__anext__()

        await hub.update_leaderboard(sample_leaderboard)
        message = _decode(await frames.__anext__())

        assert message["type"] == "leaderboard"
        assert len(message["leaderboard"]) == 3
        await frames.aclose()

    @pytest.mark.asyncio
    async def test_heartbeat_comment_passed_through(self, hub):
        conn = hub.open_connection(TransportKind.STREAM)
        frames = stream_frames(_mock_request(), hub, conn, poll_interval=0.01)
        await frames.__anext__()

        await hub.heartbeat.sweep()

        assert await frames.__anext__() == ": heartbeat\n\n"
        await frames.aclose()

    @pytest.mark.asyncio
    async def test_client_abort_detaches(self, hub):
        conn = hub.open_connection(TransportKind.STREAM)
        frames = stream_frames(_mock_request([False, False, True]), hub, conn, poll_interval=0.01)
        await frames.__anext__()

        with pytest.raises(StopAsyncIteration):
            await frames.__anext__()

        assert hub.registry.count() == 0
        assert conn.closed

    @pytest.mark.asyncio
    async def test_hub_detach_ends_stream(self, hub):
        conn = hub.open_connection(TransportKind.STREAM)
        frames = stream_frames(_mock_request(), hub, conn, poll_interval=0.01)
        await frames.__anext__()

        await hub.detach(conn.id)

        with pytest.raises(StopAsyncIteration):
            await frames.__anext__()

    @pytest.mark.asyncio
    async def test_not_attached_until_iterated(self, hub):
        conn = hub.open_connection(TransportKind.STREAM)
        frames = stream_frames(_mock_request(), hub, conn)
        assert hub.registry.count() == 0
        await frames.aclose()
        assert hub.registry.count() == 0


class TestEventStreamEndpoint:
    @pytest.mark.asyncio
    async def test_response_is_event_stream(self, hub):
        response = await event_stream(_mock_request(), hub)
        assert response.media_type == "text/event-stream"
        for name, value in STREAM_HEADERS.items():
            assert response.headers[name] == value
        await response.body_iterator.aclose()
        assert hub.registry.count() == 0
