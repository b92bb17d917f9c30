"""Wire encodings for the two live-update transports.

Both transports carry the same domain payloads; they differ in framing,
keepalive shape, and one legacy type name:

    stream  (server-sent events)  data: {"type": "leaderboard", ...}\\n\\n
                                  : heartbeat\\n\\n
    channel (WebSocket)           {"type": "leaderboard_update", ...}
                                  {"type": "heartbeat", "timestamp": "..."}
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any, Protocol

from tradesim.live.events import utc_timestamp


class TransportKind(StrEnum):
    CHANNEL = "channel"
    STREAM = "stream"


class Transport(Protocol):
    kind: TransportKind

    def encode(self, payload: dict[str, Any]) -> str: ...

    def keepalive(self) -> str: ...


class StreamTransport:
    """``text/event-stream`` framing: one ``data:`` record per message."""

    kind = TransportKind.STREAM

    # The push stream has always called leaderboard snapshots "leaderboard".
    TYPE_NAMES = {"leaderboard_update": "leaderboard"}

    def encode(self, payload: dict[str, Any]) -> str:
        kind = payload.get("type")
        if kind in self.TYPE_NAMES:
            payload = {**payload, "type": self.TYPE_NAMES[kind]}
        return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"

    def keepalive(self) -> str:
        return ": heartbeat\n\n"


class ChannelTransport:
    """One JSON text frame per message."""

    kind = TransportKind.CHANNEL

    def encode(self, payload: dict[str, Any]) -> str:
        return json.dumps(payload, ensure_ascii=False)

    def keepalive(self) -> str:
        return self.encode({"type": "heartbeat", "timestamp": utc_timestamp()})


TRANSPORTS: dict[TransportKind, Transport] = {
    TransportKind.CHANNEL: ChannelTransport(),
    TransportKind.STREAM: StreamTransport(),
}


def transport_for(kind: TransportKind | str) -> Transport:
    return TRANSPORTS[TransportKind(kind)]
