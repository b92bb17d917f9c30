"""OBS overlay client: connection state machines and merged view state.

The overlay follows both live transports at once:

    ChannelClient   WebSocket, re-driven by a fixed back-off after any close
    StreamClient    push stream, retried the way a browser EventSource does

Each client runs its own state machine

    disconnected ──► connecting ──► connected
         ▲                              │
         └──── wait backoff ◄───────────┘ (close / error)

and feeds every decoded message into one shared OverlayState. Only the
stream's messages are written to the notification log, so a broadcast
seen on both transports is logged once. The two connection states are
only combined for display (``is_live`` / ``fully_connected``).

OverlayState.apply() is synchronous and all callbacks run on the event
loop, so a render that reads the state never sees half an update.

Usage:
    overlay = OverlayClient("http://localhost:8000")
    task = asyncio.create_task(overlay.run())
    ...
    overlay.state.day_active, overlay.state.leaderboard_rows()
    await overlay.send_bell("start_day")   # state changes only when the bell comes back
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import StrEnum
from typing import Any, ClassVar

import httpx
import websockets
from pydantic import ValidationError

from tradesim.common.config import Settings, get_settings
from tradesim.common.logging import get_logger
from tradesim.live.events import BellAction, LeaderboardEntry

logger = get_logger("OVERLAY")

NOTIFICATION_LOG_SIZE = 10
RECONNECT_DELAY_SECONDS = 3.0

# Message types that land in the notification log.
NOTIFICATION_TYPES = frozenset(
    {"bell", "trade", "trade_notification", "leaderboard", "leaderboard_update", "system"}
)
LEADERBOARD_TYPES = frozenset({"leaderboard", "leaderboard_update"})


# ─── Display Formatting ───


def _to_decimal(amount: Any) -> Decimal:
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        return Decimal(0)
    return value if value.is_finite() else Decimal(0)


def format_currency(amount: Any) -> str:
    """Whole-dollar USD: 125000.4 -> "$125,000", -50 -> "-$50"."""
    value = int(_to_decimal(amount).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,}"


def format_gains(amount: Any) -> str:
    """Signed whole-dollar change: 1200 -> "+$1200", -35.6 -> "-$36"."""
    value = int(_to_decimal(amount).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if value >= 0:
        return f"+${value}"
    return f"-${abs(value)}"


# ─── View State ───


@dataclass(frozen=True)
class Notification:
    type: str
    message: str
    received_at: datetime
    origin_timestamp: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class OverlayState:
    """What the overlay shows: recent notifications, day state, leaderboard.

    The notification log is newest-first and holds at most ``log_size``
    entries; the oldest entry is evicted when a new one arrives.
    """

    def __init__(self, log_size: int = NOTIFICATION_LOG_SIZE) -> None:
        self.notifications: deque[Notification] = deque(maxlen=log_size)
        self.day_active = False
        self.leaderboard: list[LeaderboardEntry] = []

    def apply(
        self,
        message: dict[str, Any],
        received_at: datetime | None = None,
        record: bool = True,
    ) -> bool:
        """Merge one decoded message. Returns False for ignored types.

        With ``record=False`` the message still drives day state and the
        leaderboard but is not added to the notification log.
        """
        kind = message.get("type")
        if kind not in NOTIFICATION_TYPES:
            return False

        if record:
            origin = message.get("timestamp")
            self.notifications.appendleft(
                Notification(
                    type=kind,
                    message=str(message.get("message", "")),
                    received_at=received_at or datetime.now(UTC),
                    origin_timestamp=origin if isinstance(origin, str) else None,
                    data={k: v for k, v in message.items() if k not in ("type", "message", "timestamp")},
                )
            )

        if kind == "bell":
            action = message.get("action")
            if action == BellAction.START_DAY:
                self.day_active = True
            elif action == BellAction.END_DAY:
                self.day_active = False
        elif kind in LEADERBOARD_TYPES:
            self.leaderboard = self._parse_leaderboard(message.get("leaderboard"))
        return True

    @staticmethod
    def _parse_leaderboard(raw: Any) -> list[LeaderboardEntry]:
        entries = []
        for item in raw if isinstance(raw, list) else []:
            try:
                entries.append(LeaderboardEntry.model_validate(item))
            except ValidationError:
                logger.warning("Skipping invalid leaderboard entry", extra={"data": {"entry": item}})
        return entries

    def leaderboard_rows(self) -> list[str]:
        return [
            f"#{e.rank} {e.team_name}  {format_currency(e.portfolio_value)}  "
            f"{format_gains(e.gains)}  {e.trades} trades"
            for e in self.leaderboard
        ]


# ─── Connection State Machines ───


class ConnectionStatus(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class FixedBackoff:
    """Reconnect policy: the same delay before every attempt."""

    delay: float = RECONNECT_DELAY_SECONDS

    def next_delay(self, attempt: int) -> float:
        return self.delay


class TransportClient(ABC):
    """Shared reconnect loop; subclasses implement one session in _session().

    Each session runs as its own task so stop() can cancel a session that
    is blocked waiting on an idle connection.
    """

    transport: ClassVar[str] = ""

    def __init__(
        self,
        url: str,
        on_message: Callable[[dict[str, Any]], Any],
        backoff: FixedBackoff | None = None,
    ) -> None:
        self.url = url
        self.backoff = backoff or FixedBackoff()
        self.status = ConnectionStatus.DISCONNECTED
        self._on_message = on_message
        self._running = False
        self._attempt = 0
        self._session_task: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self.status:
            return
        logger.info(
            f"{self.transport} {status.value}",
            extra={"data": {"url": self.url, "previous": self.status.value}},
        )
        self.status = status
        if status is ConnectionStatus.CONNECTED:
            self._attempt = 0

    def _deliver(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Unparseable {self.transport} message", extra={"data": {"url": self.url}})
            return
        if isinstance(message, dict):
            self._on_message(message)

    @abstractmethod
    async def _session(self) -> None:
        """Open one connection and consume it until it closes."""

    async def run(self) -> None:
        """Connect, consume, and reconnect until stop() is called."""
        self._running = True
        try:
            while self._running:
                self._set_status(ConnectionStatus.CONNECTING)
                self._session_task = asyncio.ensure_future(self._session())
                try:
                    await self._session_task
                except asyncio.CancelledError:
                    # Only a cancel requested by stop() ends run() quietly.
                    if self._running or asyncio.current_task().cancelling():
                        raise
                except Exception as exc:
                    logger.warning(
                        f"{self.transport} connection error",
                        extra={"data": {"url": self.url, "error": str(exc)}},
                    )
                self._set_status(ConnectionStatus.DISCONNECTED)
                if not self._running:
                    break
                delay = self.backoff.next_delay(self._attempt)
                self._attempt += 1
                logger.info(
                    f"Reconnecting {self.transport}",
                    extra={"data": {"attempt": self._attempt, "wait_seconds": delay}},
                )
                await asyncio.sleep(delay)
        finally:
            self._session_task = None
            self._set_status(ConnectionStatus.DISCONNECTED)

    def stop(self) -> None:
        self._running = False
        task = self._session_task
        # From inside a session (a message callback) the read loop exits on its own.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


class ChannelClient(TransportClient):
    """WebSocket side of the overlay, with fixed-delay reconnect."""

    transport = "channel"

    def __init__(
        self,
        url: str,
        on_message: Callable[[dict[str, Any]], Any],
        backoff: FixedBackoff | None = None,
    ) -> None:
        super().__init__(url, on_message, backoff)
        self._ws = None

    async def _session(self) -> None:
        async with websockets.connect(self.url) as ws:
            self._ws = ws
            self._set_status(ConnectionStatus.CONNECTED)
            try:
                async for raw in ws:
                    self._deliver(raw)
                    if not self._running:
                        break
            finally:
                self._ws = None

    async def send(self, message: dict[str, Any]) -> bool:
        """Send a client frame. Returns False while disconnected."""
        if self._ws is None:
            return False
        await self._ws.send(json.dumps(message))
        return True

    async def ping(self) -> bool:
        return await self.send({"type": "ping"})

    async def subscribe(self, channel: str) -> bool:
        return await self.send({"type": "subscribe", "channel": channel})


class StreamClient(TransportClient):
    """Push-stream side of the overlay.

    Parses ``text/event-stream`` records (``data:`` lines joined until a
    blank line; ``:`` comments skipped) and retries like EventSource,
    honouring a server-sent ``retry:`` delay.
    """

    transport = "stream"

    def __init__(
        self,
        url: str,
        on_message: Callable[[dict[str, Any]], Any],
        backoff: FixedBackoff | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(url, on_message, backoff)
        self._client = client

    async def _session(self) -> None:
        client = self._client or httpx.AsyncClient(timeout=None)
        try:
            async with client.stream("GET", self.url, headers={"Accept": "text/event-stream"}) as response:
                response.raise_for_status()
                self._set_status(ConnectionStatus.CONNECTED)
                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if not self._running:
                        break
                    if not line:
                        if data_lines:
                            self._deliver("\n".join(data_lines))
                            data_lines = []
                        continue
                    if line.startswith(":"):
                        continue
                    name, _, value = line.partition(":")
                    if value.startswith(" "):
                        value = value[1:]
                    if name == "data":
                        data_lines.append(value)
                    elif name == "retry" and value.isdigit():
                        self.backoff = FixedBackoff(int(value) / 1000)
        finally:
            if self._client is None:
                await client.aclose()


class OverlayClient:
    """Both transports feeding one OverlayState, plus the bell buttons.

    Args:
        base_url: Root of the live service, e.g. ``http://localhost:8000``.
        settings: Source of log size and reconnect delay.
        http_client: Optional client for the stream and bell requests.
        api_key: Bearer key sent with bell requests.
    """

    def __init__(
        self,
        base_url: str,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        api_key: str | None = None,
    ) -> None:
        settings = settings or get_settings()
        base_url = base_url.rstrip("/")
        ws_url = "ws" + base_url.removeprefix("http") + "/api/obs/websocket"
        backoff = FixedBackoff(settings.reconnect_delay_seconds)

        self.base_url = base_url
        self.state = OverlayState(log_size=settings.notification_log_size)
        # Only the push stream writes the notification log; the channel keeps
        # day state and the leaderboard current if the stream drops.
        self.channel = ChannelClient(ws_url, self._apply_from_channel, backoff=backoff)
        self.stream = StreamClient(
            f"{base_url}/api/obs/events", self.state.apply, backoff=backoff, client=http_client
        )
        self._http = http_client
        self._api_key = api_key

    def _apply_from_channel(self, message: dict[str, Any]) -> bool:
        return self.state.apply(message, record=False)

    @property
    def is_live(self) -> bool:
        return self.channel.connected or self.stream.connected

    @property
    def fully_connected(self) -> bool:
        return self.channel.connected and self.stream.connected

    async def run(self) -> None:
        await asyncio.gather(self.channel.run(), self.stream.run())

    def stop(self) -> None:
        self.channel.stop()
        self.stream.stop()

    async def send_bell(self, action: BellAction | str) -> bool:
        """Ask the server to ring the bell. Does not touch ``day_active``.

        Returns True when the server accepted the request.
        """
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        client = self._http or httpx.AsyncClient()
        try:
            response = await client.post(
                f"{self.base_url}/api/obs/bell",
                json={"action": str(action)},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.error("Bell request failed", extra={"data": {"action": str(action), "error": str(exc)}})
            return False
        finally:
            if self._http is None:
                await client.aclose()

        if response.is_success:
            logger.info("Bell signal sent", extra={"data": {"action": str(action)}})
            return True
        logger.warning(
            "Bell request rejected",
            extra={"data": {"action": str(action), "status": response.status_code}},
        )
        return False
