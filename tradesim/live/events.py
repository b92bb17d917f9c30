"""Domain events broadcast to live overlay viewers.

Events are immutable Pydantic models. None of them carries a timestamp:
the broadcast hub stamps each one at dispatch, so a payload's
``timestamp`` reflects when it left the server rather than when the
producer built it.

Usage:
    from tradesim.live.events import BellAction, BellEvent

    event = BellEvent(action=BellAction.START_DAY)
    event.payload()
    # {"type": "bell", "message": "🔔 Trading day has started!", "action": "start_day"}
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from tradesim.common.exceptions import InvalidEventError


class EventType(StrEnum):
    BELL = "bell"
    TRADE = "trade"
    LEADERBOARD = "leaderboard_update"
    SYSTEM = "system"


class BellAction(StrEnum):
    START_DAY = "start_day"
    END_DAY = "end_day"


class TradeSide(StrEnum):
    BUY = "buy"
    SELL = "sell"


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class LeaderboardEntry(BaseModel):
    """One ranked row of a leaderboard snapshot.

    Rank is computed by whoever produces the snapshot and trusted as given.
    Serialized with camelCase keys (``teamName``, ``portfolioValue``).
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    rank: int
    team_name: str
    portfolio_value: float
    gains: float = 0.0
    trades: int = 0


class LiveEvent(BaseModel):
    """Base class for broadcastable events."""

    model_config = ConfigDict(frozen=True)

    event_type: ClassVar[EventType]

    message: str = ""

    def default_message(self) -> str:
        return ""

    def wire_fields(self) -> dict[str, Any]:
        """Type-specific payload fields, merged next to type and message."""
        return {}

    def payload(self) -> dict[str, Any]:
        """Wire payload without the dispatch timestamp."""
        return {
            "type": self.event_type.value,
            "message": self.message or self.default_message(),
            **self.wire_fields(),
        }


class BellEvent(LiveEvent):
    event_type: ClassVar[EventType] = EventType.BELL

    action: BellAction

    def default_message(self) -> str:
        if self.action is BellAction.START_DAY:
            return "🔔 Trading day has started!"
        return "🔔 Trading day has ended!"

    def wire_fields(self) -> dict[str, Any]:
        return {"action": self.action.value}


class TradeEvent(LiveEvent):
    event_type: ClassVar[EventType] = EventType.TRADE

    team: str
    instrument: str
    side: TradeSide
    quantity: int = Field(gt=0)

    def default_message(self) -> str:
        verb = "bought" if self.side is TradeSide.BUY else "sold"
        return f"{self.team} just {verb} {self.quantity} shares of {self.instrument}"

    def wire_fields(self) -> dict[str, Any]:
        return {
            "trade": {
                "team": self.team,
                "instrument": self.instrument,
                "side": self.side.value,
                "quantity": self.quantity,
            }
        }


class LeaderboardEvent(LiveEvent):
    event_type: ClassVar[EventType] = EventType.LEADERBOARD

    entries: tuple[LeaderboardEntry, ...] = ()

    def default_message(self) -> str:
        return "Leaderboard has been updated"

    def wire_fields(self) -> dict[str, Any]:
        return {"leaderboard": [entry.model_dump(by_alias=True) for entry in self.entries]}


class SystemEvent(LiveEvent):
    event_type: ClassVar[EventType] = EventType.SYSTEM

    message: str = Field(min_length=1)


# Producer-facing type names, including the names older producers used.
_EVENT_CLASSES: dict[str, type[LiveEvent]] = {
    "bell": BellEvent,
    "trade": TradeEvent,
    "trade_notification": TradeEvent,
    "leaderboard": LeaderboardEvent,
    "leaderboard_update": LeaderboardEvent,
    "system": SystemEvent,
}


def parse_event(data: Any) -> LiveEvent:
    """Build an event from a producer payload.

    Accepts either flat fields or the wire shapes (``trade`` object,
    ``leaderboard`` list) so a payload read off the bus round-trips.

    Raises:
        InvalidEventError: Unknown type or fields that fail validation.
    """
    if not isinstance(data, dict):
        raise InvalidEventError("Event payload must be a JSON object")

    kind = data.get("type")
    event_cls = _EVENT_CLASSES.get(kind) if isinstance(kind, str) else None
    if event_cls is None:
        raise InvalidEventError("Unknown event type", context={"type": kind})

    fields = {k: v for k, v in data.items() if k not in ("type", "timestamp")}
    if event_cls is TradeEvent and isinstance(fields.get("trade"), dict):
        fields = {**fields.pop("trade"), **fields}
    if event_cls is LeaderboardEvent and "leaderboard" in fields:
        fields["entries"] = fields.pop("leaderboard")

    try:
        return event_cls.model_validate(fields)
    except ValidationError as exc:
        raise InvalidEventError(
            "Invalid event payload",
            context={"type": kind, "errors": exc.error_count()},
        ) from exc
