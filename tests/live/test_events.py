"""Tests for live domain events, payload shapes and producer decoding."""

from __future__ import annotations

import re

import pytest
from pydantic import ValidationError

from tradesim.common.exceptions import InvalidEventError
from tradesim.live.events import (
    BellAction,
    BellEvent,
    EventType,
    LeaderboardEntry,
    LeaderboardEvent,
    SystemEvent,
    TradeEvent,
    TradeSide,
    parse_event,
    utc_timestamp,
)


class TestUtcTimestamp:
    def test_iso_with_millis_and_z_suffix(self):
        ts = utc_timestamp()
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", ts)


class TestBellEvent:
    def test_start_day_payload(self):
        payload = BellEvent(action=BellAction.START_DAY).payload()
        assert payload == {
            "type": "bell",
            "message": "🔔 Trading day has started!",
            "action": "start_day",
        }

    def test_end_day_message(self):
        payload = BellEvent(action="end_day").payload()
        assert payload["message"] == "🔔 Trading day has ended!"
        assert payload["action"] == "end_day"

    def test_payload_has_no_timestamp(self):
        """Timestamps are added by the hub at dispatch, not by the event."""
        assert "timestamp" not in BellEvent(action="start_day").payload()

    def test_rejects_unknown_action(self):
        with pytest.raises(ValidationError):
            BellEvent(action="pause")

    def test_events_are_immutable(self):
        event = BellEvent(action="start_day")
        with pytest.raises(ValidationError):
            event.action = BellAction.END_DAY


class TestTradeEvent:
    def test_buy_message_and_trade_object(self):
        payload = TradeEvent(team="Team Alpha", instrument="TECH", side="buy", quantity=50).payload()
        assert payload["type"] == "trade"
        assert payload["message"] == "Team Alpha just bought 50 shares of TECH"
        assert payload["trade"] == {
            "team": "Team Alpha",
            "instrument": "TECH",
            "side": "buy",
            "quantity": 50,
        }

    def test_sell_message(self):
        event = TradeEvent(team="Team Beta", instrument="ENRG", side=TradeSide.SELL, quantity=10)
        assert event.payload()["message"] == "Team Beta just sold 10 shares of ENRG"

    def test_explicit_message_wins(self):
        event = TradeEvent(
            team="Team Beta", instrument="ENRG", side="sell", quantity=10, message="Big exit!"
        )
        assert event.payload()["message"] == "Big exit!"

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            TradeEvent(team="Team Beta", instrument="ENRG", side="sell", quantity=0)


class TestLeaderboardEvent:
    def test_entries_serialized_with_camel_case(self, sample_leaderboard):
        payload = LeaderboardEvent(entries=tuple(sample_leaderboard)).payload()
        assert payload["type"] == "leaderboard_update"
        assert payload["message"] == "Leaderboard has been updated"
        assert payload["leaderboard"][0] == {
            "rank": 1,
            "teamName": "Team Beta",
            "portfolioValue": 125_400.0,
            "gains": 25_400.0,
            "trades": 14,
        }

    def test_order_is_preserved(self, sample_leaderboard):
        payload = LeaderboardEvent(entries=tuple(sample_leaderboard)).payload()
        assert [row["rank"] for row in payload["leaderboard"]] == [1, 2, 3]

    def test_entry_accepts_camel_or_snake_keys(self):
        camel = LeaderboardEntry.model_validate({"rank": 1, "teamName": "A", "portfolioValue": 1})
        snake = LeaderboardEntry(rank=1, team_name="A", portfolio_value=1)
        assert camel == snake

    def test_empty_snapshot(self):
        assert LeaderboardEvent().payload()["leaderboard"] == []


class TestSystemEvent:
    def test_payload(self):
        payload = SystemEvent(message="Market update: all prices refreshed").payload()
        assert payload == {"type": "system", "message": "Market update: all prices refreshed"}

    def test_message_required(self):
        with pytest.raises(ValidationError):
            SystemEvent(message="")


# ─── Producer Payload Decoding ───


class TestParseEvent:
    def test_flat_trade(self):
        event = parse_event(
            {"type": "trade", "team": "Team Alpha", "instrument": "TECH", "side": "buy", "quantity": 5}
        )
        assert isinstance(event, TradeEvent)
        assert event.quantity == 5

    def test_nested_trade_wire_shape(self):
        wire = TradeEvent(team="Team Alpha", instrument="TECH", side="buy", quantity=5).payload()
        wire["timestamp"] = "2026-01-01T00:00:00.000Z"
        event = parse_event(wire)
        assert isinstance(event, TradeEvent)
        assert event.team == "Team Alpha"

    def test_legacy_trade_notification_name(self):
        event = parse_event(
            {
                "type": "trade_notification",
                "team": "Team Alpha",
                "instrument": "TECH",
                "side": "sell",
                "quantity": 1,
            }
        )
        assert event.event_type is EventType.TRADE

    @pytest.mark.parametrize("type_name", ["leaderboard", "leaderboard_update"])
    def test_leaderboard_under_either_name(self, type_name):
        event = parse_event(
            {
                "type": type_name,
                "leaderboard": [{"rank": 1, "teamName": "Team Beta", "portfolioValue": 100}],
            }
        )
        assert isinstance(event, LeaderboardEvent)
        assert event.entries[0].team_name == "Team Beta"

    def test_bell(self):
        event = parse_event({"type": "bell", "action": "end_day"})
        assert isinstance(event, BellEvent)
        assert event.action is BellAction.END_DAY

    def test_unknown_type_raises(self):
        with pytest.raises(InvalidEventError, match="Unknown event type"):
            parse_event({"type": "dividend"})

    def test_missing_type_raises(self):
        with pytest.raises(InvalidEventError):
            parse_event({"message": "hello"})

    def test_non_object_raises(self):
        with pytest.raises(InvalidEventError, match="JSON object"):
            parse_event(["bell"])

    def test_invalid_fields_raise_invalid_event(self):
        with pytest.raises(InvalidEventError, match="Invalid event payload"):
            parse_event({"type": "trade", "team": "Team Alpha", "quantity": -1})
