"""Root test configuration: shared fixtures for all test modules.

IMPORTANT: Environment variables are set BEFORE any tradesim imports
so that config.py builds Settings from the test environment rather
than a developer's .env file.
"""

from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")  # Test DB 15
os.environ.setdefault("EVENT_BUS_ENABLED", "false")
os.environ.setdefault("ALLOWED_CIDR", "")
os.environ.pop("ADMIN_API_KEY", None)
os.environ.pop("PARTICIPANT_API_KEY", None)
os.environ.pop("SEB_ALLOWED_KEY", None)

# Now safe to import tradesim modules
import pytest

from tradesim.common.config import Settings, get_settings
from tradesim.live.events import LeaderboardEntry
from tradesim.live.hub import BroadcastHub
from tradesim.live.registry import Connection, ConnectionRegistry
from tradesim.live.transports import TransportKind

# ─── Clear cached settings so test env vars are used ───
get_settings.cache_clear()


# ─── Test Settings ───


@pytest.fixture
def test_settings() -> Settings:
    """Settings with a small send queue so backpressure is easy to provoke."""
    return Settings(
        heartbeat_interval_seconds=0.05,
        live_send_queue_size=5,
        live_replay_on_connect=False,
    )


# ─── Live Layer ───


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def hub(registry: ConnectionRegistry, test_settings: Settings) -> BroadcastHub:
    return BroadcastHub(registry=registry, settings=test_settings)


@pytest.fixture
def make_connection(test_settings: Settings):
    """Factory for unregistered connections of either transport."""

    def _make(kind: TransportKind = TransportKind.CHANNEL) -> Connection:
        return Connection(kind, queue_size=test_settings.live_send_queue_size)

    return _make


# ─── Sample Data ───


@pytest.fixture
def sample_leaderboard() -> list[LeaderboardEntry]:
    """Three ranked teams as the leaderboard job would publish them."""
    return [
        LeaderboardEntry(rank=1, team_name="Team Beta", portfolio_value=125_400.0, gains=25_400.0, trades=14),
        LeaderboardEntry(rank=2, team_name="Team Alpha", portfolio_value=110_250.5, gains=10_250.5, trades=22),
        LeaderboardEntry(rank=3, team_name="Team Gamma", portfolio_value=96_800.0, gains=-3_200.0, trades=9),
    ]
