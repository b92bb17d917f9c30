"""API test fixtures: httpx.AsyncClient on the real app with overridden dependencies.

ASGITransport does not run the lifespan, so no hub exists on app.state.
Tests get a fresh, unstarted hub through a get_hub override and control
the auth keys through a get_settings override.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tradesim.api.deps import get_hub
from tradesim.common.config import Settings, get_settings
from tradesim.live.hub import BroadcastHub
from tradesim.main import app

ADMIN_KEY = "test-admin-key"
PARTICIPANT_KEY = "test-participant-key"


def _override(hub: BroadcastHub, settings: Settings) -> AsyncClient:
    app.dependency_overrides[get_hub] = lambda: hub
    app.dependency_overrides[get_settings] = lambda: settings
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture
async def client(hub: BroadcastHub, test_settings: Settings) -> AsyncClient:
    """Client for a service running open (no API keys configured)."""
    async with _override(hub, test_settings) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def keyed_client(hub: BroadcastHub) -> AsyncClient:
    """Client for a service with admin and participant keys configured."""
    settings = Settings(admin_api_key=ADMIN_KEY, participant_api_key=PARTICIPANT_KEY)
    async with _override(hub, settings) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_KEY}"}


@pytest.fixture
def participant_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {PARTICIPANT_KEY}"}
