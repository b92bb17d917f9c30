"""Tests for the liveness probe and the application-wide error handlers."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from tradesim import __version__
from tradesim.common.exceptions import InvalidEventError
from tradesim.common.middleware import RequestIdMiddleware
from tradesim.main import app, register_exception_handlers


@pytest.fixture
async def bare_client() -> AsyncClient:
    """Client with no overrides and no lifespan, so app.state has no hub."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_health_returns_status_and_version(self, bare_client: AsyncClient):
        resp = await bare_client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["version"] == __version__

    @pytest.mark.asyncio
    async def test_health_omits_live_stats_without_hub(self, bare_client: AsyncClient):
        resp = await bare_client.get("/health")
        assert "live" not in resp.json()

    @pytest.mark.asyncio
    async def test_health_includes_live_stats(self, bare_client: AsyncClient, hub):
        app.state.hub = hub
        try:
            resp = await bare_client.get("/health")
        finally:
            app.state.hub = None
        assert resp.json()["live"]["connections"]["total"] == 0

    @pytest.mark.asyncio
    async def test_security_headers_applied(self, bare_client: AsyncClient):
        resp = await bare_client.get("/health")
        assert resp.headers["x-frame-options"] == "DENY"

    @pytest.mark.asyncio
    async def test_live_routes_unavailable_without_hub(self, bare_client: AsyncClient):
        resp = await bare_client.get("/api/obs/status")
        assert resp.status_code == 503


# ─── Exception Handlers ───


def _make_error_app() -> FastAPI:
    error_app = FastAPI()
    error_app.add_middleware(RequestIdMiddleware)
    register_exception_handlers(error_app)

    @error_app.get("/invalid")
    async def invalid():
        raise InvalidEventError("Unknown event type", context={"type": "dividend"})

    @error_app.get("/crash")
    async def crash():
        raise RuntimeError("unexpected")

    return error_app


class TestExceptionHandlers:
    @pytest.mark.asyncio
    async def test_service_error_is_400(self):
        transport = ASGITransport(app=_make_error_app())
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.get("/invalid")
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidEventError"
        assert "Unknown event type" in resp.json()["message"]

    @pytest.mark.asyncio
    async def test_unhandled_error_is_500_with_request_id(self):
        transport = ASGITransport(app=_make_error_app(), raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.get("/crash", headers={"X-Request-ID": "crash-trace"})
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"] == "InternalServerError"
        assert body["request_id"] == "crash-trace"
