"""FastAPI application factory for the trading-simulation live service.

Run with: uvicorn tradesim.main:app --reload
"""

from __future__ import annotations

import asyncio
import contextlib
import traceback
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app as make_metrics_app

from tradesim import __version__
from tradesim.api.obs import router as obs_router
from tradesim.common.config import get_settings
from tradesim.common.exceptions import (
    ForbiddenError,
    NotAuthorizedError,
    TradeSimBaseException,
)
from tradesim.common.logging import get_logger
from tradesim.common.metrics import set_app_info
from tradesim.common.middleware import (
    AllowlistMiddleware,
    PrometheusMiddleware,
    RequestIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    request_id_var,
)
from tradesim.live.channel import router as channel_router
from tradesim.live.hub import BroadcastHub
from tradesim.live.stream import router as stream_router
from tradesim.live.subscriber import redis_subscriber

logger = get_logger("SYSTEM")


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncGenerator[None, None]:
    """Create the live hub for this process and tear it down on shutdown."""
    settings = get_settings()
    hub = BroadcastHub(settings=settings)
    await hub.start()
    application.state.hub = hub

    subscriber_task = None
    if settings.event_bus_enabled:
        subscriber_task = asyncio.create_task(redis_subscriber(hub))
        logger.info("Live event bus subscriber started")

    yield

    if subscriber_task is not None:
        subscriber_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await subscriber_task
        logger.info("Live event bus subscriber stopped")

    await hub.stop()
    application.state.hub = None


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": str(exc)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map service exceptions to structured JSON error responses."""

    @app.exception_handler(TradeSimBaseException)
    async def tradesim_exception_handler(request: Request, exc: TradeSimBaseException) -> JSONResponse:
        logger.warning(
            f"{type(exc).__name__}: {exc}",
            extra={"data": {"path": str(request.url), "context": exc.context}},
        )
        return _error_response(400, exc)

    @app.exception_handler(NotAuthorizedError)
    async def not_authorized_handler(request: Request, exc: NotAuthorizedError) -> JSONResponse:
        logger.warning(f"NotAuthorizedError: {exc}", extra={"data": {"path": str(request.url)}})
        return _error_response(401, exc)

    @app.exception_handler(ForbiddenError)
    async def forbidden_handler(request: Request, exc: ForbiddenError) -> JSONResponse:
        logger.warning(f"ForbiddenError: {exc}", extra={"data": {"path": str(request.url)}})
        return _error_response(403, exc)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions: log traceback, return 500."""
        rid = request_id_var.get("")
        logger.error(
            f"Unhandled {type(exc).__name__}: {exc}",
            extra={
                "data": {
                    "path": str(request.url),
                    "request_id": rid,
                    "traceback": traceback.format_exc(),
                }
            },
        )
        body: dict = {
            "error": "InternalServerError",
            "message": "An unexpected error occurred",
        }
        if rid:
            body["request_id"] = rid
        return JSONResponse(status_code=500, content=body)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    app = FastAPI(
        title="Trading Simulation Live",
        version=__version__,
        description="Live bell, trade and leaderboard notifications for the OBS overlay",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Last added = outermost = runs first on request
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        AllowlistMiddleware,
        allowed_cidr=settings.allowed_cidr,
        seb_key=settings.seb_allowed_key,
    )

    register_exception_handlers(app)

    if not settings.admin_api_key:
        logger.warning("ADMIN_API_KEY not set, bell and notify endpoints are open")

    # ─── Health ───

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """Liveness probe, with live connection counts when the hub is up."""
        body: dict = {"status": "ok", "version": __version__}
        hub = getattr(request.app.state, "hub", None)
        if hub is not None:
            body["live"] = hub.stats()
        return body

    # ─── Prometheus Metrics ───

    metrics_app = make_metrics_app()
    app.mount("/metrics", metrics_app)
    set_app_info(version=__version__, environment=settings.environment)

    # ─── Router Mounting ───

    app.include_router(obs_router, prefix="/api/obs", tags=["obs"])
    app.include_router(stream_router, tags=["live"])
    app.include_router(channel_router, tags=["live"])

    logger.info("App started", extra={"data": {"version": __version__}})

    return app


app = create_app()
