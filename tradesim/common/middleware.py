"""Production middleware for the trading-simulation live service.

Provides request ID tracing, request logging, security headers,
Prometheus HTTP metrics collection, and the network allowlist that
restricts which client addresses may reach the dashboard.
All classes are registered in tradesim/main.py.

Usage:
    from tradesim.common.middleware import request_id_var
    rid = request_id_var.get("")  # Access current request ID from anywhere
"""

from __future__ import annotations

import ipaddress
import re
import time
import uuid
from contextvars import ContextVar

from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from tradesim.common.logging import get_logger
from tradesim.common.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)

# ContextVar, accessible from any async context during a request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

logger = get_logger("SYSTEM")

# Paths to skip in request logging and metrics (probes create noise)
_SKIP_LOG_PATHS = frozenset({"/health", "/metrics"})

# Regex patterns for normalizing path templates (avoid high-cardinality labels)
_PATH_ID_PATTERNS = [
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    (re.compile(r"/[0-9a-f]{32}"), "/{id}"),
    (re.compile(r"/\d+"), "/{id}"),
]

_SKIP_METRICS_PATHS = frozenset({"/health", "/metrics"})

# Paths reachable from any address (login flow and probes)
PUBLIC_PATHS = (
    "/login",
    "/register",
    "/api/auth",
    "/health",
    "/metrics",
    "/favicon.ico",
    "/robots.txt",
)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Inject a unique request ID into every request/response cycle.

    - Reads ``X-Request-ID`` from the incoming request (for cross-service
      tracing). If absent, generates a UUID4.
    - Stores the ID in a ``ContextVar`` so the structured logger can
      include it in every log line.
    - Returns the ID in the ``X-Request-ID`` response header.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # noqa: ANN001
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex
        request_id_var.set(rid)

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status, and duration.

    Skips ``/health`` and ``/metrics`` to avoid polluting logs with
    probe traffic. For the push stream the logged duration covers
    only the time until headers were sent.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # noqa: ANN001
        if request.url.path in _SKIP_LOG_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        logger.info(
            f"{request.method} {request.url.path} {response.status_code}",
            extra={
                "data": {
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                    "request_id": request_id_var.get(""),
                }
            },
        )
        return response


def _normalize_path(path: str) -> str:
    """Normalize a URL path by replacing dynamic segments with {id}.

    Examples:
        /api/news/123           -> /api/news/{id}
        /api/companies/550e8... -> /api/companies/{id}
    """
    for pattern, replacement in _PATH_ID_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record Prometheus HTTP metrics for every request.

    Tracks request count, duration histogram, and in-progress gauge.
    Skips /health and /metrics to avoid noise.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # noqa: ANN001
        path = request.url.path
        if path in _SKIP_METRICS_PATHS:
            return await call_next(request)

        method = request.method
        path_template = _normalize_path(path)

        HTTP_REQUESTS_IN_PROGRESS.labels(method=method).inc()
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            HTTP_REQUESTS_TOTAL.labels(
                method=method,
                path_template=path_template,
                status_code="500",
            ).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(
                method=method,
                path_template=path_template,
            ).observe(time.perf_counter() - start)
            raise
        finally:
            HTTP_REQUESTS_IN_PROGRESS.labels(method=method).dec()

        duration = time.perf_counter() - start
        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path_template=path_template,
            status_code=str(response.status_code),
        ).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(
            method=method,
            path_template=path_template,
        ).observe(duration)

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security-related HTTP headers to every response.

    Headers an endpoint already set win (the push stream sends its own
    ``Cache-Control: no-cache``).
    """

    HEADERS: dict[str, str] = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "X-XSS-Protection": "1; mode=block",
        "Strict-Transport-Security": ("max-age=31536000; includeSubDomains"),
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
        "Cache-Control": "no-store",
    }

    async def dispatch(self, request: Request, call_next) -> Response:  # noqa: ANN001
        response = await call_next(request)
        for header, value in self.HEADERS.items():
            response.headers.setdefault(header, value)
        return response


def parse_cidr_ranges(raw: str) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    """Parse a comma-separated CIDR list, skipping invalid entries."""
    networks = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            networks.append(ipaddress.ip_network(item, strict=False))
        except ValueError:
            logger.warning("Invalid CIDR range", extra={"data": {"range": item}})
    return networks


def client_ip(headers: Headers, peer: tuple[str, int] | None) -> str:
    """Resolve the caller's address, preferring proxy headers.

    The first ``X-Forwarded-For`` hop wins, then the single-value proxy
    headers, then the socket peer.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for name in ("x-real-ip", "x-client-ip", "cf-connecting-ip", "x-cluster-client-ip"):
        value = headers.get(name)
        if value:
            return value.strip()
    if peer:
        return peer[0]
    return "unknown"


def is_ip_allowed(ip: str, networks: list) -> bool:
    """Return True when ``ip`` falls in any of ``networks`` (empty = allow all)."""
    if not networks:
        return True
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        logger.warning("Invalid client IP address", extra={"data": {"ip": ip}})
        return False
    return any(address.version == net.version and address in net for net in networks)


class AllowlistMiddleware:
    """Reject clients outside ``allowed_cidr`` or without the exam-browser key.

    Pure ASGI so that WebSocket handshakes are filtered too. HTTP callers
    get a 403 JSON body; WebSocket callers get close code 1008.
    """

    def __init__(self, app: ASGIApp, allowed_cidr: str = "", seb_key: str | None = None) -> None:
        self.app = app
        self.networks = parse_cidr_ranges(allowed_cidr)
        self.seb_key = seb_key
        if not self.networks:
            logger.warning("ALLOWED_CIDR not set, allowing all client addresses")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket") or scope["path"].startswith(PUBLIC_PATHS):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        ip = client_ip(headers, scope.get("client"))

        reason = None
        if not is_ip_allowed(ip, self.networks):
            reason = "Access denied. Your IP address is not allowed."
        elif self.seb_key and (headers.get("x-seb-key") or headers.get("seb-key")) != self.seb_key:
            reason = "Access denied. Invalid security key."

        if reason is None:
            await self.app(scope, receive, send)
            return

        logger.warning(reason, extra={"data": {"ip": ip, "path": scope["path"]}})
        if scope["type"] == "websocket":
            await WebSocketClose(code=1008)(scope, receive, send)
        else:
            await JSONResponse({"error": reason}, status_code=403)(scope, receive, send)
