"""Prometheus metrics definitions for the trading-simulation live service.

All metric objects are centralized here as module-level singletons.
Import what you need from anywhere in the codebase:

    from tradesim.common.metrics import LIVE_CONNECTIONS_ACTIVE, BELL_SIGNALS_TOTAL

The /metrics endpoint is mounted in tradesim/main.py via
prometheus_client.make_asgi_app().
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Info

# ─── App Info ───

APP_INFO = Info("app", "Application metadata")

# ─── HTTP Metrics ───

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path_template", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    labelnames=["method", "path_template"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently in progress",
    labelnames=["method"],
)

# ─── Live Connection Metrics ───

LIVE_CONNECTIONS_ACTIVE = Gauge(
    "live_connections_active",
    "Registered live viewer connections",
    labelnames=["transport"],
)

LIVE_EVENTS_PUBLISHED_TOTAL = Counter(
    "live_events_published_total",
    "Domain events published through the broadcast hub",
    labelnames=["event_type"],
)

LIVE_MESSAGES_SENT_TOTAL = Counter(
    "live_messages_sent_total",
    "Frames queued for delivery to live viewers",
    labelnames=["transport", "event_type"],
)

LIVE_SEND_FAILURES_TOTAL = Counter(
    "live_send_failures_total",
    "Deliveries dropped because the recipient was closed or backed up",
    labelnames=["transport"],
)

LIVE_HEARTBEATS_SENT_TOTAL = Counter(
    "live_heartbeats_sent_total",
    "Keepalive frames queued by the heartbeat scheduler",
    labelnames=["transport"],
)

LIVE_CONNECTIONS_REAPED_TOTAL = Counter(
    "live_connections_reaped_total",
    "Connections removed by the heartbeat sweep",
)

# ─── Business Metrics: Trading Day ───

BELL_SIGNALS_TOTAL = Counter(
    "bell_signals_total",
    "Trading-day bell signals accepted",
    labelnames=["action"],
)

# ─── Producer Event Bus ───

LIVE_BUS_EVENTS_RECEIVED_TOTAL = Counter(
    "live_bus_events_received_total",
    "Events received from Redis pub/sub",
    labelnames=["event_type"],
)


def set_app_info(version: str, environment: str) -> None:
    """Set the app_info metric values. Called once at startup."""
    APP_INFO.info({"version": version, "environment": environment})
