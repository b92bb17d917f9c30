"""Custom exceptions for the trading-simulation live service.

All modules should raise these exceptions instead of generic ones.
The FastAPI exception handlers in main.py catch TradeSimBaseException
and return structured JSON error responses.
"""

from __future__ import annotations


class TradeSimBaseException(Exception):
    """Base exception for all trading-simulation errors.

    Args:
        message: Human-readable error description.
        context: Optional dict of structured data for logging/debugging.
    """

    def __init__(self, message: str, context: dict | None = None) -> None:
        super().__init__(message)
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            safe_context = {
                k: "[REDACTED]" if _is_secret_key(k) else v for k, v in self.context.items()
            }
            return f"{super().__str__()} | context={safe_context}"
        return super().__str__()


class InvalidBellActionError(TradeSimBaseException):
    """Bell trigger received an action other than start_day / end_day."""


class InvalidEventError(TradeSimBaseException):
    """A producer submitted an event payload that cannot be decoded."""


class MalformedFrameError(TradeSimBaseException):
    """An inbound channel frame is not a JSON object with a type."""


class NotAuthorizedError(TradeSimBaseException):
    """Caller presented no credentials, or unrecognised ones."""


class ForbiddenError(TradeSimBaseException):
    """Caller is authenticated but lacks the required role."""


class PublishError(TradeSimBaseException):
    """The producer event bus could not accept an event."""


def _is_secret_key(key: str) -> bool:
    """Check if a dict key name suggests it contains secret data."""
    secret_words = {"key", "secret", "password", "token", "private", "credential"}
    key_lower = key.lower()
    return any(word in key_lower for word in secret_words)
