"""FastAPI dependencies: live hub lookup and caller role resolution.

Roles come from a bearer key checked against the configured admin and
participant keys. With no keys configured the service runs open (every
role check passes), which is how local development and the OBS machine
on a trusted network are expected to run.
"""

from __future__ import annotations

import secrets
from enum import StrEnum

from fastapi import Depends, Header, HTTPException
from starlette.requests import HTTPConnection

from tradesim.common.config import Settings, get_settings
from tradesim.common.exceptions import ForbiddenError, NotAuthorizedError
from tradesim.common.logging import get_logger
from tradesim.live.hub import BroadcastHub

logger = get_logger("AUTH")


class Role(StrEnum):
    ADMIN = "admin"
    PARTICIPANT = "participant"


def get_hub(connection: HTTPConnection) -> BroadcastHub:
    """Return the hub created by the application lifespan.

    Raises:
        HTTPException: 503 if the live layer is not running.
    """
    hub = getattr(connection.app.state, "hub", None)
    if hub is None:
        raise HTTPException(status_code=503, detail="Live notification hub is not running")
    return hub


def _matches(candidate: str, expected: str | None) -> bool:
    return bool(expected) and secrets.compare_digest(candidate.encode(), expected.encode())


def get_current_role(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Role | None:
    """Resolve ``Authorization: Bearer <key>`` to a role, or None."""
    if not authorization:
        return None
    scheme, _, key = authorization.partition(" ")
    if scheme.lower() != "bearer" or not key:
        return None
    if _matches(key, settings.admin_api_key):
        return Role.ADMIN
    if _matches(key, settings.participant_api_key):
        return Role.PARTICIPANT
    logger.warning("Unrecognised API key presented")
    return None


def require_admin(
    role: Role | None = Depends(get_current_role),
    settings: Settings = Depends(get_settings),
) -> Role | None:
    """Allow only admins once an admin key is configured.

    Raises:
        NotAuthorizedError: No recognised credentials.
        ForbiddenError: Authenticated as a participant.
    """
    if not settings.admin_api_key:
        return role
    if role is None:
        raise NotAuthorizedError("Admin credentials required")
    if role is not Role.ADMIN:
        raise ForbiddenError("Admin role required", context={"role": role.value})
    return role


def require_participant(
    role: Role | None = Depends(get_current_role),
    settings: Settings = Depends(get_settings),
) -> Role | None:
    """Allow participants and admins once any key is configured."""
    if not settings.admin_api_key and not settings.participant_api_key:
        return role
    if role is None:
        raise NotAuthorizedError("Participant credentials required")
    return role
