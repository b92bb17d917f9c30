"""OBS overlay control endpoints.

POST /api/obs/bell    start or end the trading day (admin)
POST /api/obs/notify  publish a trade, leaderboard or system event (admin)
GET  /api/obs/status  live connection counts (participant)

None of these wait for viewers to receive anything: they return as soon
as the event has been queued for every connection.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from tradesim.api.deps import get_hub, require_admin, require_participant
from tradesim.common.exceptions import InvalidBellActionError, InvalidEventError
from tradesim.common.logging import get_logger
from tradesim.common.metrics import BELL_SIGNALS_TOTAL
from tradesim.live.events import BellAction, BellEvent, parse_event, utc_timestamp
from tradesim.live.hub import BroadcastHub

logger = get_logger("BELL")

router = APIRouter()


class BellRequest(BaseModel):
    # Kept as a plain string so a bad action gets our 400 rather than a 422.
    action: str | None = None


class BellResponse(BaseModel):
    success: bool
    message: str
    action: BellAction
    timestamp: str


@router.post("/bell", response_model=BellResponse, dependencies=[Depends(require_admin)])
async def send_bell_signal(
    body: BellRequest,
    hub: BroadcastHub = Depends(get_hub),
) -> BellResponse:
    """Ring the start-of-day or end-of-day bell on both live transports.

    Raises:
        InvalidBellActionError: Action is not ``start_day`` or ``end_day``.
    """
    if body.action not in {a.value for a in BellAction}:
        raise InvalidBellActionError(
            'Invalid action. Must be "start_day" or "end_day"',
            context={"action": body.action},
        )

    action = BellAction(body.action)
    deliveries = await hub.ring_bell(action)
    BELL_SIGNALS_TOTAL.labels(action=action.value).inc()
    logger.info(
        "Bell signal sent",
        extra={"data": {"action": action.value, "deliveries": deliveries}},
    )
    return BellResponse(
        success=True,
        message=f"{action.value} bell signal sent successfully",
        action=action,
        timestamp=utc_timestamp(),
    )


@router.post("/notify", dependencies=[Depends(require_admin)])
async def publish_notification(
    payload: dict[str, Any] = Body(...),
    hub: BroadcastHub = Depends(get_hub),
) -> dict:
    """Publish a producer event (trade, leaderboard snapshot, system notice).

    Bells go through /bell so they are validated and counted in one place.
    """
    event = parse_event(payload)
    if isinstance(event, BellEvent):
        raise InvalidEventError("Use /api/obs/bell for bell signals")

    deliveries = await hub.publish(event)
    return {
        "success": True,
        "type": event.event_type.value,
        "deliveries": deliveries,
        "timestamp": utc_timestamp(),
    }


@router.get("/status", dependencies=[Depends(require_participant)])
async def live_status(hub: BroadcastHub = Depends(get_hub)) -> dict:
    """Connection counts per transport and heartbeat state."""
    return hub.stats()
