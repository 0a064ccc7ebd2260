"""Presence endpoint used by the heartbeat reporter.

``POST`` records a ``connect``/``heartbeat``/``disconnect`` for a session and
``GET`` only reads; both evict stale sessions first and return the live
count.  No authentication – the numbers are for display only.
"""

import logging

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request
from fastapi import status
from fastapi.responses import JSONResponse

from stacked.constants import SYNC_STATUS_PATH
from stacked.dependencies import get_presence_registry
from stacked.schemas.sync import PresenceError
from stacked.schemas.sync import PresenceStatus
from stacked.schemas.sync import PresenceUpdate
from stacked.services.presence import PresenceRegistry
from stacked.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


@router.post(
    SYNC_STATUS_PATH,
    response_model=PresenceStatus,
    responses={400: {"model": PresenceError}},
)
def report_presence(
    body: PresenceUpdate,
    request: Request,
    registry: PresenceRegistry = Depends(get_presence_registry),
):
    """Record a presence action and return the live-session count."""
    if not body.clientId:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=PresenceError(error="Client ID is required").model_dump(),
        )

    user_agent = request.headers.get("user-agent") or "Unknown"
    count = registry.touch(body.clientId, body.action, user_agent)
    logger.debug("Presence %s from %s -> %d live", body.action, body.clientId, count)
    return PresenceStatus(connectedClients=count, timestamp=utc_now_iso())


@router.get(SYNC_STATUS_PATH, response_model=PresenceStatus)
def presence_status(registry: PresenceRegistry = Depends(get_presence_registry)) -> PresenceStatus:
    return PresenceStatus(connectedClients=registry.count(), timestamp=utc_now_iso())
