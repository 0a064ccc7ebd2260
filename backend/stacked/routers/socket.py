"""WebSocket relay for the network sync transport.

Each connection announces its session id via ``?userId=``.  Incoming
``{"event": "sync", "data": {...}}`` frames are relayed verbatim to every other
connection; the relay does not interpret or persist them.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any
from typing import Dict
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request
from fastapi import WebSocket
from fastapi import WebSocketDisconnect

from stacked.constants import SOCKET_PATH
from stacked.dependencies import get_relay_manager
from stacked.models.enums import Channel
from stacked.utils.time import utc_now_iso
from stacked.websocket.manager import SocketRelayManager

router = APIRouter(tags=["socket"])
logger = logging.getLogger(__name__)


@router.get(SOCKET_PATH + "/status")
def socket_status(request: Request) -> Dict[str, Any]:
    relay: SocketRelayManager = request.app.state.relay
    return {
        "status": "ok",
        "connections": relay.connection_count,
        "timestamp": utc_now_iso(),
    }


@router.websocket(SOCKET_PATH)
async def socket_endpoint(
    websocket: WebSocket,
    userId: Optional[str] = None,
    relay: SocketRelayManager = Depends(get_relay_manager),
):
    """Relay sync frames between connected clients."""
    client_id = str(uuid.uuid4())
    await websocket.accept()
    await relay.connect(client_id, websocket, userId)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError as exc:
                logger.warning("Invalid JSON from relay client %s: %s", client_id, exc)
                await websocket.send_json({"event": "error", "data": "Invalid JSON payload"})
                continue

            if not isinstance(frame, dict) or frame.get("event") != Channel.SYNC.value:
                logger.debug("Ignoring relay frame from %s: %r", client_id, frame)
                continue

            await relay.relay(client_id, frame.get("data"))
    except WebSocketDisconnect:
        logger.debug("Relay client %s went away", client_id)
    finally:
        await relay.disconnect(client_id)
