"""Health endpoint.

Returns a small JSON document describing the process; it never fails because
of subsystem statistics.
"""

from typing import Any
from typing import Dict

from fastapi import APIRouter
from fastapi import Request
from fastapi import status

from stacked.utils.time import utc_now_iso

router = APIRouter(tags=["system"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health(request: Request) -> Dict[str, Any]:
    """Lightweight readiness probe."""
    state = request.app.state
    return {
        "status": "ok",
        "timestamp": utc_now_iso(),
        "service": state.settings.service_name,
        "presence": {"connectedClients": state.presence.count()},
        "socket": {"connections": state.relay.connection_count},
    }
