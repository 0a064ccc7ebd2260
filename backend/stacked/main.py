"""FastAPI application exposing the presence endpoint and the socket relay.

The HTTP surface is the server half of the sync core's collaborators:

* ``POST/GET /api/sync/status`` – heartbeat / presence counting
* ``WS /api/socket`` – relay for the network transport
* ``GET /api/health`` and ``GET /metrics``
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stacked.config import Settings
from stacked.config import get_settings
from stacked.constants import API_PREFIX
from stacked.routers.metrics import router as metrics_router
from stacked.routers.socket import router as socket_router
from stacked.routers.sync_status import router as sync_status_router
from stacked.routers.system import router as system_router
from stacked.services.presence import PresenceRegistry
from stacked.websocket.manager import SocketRelayManager

logger = logging.getLogger(__name__)


def _configure_logging(settings: Settings) -> None:
    # --------------------------------------------------------------------------
    # - Default log level: INFO (dev-friendly)
    # - Can be set at runtime with LOG_LEVEL env (e.g. LOG_LEVEL=WARNING for CI)
    # - Socket relay chatter is capped at WARNING
    # --------------------------------------------------------------------------
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s - %(name)s - %(message)s")
    for _noisy_mod in ("stacked.routers.socket", "stacked.websocket.manager"):
        logging.getLogger(_noisy_mod).setLevel(max(level, logging.WARNING))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown lifecycle."""
    logger.info("%s started", app.state.settings.service_name)

    yield  # Application is running

    try:
        await app.state.relay.shutdown()
        logger.info("Socket relay stopped")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application.  Each call gets its own presence registry and relay."""
    settings = settings if settings is not None else get_settings()
    _configure_logging(settings)

    app = FastAPI(title=settings.service_name, redirect_slashes=True, lifespan=lifespan)
    app.state.settings = settings
    app.state.presence = PresenceRegistry(stale_after=settings.presence_stale_seconds)
    app.state.relay = SocketRelayManager()

    origins = [o.strip() for o in settings.allowed_cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=bool(origins),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(sync_status_router, prefix=API_PREFIX)
    app.include_router(socket_router, prefix=API_PREFIX)
    app.include_router(system_router, prefix=API_PREFIX)
    app.include_router(metrics_router)

    return app
