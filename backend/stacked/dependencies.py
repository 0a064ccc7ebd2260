"""FastAPI dependencies resolving the per-app shared objects."""

from fastapi import Request
from fastapi import WebSocket

from stacked.services.presence import PresenceRegistry
from stacked.websocket.manager import SocketRelayManager


def get_presence_registry(request: Request) -> PresenceRegistry:
    return request.app.state.presence


def get_relay_manager(websocket: WebSocket) -> SocketRelayManager:
    return websocket.app.state.relay
