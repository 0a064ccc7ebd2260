"""Connection manager for the sync socket relay.

Relays ``sync`` frames from one client to every other connected client and
keeps everyone informed of the current connection count (``users`` frames).
The relay never stores events – a client that is not connected when a frame
is relayed simply misses it, exactly like the local broadcast channel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Dict

from fastapi import WebSocket

from stacked.metrics import socket_relay_connections
from stacked.models.enums import Channel

logger = logging.getLogger(__name__)


class SocketRelayManager:
    """Tracks relay connections keyed by server-assigned client id."""

    SEND_TIMEOUT = 1.0  # Timeout for individual send operations

    def __init__(self):
        # client_id -> WebSocket (guarded by `_lock`)
        self.active_connections: Dict[str, WebSocket] = {}
        # client_id -> session id the client announced (userId query param)
        self.client_users: Dict[str, str | None] = {}
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)

    async def connect(self, client_id: str, websocket: WebSocket, user_id: str | None = None) -> None:
        async with self._lock:
            self.active_connections[client_id] = websocket
            self.client_users[client_id] = user_id
            socket_relay_connections.set(len(self.active_connections))
        logger.info("Relay client %s connected (user %s)", client_id, user_id)
        await self.broadcast_user_count()

    async def disconnect(self, client_id: str) -> None:
        async with self._lock:
            removed = self.active_connections.pop(client_id, None)
            self.client_users.pop(client_id, None)
            socket_relay_connections.set(len(self.active_connections))
        if removed is not None:
            logger.info("Relay client %s disconnected", client_id)
            await self.broadcast_user_count()

    async def _send(self, client_id: str, websocket: WebSocket, frame: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(websocket.send_json(frame), timeout=self.SEND_TIMEOUT)
            return True
        except Exception as exc:  # noqa: BLE001 – any send failure drops the client
            logger.warning("Dropping relay client %s after failed send: %s", client_id, exc)
            return False

    async def _fan_out(self, frame: Dict[str, Any], *, exclude: str | None = None) -> int:
        async with self._lock:
            targets = [(cid, ws) for cid, ws in self.active_connections.items() if cid != exclude]

        results = await asyncio.gather(*(self._send(cid, ws, frame) for cid, ws in targets))

        dead = [cid for (cid, _ws), ok in zip(targets, results) if not ok]
        if dead:
            async with self._lock:
                for cid in dead:
                    self.active_connections.pop(cid, None)
                    self.client_users.pop(cid, None)
                socket_relay_connections.set(len(self.active_connections))
        return sum(1 for ok in results if ok)

    async def relay(self, sender_id: str, data: Any) -> int:
        """Forward a sync payload to every client except *sender_id*."""
        delivered = await self._fan_out({"event": Channel.SYNC.value, "data": data}, exclude=sender_id)
        logger.debug("Relayed sync frame from %s to %d client(s)", sender_id, delivered)
        return delivered

    async def broadcast_user_count(self) -> None:
        await self._fan_out({"event": Channel.USERS.value, "data": self.connection_count})

    async def shutdown(self) -> None:
        async with self._lock:
            connections = list(self.active_connections.items())
            self.active_connections.clear()
            self.client_users.clear()
            socket_relay_connections.set(0)
        for client_id, websocket in connections:
            try:
                await websocket.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Error closing relay client %s: %s", client_id, exc)
