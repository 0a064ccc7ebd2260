"""One transport interface, two implementations.

:class:`LocalTransport` is the origin-local sync service (broadcast channel,
storage signal, polling).  :class:`SocketTransport` talks to the socket relay
served by :mod:`stacked.routers.socket`.  :func:`make_transport` picks one
from configuration so callers never juggle parallel ad-hoc classes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC
from abc import abstractmethod
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import Union
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed
from websockets.exceptions import WebSocketException

from stacked.config import Settings
from stacked.events import EventBus
from stacked.events import Listener
from stacked.models.enums import Channel
from stacked.models.enums import DeliveryPath
from stacked.models.enums import SyncAction
from stacked.models.enums import SyncTopic
from stacked.schemas.sync import SyncEvent
from stacked.sync.service import SyncService
from stacked.sync.service import generate_origin_id
from stacked.utils.time import now_ms

logger = logging.getLogger(__name__)


class SyncTransport(ABC):
    """Capability interface shared by every sync transport."""

    @abstractmethod
    async def connect(self) -> bool:
        """Open the transport.  Returns *False* when running degraded."""

    @abstractmethod
    async def emit(
        self,
        topic: Union[SyncTopic, str],
        action: Union[SyncAction, str] = SyncAction.UPDATE,
        payload: Any = None,
    ) -> Optional[SyncEvent]:
        """Publish a snapshot of *topic*."""

    @abstractmethod
    def on(self, channel: Union[Channel, str], callback: Listener) -> None:
        """Register *callback* on an internal channel."""

    @abstractmethod
    def off(self, channel: Union[Channel, str], callback: Listener) -> None:
        """Remove *callback* from an internal channel."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the transport."""


class LocalTransport(SyncTransport):
    """Adapter exposing a :class:`SyncService` through :class:`SyncTransport`."""

    def __init__(self, service: SyncService):
        self.service = service

    async def connect(self) -> bool:
        self.service.initialize()
        return self.service.has_channel or self.service.host.has_storage

    async def emit(self, topic, action=SyncAction.UPDATE, payload=None) -> Optional[SyncEvent]:
        return self.service.emit_sync_event(topic, action, payload)

    def on(self, channel, callback) -> None:
        self.service.on(channel, callback)

    def off(self, channel, callback) -> None:
        self.service.off(channel, callback)

    async def disconnect(self) -> None:
        self.service.destroy()


Connector = Callable[[str], Awaitable[Any]]


class SocketTransport(SyncTransport):
    """Network transport backed by the ``/api/socket`` relay.

    Frames are JSON objects ``{"event": "sync" | "users", "data": ...}``.
    When constructed with a *service*, events the service emits are forwarded
    to the relay and events from the relay are applied to the service, so
    bindings work unchanged on top of it.
    """

    def __init__(
        self,
        url: str,
        *,
        origin_id: Optional[str] = None,
        service: Optional[SyncService] = None,
        connector: Optional[Connector] = None,
    ):
        self.url = url
        self.service = service
        self.origin_id = origin_id or (service.origin_id if service is not None else generate_origin_id())
        self._connector = connector or websockets.connect
        self._bus = EventBus()
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: set = set()
        self._down_announced = True

        if service is not None:
            service.on(Channel.SYNC, self._forward_local)

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> bool:
        if self._ws is not None:
            return True
        target = f"{self.url}?{urlencode({'userId': self.origin_id})}"
        try:
            self._ws = await self._connector(target)
        except (OSError, WebSocketException) as exc:
            logger.warning("Socket connection to %s failed: %s", self.url, exc)
            return False

        self._down_announced = False
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())
        logger.info("Connected to sync relay %s as %s", self.url, self.origin_id)
        self._bus.publish(Channel.CONNECTED, {"userId": self.origin_id})
        return True

    async def _send(self, event: SyncEvent) -> bool:
        if self._ws is None:
            return False
        try:
            await self._ws.send(json.dumps({"event": Channel.SYNC.value, "data": event.to_wire()}))
            return True
        except (ConnectionClosed, OSError) as exc:
            logger.warning("Dropping sync event; relay connection lost: %s", exc)
            return False

    async def emit(self, topic, action=SyncAction.UPDATE, payload=None) -> Optional[SyncEvent]:
        if self.service is not None:
            # The service forwards it through _forward_local.
            return self.service.emit_sync_event(topic, action, payload)

        event = SyncEvent(
            topic=SyncTopic(topic),
            action=SyncAction(action),
            payload=payload,
            origin_id=self.origin_id,
            emitted_at=now_ms(),
        )
        self._bus.publish(Channel.SYNC, event)
        await self._send(event)
        return event

    def _forward_local(self, event: SyncEvent) -> None:
        if event.origin_id != self.origin_id or self._ws is None:
            return
        task = asyncio.get_running_loop().create_task(self._send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring undecodable frame from relay")
            return
        if not isinstance(frame, dict):
            return

        kind = frame.get("event")
        if kind == Channel.SYNC.value:
            try:
                event = SyncEvent.from_wire(frame.get("data"))
            except ValidationError as exc:
                logger.warning("Ignoring malformed sync frame: %s", exc)
                return
            if event.origin_id == self.origin_id:
                return
            if self.service is not None:
                self.service.receive(event, DeliveryPath.SOCKET)
            else:
                self._bus.publish(Channel.SYNC, event)
        elif kind == Channel.USERS.value:
            self._bus.publish(Channel.USERS, frame.get("data"))
        else:
            logger.debug("Ignoring relay frame %r", kind)

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            if ws is None:
                return
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosed as exc:
            logger.info("Sync relay closed the connection: %s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
            self._announce_down()

    def _announce_down(self) -> None:
        if not self._down_announced:
            self._down_announced = True
            self._bus.publish(Channel.DISCONNECTED, {"userId": self.origin_id})

    def on(self, channel, callback) -> None:
        if self.service is not None and Channel(channel) is Channel.SYNC:
            self.service.on(channel, callback)
        else:
            self._bus.subscribe(channel, callback)

    def off(self, channel, callback) -> None:
        if self.service is not None and Channel(channel) is Channel.SYNC:
            self.service.off(channel, callback)
        else:
            self._bus.unsubscribe(channel, callback)

    async def disconnect(self) -> None:
        if self.service is not None:
            self.service.off(Channel.SYNC, self._forward_local)
        ws, self._ws = self._ws, None
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as exc:
                logger.debug("Error closing relay connection: %s", exc)
        self._announce_down()


def make_transport(settings: Settings, service: SyncService, *, connector: Optional[Connector] = None) -> SyncTransport:
    """Return the transport selected by ``settings.sync_transport``."""
    if settings.sync_transport == "socket":
        if not settings.socket_url:
            raise ValueError("SYNC_SERVER_URL is required for the socket transport")
        return SocketTransport(settings.socket_url, service=service, connector=connector)
    return LocalTransport(service)
