"""Composition root for the sync core.

Exactly one :class:`SyncService` should exist per context.  Instead of a
module-level singleton, the application builds a :class:`SyncContext` at
startup and passes it to whatever needs to bind storage keys or listen for
sync events.
"""

from __future__ import annotations

import logging
from typing import Any
from typing import Dict
from typing import Optional

from stacked.config import Settings
from stacked.config import get_settings
from stacked.services.presence import PresenceReporter
from stacked.sync.binding import StorageBinding
from stacked.sync.binding import bind
from stacked.sync.host import Host
from stacked.sync.service import SyncService
from stacked.sync.topics import TopicRegistry
from stacked.sync.transport import Connector
from stacked.sync.transport import SyncTransport
from stacked.sync.transport import make_transport

logger = logging.getLogger(__name__)


class SyncContext:
    """Owns the service, its transport and every binding created through it."""

    def __init__(self, service: SyncService, transport: SyncTransport):
        self.service = service
        self.transport = transport
        self._bindings: Dict[str, StorageBinding] = {}

    @property
    def origin_id(self) -> str:
        return self.service.origin_id

    async def start(self) -> bool:
        """Initialize the service and connect the configured transport."""
        self.service.initialize()
        return await self.transport.connect()

    def bind(self, key: str, default: Any, *, hydrate: bool = True, strict: bool = False) -> StorageBinding:
        """Return the binding for *key*, creating it on first use."""
        existing = self._bindings.get(key)
        if existing is not None:
            return existing
        binding = bind(self.service, key, default, hydrate=hydrate, strict=strict)
        self._bindings[key] = binding
        return binding

    def validate_bindings(self) -> None:
        """Fail fast if any bound key lacks an explicit topic mapping."""
        self.service.registry.validate(self._bindings)

    async def close(self) -> None:
        for binding in self._bindings.values():
            binding.close()
        self._bindings.clear()
        await self.transport.disconnect()
        self.service.destroy()


def create_sync_context(
    host: Optional[Host] = None,
    settings: Optional[Settings] = None,
    *,
    registry: Optional[TopicRegistry] = None,
    presence: Optional[PresenceReporter] = None,
    connector: Optional[Connector] = None,
) -> SyncContext:
    """Wire a service and its configured transport for one context."""
    settings = settings if settings is not None else get_settings()
    service = SyncService(host, registry=registry, settings=settings, presence=presence)
    transport = make_transport(settings, service, connector=connector)
    logger.debug("Sync context %s using %s", service.origin_id, type(transport).__name__)
    return SyncContext(service, transport)
