"""Local-first synchronization core.

Typical wiring::

    origin = Origin(SqlStore.from_url(settings.local_store_url))
    ctx = create_sync_context(origin.open_context(), settings)
    await ctx.start()
    creators = ctx.bind("stacked-creators", [])
    creators.set(lambda rows: rows + [{"id": 1, "name": "X"}])
"""

from .binding import StorageBinding
from .binding import bind
from .broadcast import BroadcastChannel
from .broadcast import BroadcastHub
from .context import SyncContext
from .context import create_sync_context
from .errors import SyncError
from .errors import UnmappedStorageKeyError
from .host import Host
from .host import Origin
from .service import SyncService
from .storage import LocalStore
from .storage import MemoryStore
from .storage import SqlStore
from .storage import StorageArea
from .topics import TopicRegistry
from .topics import map_key_to_topic
from .transport import LocalTransport
from .transport import SocketTransport
from .transport import SyncTransport
from .transport import make_transport

__all__ = [
    "BroadcastChannel",
    "BroadcastHub",
    "Host",
    "LocalStore",
    "LocalTransport",
    "MemoryStore",
    "Origin",
    "SocketTransport",
    "SqlStore",
    "StorageArea",
    "StorageBinding",
    "SyncContext",
    "SyncError",
    "SyncService",
    "SyncTransport",
    "TopicRegistry",
    "UnmappedStorageKeyError",
    "bind",
    "create_sync_context",
    "make_transport",
    "map_key_to_topic",
]
