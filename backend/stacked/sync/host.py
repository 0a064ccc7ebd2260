"""Host environment objects handed to the sync core.

An :class:`Origin` is what a browser calls an origin: one persistent store,
one storage-signal fan-out and one broadcast hub.  Each open context (a tab, a
worker process, a test instance) gets a :class:`Host` from it.  A ``Host``
with no primitives at all models server-side execution, where the sync core
must degrade to a local no-op instead of failing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from stacked.sync.broadcast import BroadcastHub
from stacked.sync.storage import LocalStore
from stacked.sync.storage import MemoryStore
from stacked.sync.storage import SignalBus
from stacked.sync.storage import StorageArea


@dataclass
class Host:
    """Primitives available to one context.  Any of them may be missing."""

    storage: Optional[StorageArea] = None
    broadcast: Optional[BroadcastHub] = None

    @classmethod
    def server_side(cls) -> "Host":
        return cls()

    @property
    def has_storage(self) -> bool:
        return self.storage is not None

    @property
    def has_broadcast(self) -> bool:
        return self.broadcast is not None

    def close(self) -> None:
        if self.storage is not None:
            self.storage.detach()


class Origin:
    """Shared state behind every context of one origin."""

    def __init__(self, store: Optional[LocalStore] = None, *, broadcast: bool = True):
        self.store = store if store is not None else MemoryStore()
        self.signals = SignalBus()
        self.hub: Optional[BroadcastHub] = BroadcastHub() if broadcast else None

    def open_context(self, *, broadcast: bool = True) -> Host:
        """Return a new context attached to this origin.

        ``broadcast=False`` models a context whose runtime lacks the
        broadcast primitive even though the origin has one.
        """
        return Host(
            storage=StorageArea(self.store, self.signals),
            broadcast=self.hub if broadcast else None,
        )
