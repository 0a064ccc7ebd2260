"""Local persistent key/value stores and the cross-context storage signal.

A :class:`LocalStore` is the origin-wide string store.  Contexts never touch it
directly; each one holds a :class:`StorageArea` view.  Writing through a view
notifies every *other* view attached to the same store with ``(key,
new_value)`` – the Python counterpart of the browser ``storage`` event.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC
from abc import abstractmethod
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from sqlalchemy import Engine
from sqlalchemy import select

from stacked.database import db_session
from stacked.database import initialize_database
from stacked.database import make_engine
from stacked.database import make_sessionmaker
from stacked.models.storage import StorageEntry

logger = logging.getLogger(__name__)

StorageSignalHandler = Callable[[str, Optional[str]], None]


class LocalStore(ABC):
    """Abstract origin-scoped string store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored string or *None* when absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store *value* under *key*, replacing any previous value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete *key*; a missing key is not an error."""

    @abstractmethod
    def keys(self) -> List[str]:
        """Return all stored keys."""


class MemoryStore(LocalStore):
    """Process-local store; lost when the process exits."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"LocalStore values must be str, got {type(value).__name__}")
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)


class SqlStore(LocalStore):
    """Durable store kept in the ``local_storage`` table.

    Several processes pointing at the same database file share one origin:
    they see each other's writes on their next read, but receive no signal,
    so cross-process convergence relies on the sync service's poller.
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        self._session_factory = make_sessionmaker(engine)
        initialize_database(engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlStore":
        return cls(make_engine(url))

    def get(self, key: str) -> Optional[str]:
        with db_session(self._session_factory) as session:
            row = session.get(StorageEntry, key)
            return row.value if row is not None else None

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"LocalStore values must be str, got {type(value).__name__}")
        with db_session(self._session_factory) as session:
            row = session.get(StorageEntry, key)
            if row is None:
                session.add(StorageEntry(key=key, value=value))
            else:
                row.value = value

    def remove(self, key: str) -> None:
        with db_session(self._session_factory) as session:
            row = session.get(StorageEntry, key)
            if row is not None:
                session.delete(row)

    def keys(self) -> List[str]:
        with db_session(self._session_factory) as session:
            return list(session.scalars(select(StorageEntry.key)))

    def dispose(self) -> None:
        self._engine.dispose()


class StorageArea:
    """One context's view of a :class:`LocalStore`.

    All views created from the same :class:`SignalBus` form an origin; a
    ``set`` through one view fires the storage signal in all the others.
    """

    def __init__(self, store: LocalStore, signals: "SignalBus"):
        self.store = store
        self._signals = signals
        self._handlers: List[StorageSignalHandler] = []
        signals.attach(self)

    def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    def set(self, key: str, value: str) -> None:
        self.store.set(key, value)
        self._signals.fire(self, key, value)

    def remove(self, key: str) -> None:
        self.store.remove(key)
        self._signals.fire(self, key, None)

    # -- storage signal -------------------------------------------------

    def add_signal_handler(self, handler: StorageSignalHandler) -> None:
        self._handlers.append(handler)

    def remove_signal_handler(self, handler: StorageSignalHandler) -> None:
        self._handlers = [h for h in self._handlers if h != handler]

    def _deliver(self, key: str, new_value: Optional[str]) -> None:
        for handler in list(self._handlers):
            try:
                handler(key, new_value)
            except Exception:
                logger.exception("Storage signal handler failed for key %s", key)

    def detach(self) -> None:
        self._handlers.clear()
        self._signals.detach(self)


class SignalBus:
    """Fans a storage write out to every other attached :class:`StorageArea`.

    Delivery is synchronous – a browser fires ``storage`` events from its own
    task queue, but nothing in the sync core depends on that distinction.
    """

    def __init__(self):
        self._areas: List[StorageArea] = []

    def attach(self, area: StorageArea) -> None:
        if area not in self._areas:
            self._areas.append(area)

    def detach(self, area: StorageArea) -> None:
        if area in self._areas:
            self._areas.remove(area)

    def fire(self, source: StorageArea, key: str, new_value: Optional[str]) -> None:
        for area in list(self._areas):
            if area is not source:
                area._deliver(key, new_value)
