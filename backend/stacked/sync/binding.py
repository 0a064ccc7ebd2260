"""Reactive binding of one storage key to an in-memory value.

A :class:`StorageBinding` hydrates from storage, writes every update through
to storage, re-publishes it via the sync service, and absorbs snapshots that
other contexts publish for its topic.

Hydration precedence is *write-wins*: once :meth:`StorageBinding.set` has
run, a later :meth:`StorageBinding.hydrate` marks the binding hydrated but
keeps the caller's value.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any
from typing import Callable
from typing import Generic
from typing import Iterator
from typing import List
from typing import Optional
from typing import TypeVar
from typing import Union

from stacked.models.enums import Channel
from stacked.models.enums import SyncAction
from stacked.models.enums import SyncTopic
from stacked.schemas.sync import SyncEvent
from stacked.sync.service import SyncService

logger = logging.getLogger(__name__)

T = TypeVar("T")

Updater = Union[T, Callable[[T], T]]


class StorageBinding(Generic[T]):
    """One storage key bound to reactive state."""

    def __init__(self, service: SyncService, key: str, default: T, *, topic: Optional[SyncTopic] = None):
        self.service = service
        self.key = key
        self.topic = SyncTopic(topic) if topic is not None else service.registry.topic_for(key)
        self._value: T = copy.deepcopy(default)
        self._hydrated = False
        self._written = False
        self._closed = False
        self._watchers: List[Callable[[T], None]] = []
        service.on(Channel.SYNC, self._handle_sync)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def value(self) -> T:
        return self._value

    @property
    def is_hydrated(self) -> bool:
        return self._hydrated

    def __iter__(self) -> Iterator[Any]:
        # value, set_value, is_hydrated = binding
        return iter((self._value, self.set, self._hydrated))

    def watch(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Call *callback* with the new value after every change.

        Returns a function that removes the watcher.
        """
        self._watchers.append(callback)

        def _unwatch() -> None:
            if callback in self._watchers:
                self._watchers.remove(callback)

        return _unwatch

    def _notify(self) -> None:
        for callback in list(self._watchers):
            try:
                callback(self._value)
            except Exception:
                logger.exception("Watcher for '%s' failed", self.key)

    # ------------------------------------------------------------------
    # Storage access (all guarded)
    # ------------------------------------------------------------------

    @property
    def _storage(self):
        return self.service.host.storage

    def _read(self) -> Optional[str]:
        if self._storage is None:
            return None
        try:
            return self._storage.get(self.key)
        except Exception:
            logger.exception("Error reading storage key '%s'", self.key)
            return None

    def _write(self, value: T) -> bool:
        if self._storage is None:
            return False
        try:
            raw = json.dumps(value)
            self._storage.set(self.key, raw)
            self.service.record_write(self.key, raw)
            return True
        except (TypeError, ValueError) as exc:
            logger.error("Value for '%s' is not JSON-serializable: %s", self.key, exc)
        except Exception:
            logger.exception("Error writing storage key '%s'", self.key)
        return False

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def hydrate(self) -> T:
        """Load the stored value, if any.  Never emits a sync event."""
        if self._hydrated:
            return self._value

        raw = self._read()
        if raw and not self._written:
            try:
                self._value = json.loads(raw)
                self._notify()
            except ValueError as exc:
                logger.warning("Stored value for '%s' is not valid JSON; using default: %s", self.key, exc)
        elif raw and self._written:
            logger.debug("Hydration of '%s' skipped: value was set before load completed", self.key)

        self._hydrated = True
        return self._value

    def set(self, value: Updater) -> T:
        """Replace the value (or derive it from the previous one) and publish it."""
        if self._closed:
            logger.warning("set() on closed binding '%s' ignored", self.key)
            return self._value

        new_value = value(self._value) if callable(value) else value
        self._value = new_value
        self._written = True
        self._notify()

        self._write(new_value)
        self.service.emit_sync_event(self.topic, SyncAction.UPDATE, new_value)
        return new_value

    def _handle_sync(self, event: SyncEvent) -> None:
        if event.topic != self.topic or event.origin_id == self.service.origin_id:
            return
        # Absorption is terminal: write through, never re-emit.
        self._value = event.payload
        self._written = True
        self._write(event.payload)
        self._notify()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.service.off(Channel.SYNC, self._handle_sync)
        self._watchers.clear()


def bind(
    service: SyncService,
    key: str,
    default: T,
    *,
    hydrate: bool = True,
    strict: bool = False,
) -> StorageBinding[T]:
    """Bind *key* to reactive state on *service*.

    With ``strict=True`` a key that has no explicit topic mapping raises
    :class:`~stacked.sync.errors.UnmappedStorageKeyError` instead of falling
    back to the default topic.
    """
    if strict:
        service.registry.validate([key])
    binding = StorageBinding(service, key, default)
    if hydrate:
        binding.hydrate()
    return binding
