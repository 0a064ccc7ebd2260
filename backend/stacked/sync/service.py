"""Cross-context synchronization service.

One :class:`SyncService` runs per context.  It publishes whole-collection
snapshots (:class:`~stacked.schemas.sync.SyncEvent`) and absorbs the ones
other contexts publish, over three independent delivery paths:

1. the origin's broadcast channel (immediate, live contexts only);
2. the storage signal fired when another context rewrites the well-known
   "last sync" slot;
3. a polling timer that re-reads the slot and every known topic key, which
   also catches writes that bypassed ``emit_sync_event`` entirely.

Paths are unordered relative to each other.  Idempotence comes from the
filters applied in :meth:`SyncService._apply`: self-originated events are
ignored, an ``(origin_id, emitted_at)`` pair is applied at most once, and a
topic never moves back to an older ``emitted_at``.

Every runtime failure is logged and contained; a missing host primitive only
degrades propagation, never the local listener API.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import secrets
import string
from collections import deque
from typing import Any
from typing import Callable
from typing import Deque
from typing import Dict
from typing import Optional
from typing import Set
from typing import Tuple
from typing import Union

from pydantic import ValidationError

from stacked.config import Settings
from stacked.config import get_settings
from stacked.constants import EXTERNAL_ORIGIN
from stacked.constants import SEEN_EVENTS_WINDOW
from stacked.events import EventBus
from stacked.events import Listener
from stacked.metrics import sync_events_applied_total
from stacked.metrics import sync_events_dropped_total
from stacked.metrics import sync_events_emitted_total
from stacked.models.enums import Channel
from stacked.models.enums import DeliveryPath
from stacked.models.enums import SyncAction
from stacked.models.enums import SyncState
from stacked.models.enums import SyncTopic
from stacked.schemas.sync import SyncEvent
from stacked.services.presence import PresenceReporter
from stacked.sync.broadcast import BroadcastChannel
from stacked.sync.host import Host
from stacked.sync.host import Origin
from stacked.sync.topics import TopicRegistry
from stacked.utils.time import now_ms

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_origin_id() -> str:
    """Return a fresh per-load session identity (never persisted)."""
    return "user_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))


def _digest(raw: Optional[str]) -> str:
    if raw is None:
        return ""
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


class SyncService:
    """Per-context publish/subscribe coordinator for :class:`SyncEvent`."""

    def __init__(
        self,
        host: Optional[Host] = None,
        *,
        registry: Optional[TopicRegistry] = None,
        settings: Optional[Settings] = None,
        presence: Optional[PresenceReporter] = None,
        clock: Callable[[], int] = now_ms,
        origin_id: Optional[str] = None,
    ):
        self.host = host if host is not None else Host.server_side()
        self.registry = registry if registry is not None else TopicRegistry()
        self.settings = settings if settings is not None else get_settings()
        self.origin_id = origin_id or generate_origin_id()
        self.state = SyncState.UNINITIALIZED

        self._clock = clock
        self._bus = EventBus()
        self._channel: Optional[BroadcastChannel] = None
        self._signal_attached = False
        self._poll_task: Optional[asyncio.Task] = None
        self._presence = presence

        self._last_sync_time = 0
        # topic -> newest emitted_at applied (local or remote)
        self._last_applied: Dict[SyncTopic, int] = {}
        # topic -> digest of the raw value this context last saw or wrote for its key
        self._observed: Dict[SyncTopic, str] = {}
        # digest of the sync slot as of the last read or write by this context
        self._slot_digest: Optional[str] = None
        self._seen: Set[Tuple[str, int]] = set()
        self._seen_order: Deque[Tuple[str, int]] = deque()

    @classmethod
    def create_local(cls, origin: Optional[Origin] = None, *, broadcast: bool = True, **kwargs: Any) -> "SyncService":
        """Build a service on a fresh context of *origin* (a new one if omitted)."""
        origin = origin if origin is not None else Origin()
        return cls(origin.open_context(broadcast=broadcast), **kwargs)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.state is SyncState.ACTIVE

    @property
    def has_channel(self) -> bool:
        return self._channel is not None

    @property
    def storage_key(self) -> str:
        return self.settings.sync_storage_key

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Open the delivery paths.  Idempotent; never raises."""
        if self.state is SyncState.ACTIVE:
            return

        self.state = SyncState.INITIALIZING
        try:
            self._open_channel()
            self._attach_signal()
            self._snapshot_topics()
            self._start_timers()
        except Exception:
            logger.exception("Failed to initialize sync service %s; continuing local-only", self.origin_id)

        self.state = SyncState.ACTIVE
        logger.info(
            "Sync service %s active (broadcast=%s, storage=%s, polling=%s)",
            self.origin_id,
            self._channel is not None,
            self.host.has_storage,
            self._poll_task is not None,
        )
        self._bus.publish(Channel.CONNECTED, {"userId": self.origin_id})

    def _open_channel(self) -> None:
        if not self.host.has_broadcast:
            logger.warning("Broadcast channel not supported in this host; relying on storage polling")
            return
        self._channel = self.host.broadcast.open(self.settings.sync_channel_name)
        self._channel.on_message(self._handle_broadcast)
        logger.debug("Broadcast channel '%s' opened", self.settings.sync_channel_name)

    def _attach_signal(self) -> None:
        if not self.host.has_storage:
            logger.info("No local storage in this host; sync service runs local-only")
            return
        self.host.storage.add_signal_handler(self._handle_storage_signal)
        self._signal_attached = True

    def _start_timers(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; polling and heartbeat timers disabled")
            return

        if self.host.has_storage:
            self._poll_task = loop.create_task(self._poll_loop())

        if self._presence is None and self.settings.presence_url and self.host.has_storage:
            self._presence = PresenceReporter(
                self.origin_id,
                self.settings.presence_url,
                interval=self.settings.heartbeat_interval,
            )
        if self._presence is not None:
            # Presence is reported under this session's identity, injected or not.
            self._presence.client_id = self.origin_id
            self._presence.on_count = self._handle_user_count
            self._presence.start()

    def destroy(self) -> None:
        """Release timers, channel and listeners.  Safe to call repeatedly."""
        if self.state is SyncState.DESTROYED:
            return
        was_active = self.state is SyncState.ACTIVE

        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

        if self._presence is not None:
            self._presence.stop()

        if self._channel is not None:
            self._channel.close()
            self._channel = None

        if self._signal_attached and self.host.storage is not None:
            self.host.storage.remove_signal_handler(self._handle_storage_signal)
            self._signal_attached = False

        if was_active:
            self._bus.publish(Channel.DISCONNECTED, {"userId": self.origin_id})

        self._bus.clear()
        self.state = SyncState.DESTROYED
        logger.info("Sync service %s destroyed", self.origin_id)

    # ------------------------------------------------------------------
    # Listener API
    # ------------------------------------------------------------------

    def on(self, channel: Union[Channel, str], callback: Listener) -> "SyncService":
        self._bus.subscribe(channel, callback)
        return self

    def off(self, channel: Union[Channel, str], callback: Listener) -> "SyncService":
        self._bus.unsubscribe(channel, callback)
        return self

    def get_last_sync_time(self) -> int:
        return self._last_sync_time

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _next_timestamp(self, topic: SyncTopic) -> int:
        # Strictly increasing per topic even when the clock has not ticked.
        return max(self._clock(), self._last_applied.get(topic, 0) + 1)

    def emit_sync_event(
        self,
        topic: Union[SyncTopic, str],
        action: Union[SyncAction, str] = SyncAction.UPDATE,
        payload: Any = None,
    ) -> Optional[SyncEvent]:
        """Publish a full snapshot of *topic* to every context of the origin.

        Local ``sync`` listeners run first and synchronously, then the event
        is posted on the broadcast channel and written to the sync slot.
        Returns *None* (and does nothing) unless the service is active.
        """
        if self.state is not SyncState.ACTIVE:
            logger.debug("emit_sync_event(%s) ignored in state %s", topic, self.state.value)
            return None

        topic = SyncTopic(topic)
        event = SyncEvent(
            topic=topic,
            action=SyncAction(action),
            payload=payload,
            origin_id=self.origin_id,
            emitted_at=self._next_timestamp(topic),
        )
        self._remember(event)
        self._last_applied[topic] = event.emitted_at
        self._last_sync_time = self._clock()
        sync_events_emitted_total.labels(topic=topic.value).inc()

        self._bus.publish(Channel.SYNC, event)

        try:
            wire = event.to_wire()
        except (ValueError, TypeError) as exc:
            logger.error("Sync payload for %s is not JSON-serializable; not propagated: %s", topic.value, exc)
            return event

        if self._channel is not None:
            try:
                self._channel.post({"eventName": Channel.SYNC.value, "data": wire})
            except Exception:
                logger.exception("Failed to post sync event on broadcast channel")

        if self.host.storage is not None:
            raw_slot = json.dumps(wire)
            try:
                self.host.storage.set(self.storage_key, raw_slot)
                self._slot_digest = _digest(raw_slot)
            except Exception:
                logger.exception("Failed to write sync slot '%s'", self.storage_key)

        logger.debug("Sync event emitted: %s %s @%d", topic.value, event.action.value, event.emitted_at)
        return event

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def _handle_broadcast(self, message: Any) -> None:
        if not isinstance(message, dict) or message.get("eventName") != Channel.SYNC.value:
            logger.debug("Ignoring non-sync broadcast message: %r", message)
            return
        self._receive(message.get("data"), DeliveryPath.BROADCAST)

    def _handle_storage_signal(self, key: str, new_value: Optional[str]) -> None:
        if key != self.storage_key or not new_value:
            return
        self._slot_digest = _digest(new_value)
        self._receive(new_value, DeliveryPath.SIGNAL)

    def _handle_user_count(self, count: int) -> None:
        self._bus.publish(Channel.USERS, count)

    def _receive(self, raw: Any, path: DeliveryPath) -> bool:
        if self.state is not SyncState.ACTIVE:
            return False
        try:
            event = SyncEvent.from_wire(raw)
        except ValidationError as exc:
            sync_events_dropped_total.labels(reason="malformed").inc()
            logger.warning("Dropping malformed sync envelope from %s path: %s", path.value, exc)
            return False
        return self._apply(event, path)

    def receive(self, event: SyncEvent, path: DeliveryPath = DeliveryPath.SOCKET) -> bool:
        """Apply an event that arrived through an external transport."""
        if self.state is not SyncState.ACTIVE:
            return False
        return self._apply(event, path)

    def _remember(self, event: SyncEvent) -> None:
        key = event.dedup_key
        if key in self._seen:
            return
        self._seen.add(key)
        self._seen_order.append(key)
        while len(self._seen_order) > SEEN_EVENTS_WINDOW:
            self._seen.discard(self._seen_order.popleft())

    def _apply(self, event: SyncEvent, path: DeliveryPath) -> bool:
        if event.origin_id == self.origin_id:
            sync_events_dropped_total.labels(reason="self_origin").inc()
            return False
        if event.dedup_key in self._seen:
            sync_events_dropped_total.labels(reason="duplicate").inc()
            return False
        if event.emitted_at <= self._last_applied.get(event.topic, 0):
            self._remember(event)
            sync_events_dropped_total.labels(reason="stale").inc()
            logger.debug("Skipping stale %s snapshot @%d via %s", event.topic.value, event.emitted_at, path.value)
            return False

        self._remember(event)
        self._last_applied[event.topic] = event.emitted_at
        self._last_sync_time = self._clock()

        self._bus.publish(Channel.SYNC, event)

        sync_events_applied_total.labels(topic=event.topic.value, path=path.value).inc()
        logger.debug("Applied %s from %s via %s", event.topic.value, event.origin_id, path.value)
        return True

    # ------------------------------------------------------------------
    # Polling safety net
    # ------------------------------------------------------------------

    def _snapshot_topic(self, topic: SyncTopic) -> None:
        key = self.registry.key_for(topic)
        if key is None or self.host.storage is None:
            return
        try:
            self._observed[topic] = _digest(self.host.storage.get(key))
        except Exception:
            logger.exception("Failed to read storage key '%s'", key)

    def _snapshot_topics(self) -> None:
        if self.host.storage is None:
            return
        try:
            self._slot_digest = _digest(self.host.storage.get(self.storage_key))
        except Exception:
            logger.exception("Failed to read sync slot '%s'", self.storage_key)
        for _key, topic in self.registry.items():
            self._snapshot_topic(topic)

    def record_write(self, key: str, raw: Optional[str]) -> None:
        """Note that this context itself stored *raw* under the polled *key*.

        The poller compares against what this context wrote, never against a
        re-read of the store: a concurrent writer's value must still look like
        a change on the next cycle.
        """
        if key not in self.registry:
            return
        self._observed[self.registry.topic_for(key)] = _digest(raw)

    def poll_once(self) -> int:
        """Run one polling cycle; return how many events were applied."""
        if self.state is not SyncState.ACTIVE or self.host.storage is None:
            return 0

        applied = 0
        storage = self.host.storage

        try:
            raw_slot = storage.get(self.storage_key)
        except Exception:
            logger.exception("Failed to read sync slot '%s'", self.storage_key)
            raw_slot = None
        if raw_slot:
            slot_digest = _digest(raw_slot)
            if slot_digest != self._slot_digest:
                self._slot_digest = slot_digest
                if self._receive(raw_slot, DeliveryPath.POLL):
                    applied += 1

        for key, topic in list(self.registry.items()):
            try:
                raw = storage.get(key)
            except Exception:
                logger.exception("Failed to read storage key '%s'", key)
                continue

            digest = _digest(raw)
            if digest == self._observed.get(topic):
                continue
            if raw is None:
                # Removal is not a snapshot; nothing to propagate.
                self._observed[topic] = digest
                continue

            try:
                payload = json.loads(raw)
            except ValueError as exc:
                # Remember the bad value so the same garbage is not re-logged every cycle.
                self._observed[topic] = digest
                sync_events_dropped_total.labels(reason="malformed").inc()
                logger.warning("Storage key '%s' holds malformed JSON; skipping: %s", key, exc)
                continue

            # A binding that absorbs the event overrides this via record_write().
            self._observed[topic] = digest
            event = SyncEvent(
                topic=topic,
                action=SyncAction.UPDATE,
                payload=payload,
                origin_id=EXTERNAL_ORIGIN,
                emitted_at=self._next_timestamp(topic),
            )
            if self._apply(event, DeliveryPath.POLL):
                applied += 1

        return applied

    async def _poll_loop(self) -> None:
        interval = self.settings.poll_interval
        while self.state in (SyncState.INITIALIZING, SyncState.ACTIVE):
            await asyncio.sleep(interval)
            try:
                self.poll_once()
            except Exception:
                logger.exception("Error in sync polling loop")
