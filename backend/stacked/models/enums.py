"""Shared *Enum* definitions for the sync core and its HTTP surface.

The Enums inherit from ``str`` so that:

* JSON serialisation remains unchanged (values render as plain strings).
* Equality checks against raw literals (``topic == "creators"``) keep working,
  which matters for envelopes read back from storage.
"""

from __future__ import annotations

from enum import Enum


class SyncTopic(str, Enum):
    CREATORS = "creators"
    CONTENT = "content"
    CATEGORIES = "categories"
    SETTINGS = "settings"
    EMPLOYEES = "employees"
    STRATEGIES = "strategies"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Channel(str, Enum):
    """Internal listener channels exposed by the sync service."""

    SYNC = "sync"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    USERS = "users"


class PresenceAction(str, Enum):
    CONNECT = "connect"
    HEARTBEAT = "heartbeat"
    DISCONNECT = "disconnect"


class SyncState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    DESTROYED = "destroyed"


class DeliveryPath(str, Enum):
    """Which transport path delivered an event (metrics label)."""

    LOCAL = "local"
    BROADCAST = "broadcast"
    SIGNAL = "signal"
    POLL = "poll"
    SOCKET = "socket"
