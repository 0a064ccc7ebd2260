from .enums import Channel
from .enums import DeliveryPath
from .enums import PresenceAction
from .enums import SyncAction
from .enums import SyncState
from .enums import SyncTopic

__all__ = [
    "Channel",
    "DeliveryPath",
    "PresenceAction",
    "SyncAction",
    "SyncState",
    "SyncTopic",
]
