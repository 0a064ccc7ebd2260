from .event_bus import EventBus
from .event_bus import Listener

__all__ = ["EventBus", "Listener"]
