"""Synchronous listener registry used by the sync service.

Unlike a broker, dispatch happens inline on the caller's stack: listeners for
one channel run strictly in registration order and a failing listener is
logged without preventing the remaining ones from running.
"""

import logging
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Union

from stacked.models.enums import Channel

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


def _channel(channel: Union[Channel, str]) -> Channel:
    return channel if isinstance(channel, Channel) else Channel(channel)


class EventBus:
    """Per-service registry of channel listeners."""

    def __init__(self):
        """Initialize an empty event bus."""
        self._subscribers: Dict[Channel, List[Listener]] = {}

    def publish(self, channel: Union[Channel, str], data: Any) -> int:
        """Invoke every listener of *channel* with *data*.

        Args:
            channel: The channel being published on
            data: Event payload handed to each listener

        Returns:
            Number of listeners that completed without raising.
        """
        channel = _channel(channel)
        # Copy so listeners may unsubscribe themselves mid-dispatch
        listeners = list(self._subscribers.get(channel, ()))
        if not listeners:
            return 0

        ok = 0
        for callback in listeners:
            try:
                callback(data)
                ok += 1
            except Exception:
                logger.exception("Error in %s listener %r", channel.value, callback)
        return ok

    def subscribe(self, channel: Union[Channel, str], callback: Listener) -> None:
        """Subscribe *callback* to *channel*.

        The same callable may be registered more than once; each registration
        is invoked separately.
        """
        self._subscribers.setdefault(_channel(channel), []).append(callback)
        logger.debug("Added subscriber for channel %s", channel)

    def unsubscribe(self, channel: Union[Channel, str], callback: Listener) -> None:
        """Remove every registration of *callback* from *channel*."""
        channel = _channel(channel)
        if channel in self._subscribers:
            self._subscribers[channel] = [cb for cb in self._subscribers[channel] if cb != callback]
            logger.debug("Removed subscriber for channel %s", channel)

            # Clean up empty subscriber lists
            if not self._subscribers[channel]:
                del self._subscribers[channel]

    def listener_count(self, channel: Union[Channel, str]) -> int:
        return len(self._subscribers.get(_channel(channel), ()))

    def clear(self) -> None:
        self._subscribers.clear()
