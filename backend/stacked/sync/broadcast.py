"""In-process broadcast channel between contexts of one origin.

Semantics follow the browser ``BroadcastChannel``:

* messages reach every *other* open handle with the same name, never the
  poster;
* delivery is asynchronous (scheduled on the running event loop) and
  at-most-once;
* nothing is buffered – a handle opened after a post never sees it.

Messages must be JSON-serializable; they are encoded on post and decoded per
receiver, so receivers never share mutable state with the sender.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], None]


class ChannelClosedError(RuntimeError):
    """Posting on a closed channel handle."""


class BroadcastChannel:
    """A single context's handle on a named channel."""

    def __init__(self, hub: "BroadcastHub", name: str):
        self.name = name
        self._hub = hub
        self._handler: Optional[MessageHandler] = None
        self.closed = False

    def on_message(self, handler: Optional[MessageHandler]) -> None:
        self._handler = handler

    def post(self, message: Any) -> None:
        if self.closed:
            raise ChannelClosedError(f"Broadcast channel '{self.name}' is closed")
        self._hub._post(self, json.dumps(message))

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._handler = None
            self._hub._remove(self)

    def _deliver(self, raw: str) -> None:
        # The handle may have been closed between scheduling and delivery.
        if self.closed or self._handler is None:
            return
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable broadcast message on '%s'", self.name)
            return
        try:
            self._handler(message)
        except Exception:
            logger.exception("Broadcast handler failed on channel '%s'", self.name)


class BroadcastHub:
    """Origin-wide registry of open channel handles."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._channels: Dict[str, List[BroadcastChannel]] = {}

    def open(self, name: str) -> BroadcastChannel:
        channel = BroadcastChannel(self, name)
        self._channels.setdefault(name, []).append(channel)
        return channel

    def open_count(self, name: str) -> int:
        return len(self._channels.get(name, ()))

    def _remove(self, channel: BroadcastChannel) -> None:
        handles = self._channels.get(channel.name)
        if handles and channel in handles:
            handles.remove(channel)
            if not handles:
                del self._channels[channel.name]

    def _post(self, sender: BroadcastChannel, raw: str) -> None:
        receivers = [ch for ch in self._channels.get(sender.name, ()) if ch is not sender]
        if not receivers:
            return

        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None

        for receiver in receivers:
            if loop is not None and not loop.is_closed():
                loop.call_soon(receiver._deliver, raw)
            else:
                # No loop to defer onto (plain synchronous caller); deliver inline.
                receiver._deliver(raw)
