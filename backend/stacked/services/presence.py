"""Presence bookkeeping: the server-side registry and the client reporter.

Both halves are purely observational.  The registry keeps an approximate
count of live sessions; the reporter feeds it and relays the count back to
local listeners for display.  Neither may ever influence sync correctness, so
every failure here is logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable
from typing import Dict
from typing import Optional

import httpx

from stacked import __version__
from stacked.constants import PRESENCE_STALE_SECONDS
from stacked.metrics import presence_connected_clients
from stacked.metrics import presence_heartbeat_failures_total
from stacked.models.enums import PresenceAction

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Server side
# ---------------------------------------------------------------------------


@dataclass
class PresenceRecord:
    last_seen: float
    user_agent: str


class PresenceRegistry:
    """In-memory map of session id -> last heartbeat.

    Stale entries are evicted lazily on every read and write; there is no
    background sweeper.
    """

    def __init__(self, stale_after: float = PRESENCE_STALE_SECONDS, clock: Callable[[], float] = time.time):
        self.stale_after = stale_after
        self._clock = clock
        self._clients: Dict[str, PresenceRecord] = {}

    def _evict_stale(self) -> None:
        now = self._clock()
        stale = [cid for cid, rec in self._clients.items() if now - rec.last_seen > self.stale_after]
        for cid in stale:
            del self._clients[cid]
        if stale:
            logger.debug("Evicted %d stale presence record(s)", len(stale))

    def touch(self, client_id: str, action: Optional[str], user_agent: str = "Unknown") -> int:
        """Apply *action* for *client_id* and return the live-session count.

        Unknown actions only trigger eviction.
        """
        self._evict_stale()
        now = self._clock()

        if action == PresenceAction.CONNECT:
            self._clients[client_id] = PresenceRecord(last_seen=now, user_agent=user_agent)
        elif action == PresenceAction.HEARTBEAT:
            record = self._clients.get(client_id)
            if record is not None:
                record.last_seen = now
            else:
                self._clients[client_id] = PresenceRecord(last_seen=now, user_agent=user_agent)
        elif action == PresenceAction.DISCONNECT:
            self._clients.pop(client_id, None)
        else:
            logger.debug("Ignoring unknown presence action %r from %s", action, client_id)

        count = len(self._clients)
        presence_connected_clients.set(count)
        return count

    def count(self) -> int:
        self._evict_stale()
        count = len(self._clients)
        presence_connected_clients.set(count)
        return count

    def get(self, client_id: str) -> Optional[PresenceRecord]:
        self._evict_stale()
        return self._clients.get(client_id)


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------


class PresenceReporter:
    """Periodically POSTs this session's liveness to the presence endpoint."""

    def __init__(
        self,
        client_id: str,
        url: str,
        *,
        interval: float = 30.0,
        on_count: Optional[Callable[[int], None]] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.url = url
        self.interval = interval
        self.on_count = on_count
        self._timeout = timeout
        self._transport = transport
        self._announced = False
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def _send(self, action: PresenceAction) -> Optional[int]:
        headers = {"User-Agent": f"stacked-sync/{__version__}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    self.url,
                    json={"clientId": self.client_id, "action": action.value},
                    headers=headers,
                )
                resp.raise_for_status()
                return int(resp.json()["connectedClients"])
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, KeyError, TypeError) as exc:
            presence_heartbeat_failures_total.inc()
            logger.warning("Presence %s for %s failed: %s", action.value, self.client_id, exc)
            return None

    async def beat(self) -> Optional[int]:
        """Send one ``connect``/``heartbeat`` and relay the resulting count."""
        action = PresenceAction.HEARTBEAT if self._announced else PresenceAction.CONNECT
        self._announced = True
        count = await self._send(action)
        if count is not None and self.on_count is not None:
            try:
                self.on_count(count)
            except Exception:
                logger.exception("Presence count listener failed")
        return count

    async def disconnect(self) -> None:
        await self._send(PresenceAction.DISCONNECT)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.beat()
            except Exception:
                logger.exception("Error in presence heartbeat loop")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start the heartbeat loop on the running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.debug("Presence reporter started for %s", self.client_id)

    def stop(self) -> Optional[asyncio.Task]:
        """Cancel the loop and fire a best-effort ``disconnect``.

        Returns the disconnect task so callers that care can await it; the
        request is abandoned if the loop shuts down first.
        """
        was_running = self._running
        self._running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if not was_running:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        return loop.create_task(self.disconnect())
