import asyncio
import json

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from stacked.config import Settings
from stacked.main import create_app
from stacked.sync.host import Origin
from stacked.sync.service import SyncService


def make_settings(**overrides) -> Settings:
    values = dict(
        testing=True,
        log_level="WARNING",
        service_name="stacked-sync-test",
        sync_channel_name="stacked-sync",
        sync_storage_key="stacked-sync-data",
        # Timers are driven by hand through poll_once() in tests.
        poll_interval=3600.0,
        heartbeat_interval=3600.0,
        sync_transport="local",
        sync_server_url=None,
        presence_stale_seconds=300.0,
        local_store_url="sqlite:///:memory:",
        allowed_cors_origins="",
    )
    values.update(overrides)
    return Settings(**values)


async def flush(rounds: int = 5) -> None:
    """Let call_soon callbacks (broadcast deliveries) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


class FakeRelaySocket:
    """Client-side stand-in for a ``websockets`` connection."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    def feed(self, frame) -> None:
        self._incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def hang_up(self) -> None:
        self._incoming.put_nowait(None)

    async def close(self):
        self.closed = True
        self.hang_up()

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self._incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def origin():
    return Origin()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def make_service(origin, settings):
    """Factory for services attached to the shared *origin*; destroyed on teardown.

    Async so that timers are created and cancelled on the test's event loop.
    """
    created = []

    def _make(*, broadcast: bool = True, target_origin=None, **kwargs):
        kwargs.setdefault("settings", settings)
        service = SyncService.create_local(target_origin or origin, broadcast=broadcast, **kwargs)
        created.append(service)
        return service

    yield _make

    for service in created:
        service.destroy()


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
