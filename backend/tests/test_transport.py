import pytest
from conftest import FakeRelaySocket
from conftest import flush
from conftest import make_settings

from stacked.models.enums import Channel
from stacked.models.enums import SyncAction
from stacked.models.enums import SyncTopic
from stacked.schemas.sync import SyncEvent
from stacked.sync.host import Host
from stacked.sync.service import SyncService
from stacked.sync.transport import LocalTransport
from stacked.sync.transport import SocketTransport
from stacked.sync.transport import make_transport


class Connector:
    def __init__(self, socket=None, error=None):
        self.socket = socket or FakeRelaySocket()
        self.error = error
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.socket


def _remote_frame(origin_id="user_remote1", emitted_at=10**13, payload=None):
    event = SyncEvent(topic=SyncTopic.CONTENT, payload=payload or ["remote"], origin_id=origin_id, emitted_at=emitted_at)
    return {"event": "sync", "data": event.to_wire()}


def test_make_transport_defaults_to_local():
    service = SyncService(Host.server_side(), settings=make_settings())
    assert isinstance(make_transport(service.settings, service), LocalTransport)


def test_make_transport_socket_uses_ws_url():
    settings = make_settings(sync_transport="socket", sync_server_url="https://sync.example.com/")
    service = SyncService(Host.server_side(), settings=settings)

    transport = make_transport(settings, service)

    assert isinstance(transport, SocketTransport)
    assert transport.url == "wss://sync.example.com/api/socket"
    assert transport.origin_id == service.origin_id


def test_make_transport_socket_requires_url():
    settings = make_settings(sync_transport="socket")
    service = SyncService(Host.server_side(), settings=settings)
    with pytest.raises(ValueError):
        make_transport(settings, service)


@pytest.mark.asyncio
class TestLocalTransport:
    async def test_connect_emit_disconnect(self, origin, settings):
        service = SyncService(origin.open_context(), settings=settings)
        transport = LocalTransport(service)
        events, disconnected = [], []
        transport.on(Channel.SYNC, events.append)
        transport.on(Channel.DISCONNECTED, disconnected.append)

        assert await transport.connect() is True
        event = await transport.emit(SyncTopic.SETTINGS, SyncAction.UPDATE, {"a": 1})
        await transport.disconnect()

        assert events == [event]
        assert disconnected == [{"userId": service.origin_id}]

    async def test_server_side_connect_reports_degraded(self, settings):
        transport = LocalTransport(SyncService(Host.server_side(), settings=settings))
        assert await transport.connect() is False
        await transport.disconnect()


@pytest.mark.asyncio
class TestSocketTransport:
    async def _connected(self, settings):
        service = SyncService(Host.server_side(), settings=settings)
        service.initialize()
        connector = Connector()
        transport = SocketTransport("ws://relay.test/api/socket", service=service, connector=connector)
        assert await transport.connect() is True
        return service, transport, connector

    async def test_connect_announces_session(self, settings):
        service, transport, connector = await self._connected(settings)

        assert connector.urls == [f"ws://relay.test/api/socket?userId={service.origin_id}"]
        assert transport.connected
        await transport.disconnect()

    async def test_local_emits_are_forwarded(self, settings):
        service, transport, connector = await self._connected(settings)

        event = await transport.emit(SyncTopic.CREATORS, SyncAction.UPDATE, [{"id": 1}])
        await flush()

        assert connector.socket.sent == [{"event": "sync", "data": event.to_wire()}]
        await transport.disconnect()

    async def test_remote_frames_reach_the_service(self, settings):
        service, transport, connector = await self._connected(settings)
        events, users = [], []
        transport.on(Channel.SYNC, events.append)
        transport.on(Channel.USERS, users.append)

        connector.socket.feed(_remote_frame())
        connector.socket.feed({"event": "users", "data": 3})
        await flush()

        assert [e.payload for e in events] == [["remote"]]
        assert users == [3]
        # Received events are not echoed back to the relay.
        assert connector.socket.sent == []
        await transport.disconnect()

    async def test_own_and_malformed_frames_are_ignored(self, settings):
        service, transport, connector = await self._connected(settings)
        events = []
        transport.on(Channel.SYNC, events.append)

        connector.socket.feed(_remote_frame(origin_id=service.origin_id))
        connector.socket.feed("{not json")
        connector.socket.feed({"event": "sync", "data": {"type": "unknown"}})
        connector.socket.feed({"event": "something-else"})
        await flush()

        assert events == []
        await transport.disconnect()

    async def test_disconnect_announced_once(self, settings):
        service, transport, connector = await self._connected(settings)
        down = []
        transport.on(Channel.DISCONNECTED, down.append)

        connector.socket.hang_up()
        await flush()
        assert not transport.connected
        await transport.disconnect()

        assert down == [{"userId": service.origin_id}]

    async def test_disconnect_closes_socket(self, settings):
        service, transport, connector = await self._connected(settings)

        await transport.disconnect()
        await flush()

        assert connector.socket.closed
        assert not transport.connected

    async def test_connect_failure_is_degraded_not_fatal(self, settings):
        service = SyncService(Host.server_side(), settings=settings)
        service.initialize()
        transport = SocketTransport("ws://relay.test/api/socket", service=service, connector=Connector(error=OSError("refused")))

        assert await transport.connect() is False
        assert not transport.connected
        # The local listener API keeps working.
        assert await transport.emit(SyncTopic.SETTINGS, SyncAction.UPDATE, {}) is not None

    async def test_standalone_transport_emits_and_receives(self):
        connector = Connector()
        transport = SocketTransport("ws://relay.test/api/socket", origin_id="user_solo123", connector=connector)
        events = []
        transport.on(Channel.SYNC, events.append)
        await transport.connect()

        sent = await transport.emit(SyncTopic.CONTENT, SyncAction.UPDATE, ["mine"])
        connector.socket.feed(_remote_frame())
        await flush()

        assert connector.socket.sent == [{"event": "sync", "data": sent.to_wire()}]
        assert [e.origin_id for e in events] == ["user_solo123", "user_remote1"]
        await transport.disconnect()
