"""Tests for the synchronous listener registry."""

from stacked.events import EventBus
from stacked.models.enums import Channel


def test_event_bus_basic_publish_subscribe():
    """Test basic publish/subscribe functionality."""
    bus = EventBus()
    received = []

    bus.subscribe(Channel.SYNC, received.append)
    delivered = bus.publish(Channel.SYNC, {"type": "creators"})

    assert delivered == 1
    assert received == [{"type": "creators"}]


def test_event_bus_accepts_channel_names():
    bus = EventBus()
    received = []

    bus.subscribe("users", received.append)
    bus.publish(Channel.USERS, 3)

    assert received == [3]
    assert bus.listener_count(Channel.USERS) == 1


def test_event_bus_runs_listeners_in_registration_order():
    bus = EventBus()
    calls = []

    bus.subscribe(Channel.SYNC, lambda _: calls.append("first"))
    bus.subscribe(Channel.SYNC, lambda _: calls.append("second"))
    bus.subscribe(Channel.SYNC, lambda _: calls.append("third"))
    bus.publish(Channel.SYNC, None)

    assert calls == ["first", "second", "third"]


def test_event_bus_error_handling():
    """A failing listener does not stop the others."""
    bus = EventBus()
    calls = []

    def broken(_):
        raise RuntimeError("boom")

    bus.subscribe(Channel.SYNC, broken)
    bus.subscribe(Channel.SYNC, calls.append)

    delivered = bus.publish(Channel.SYNC, "payload")

    assert delivered == 1
    assert calls == ["payload"]


def test_event_bus_unsubscribe_removes_every_registration():
    bus = EventBus()
    calls = []

    bus.subscribe(Channel.SYNC, calls.append)
    bus.subscribe(Channel.SYNC, calls.append)
    bus.publish(Channel.SYNC, 1)
    assert calls == [1, 1]

    bus.unsubscribe(Channel.SYNC, calls.append)
    bus.publish(Channel.SYNC, 2)

    assert calls == [1, 1]
    assert bus.listener_count(Channel.SYNC) == 0


def test_event_bus_listener_may_unsubscribe_during_dispatch():
    bus = EventBus()
    calls = []

    def once(data):
        calls.append(("once", data))
        bus.unsubscribe(Channel.SYNC, once)

    bus.subscribe(Channel.SYNC, once)
    bus.subscribe(Channel.SYNC, lambda data: calls.append(("always", data)))

    bus.publish(Channel.SYNC, 1)
    bus.publish(Channel.SYNC, 2)

    assert calls == [("once", 1), ("always", 1), ("always", 2)]


def test_event_bus_publish_without_listeners():
    bus = EventBus()
    assert bus.publish(Channel.DISCONNECTED, {}) == 0
