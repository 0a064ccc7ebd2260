import json

import pytest
from conftest import FakeClock
from conftest import flush
from conftest import make_settings

from stacked.models.enums import Channel
from stacked.models.enums import DeliveryPath
from stacked.models.enums import SyncAction
from stacked.models.enums import SyncTopic
from stacked.schemas.sync import SyncEvent
from stacked.sync.binding import StorageBinding
from stacked.sync.binding import bind
from stacked.sync.errors import UnmappedStorageKeyError
from stacked.sync.host import Host
from stacked.sync.host import Origin
from stacked.sync.service import SyncService
from stacked.sync.storage import MemoryStore


@pytest.mark.asyncio
class TestHydration:
    async def test_hydrates_stored_value(self, make_service, origin):
        origin.store.set("stacked-creators", json.dumps([{"id": 1}]))
        service = make_service()
        service.initialize()

        binding = bind(service, "stacked-creators", [])

        assert binding.is_hydrated
        assert binding.value == [{"id": 1}]
        assert binding.topic is SyncTopic.CREATORS

    async def test_missing_or_malformed_value_uses_default(self, make_service, origin):
        origin.store.set("stacked-content", "{oops")
        service = make_service()
        service.initialize()

        content = bind(service, "stacked-content", ["default"])
        categories = bind(service, "stacked-categories", [])

        assert content.value == ["default"]
        assert categories.value == []
        assert content.is_hydrated and categories.is_hydrated

    async def test_default_is_not_shared_between_bindings(self, make_service):
        service = make_service()
        service.initialize()
        default = {"items": []}

        binding = bind(service, "stacked-settings", default)
        binding.value["items"].append(1)

        assert default == {"items": []}

    async def test_hydration_never_emits(self, make_service, origin):
        origin.store.set("stacked-employees", json.dumps([{"id": 9}]))
        a = make_service()
        b = make_service()
        a.initialize()
        b.initialize()
        remote = []
        b.on(Channel.SYNC, remote.append)

        bind(a, "stacked-employees", [])
        await flush()

        assert remote == []
        assert origin.store.get(a.storage_key) is None

    async def test_set_before_hydration_wins(self, make_service, origin):
        origin.store.set("stacked-settings", json.dumps({"theme": "stored"}))
        service = make_service()
        service.initialize()

        binding = bind(service, "stacked-settings", {}, hydrate=False)
        assert not binding.is_hydrated

        binding.set({"theme": "fresh"})
        binding.hydrate()

        assert binding.is_hydrated
        assert binding.value == {"theme": "fresh"}
        assert json.loads(origin.store.get("stacked-settings")) == {"theme": "fresh"}


@pytest.mark.asyncio
class TestSetAndAbsorb:
    async def test_set_writes_through_and_emits(self, make_service, origin):
        service = make_service()
        service.initialize()
        events = []
        service.on(Channel.SYNC, events.append)
        binding = bind(service, "stacked-creators", [])

        result = binding.set([{"id": 1}])

        assert result == [{"id": 1}]
        assert binding.value == [{"id": 1}]
        assert json.loads(origin.store.get("stacked-creators")) == [{"id": 1}]
        assert len(events) == 1
        assert events[0].topic is SyncTopic.CREATORS
        assert events[0].action is SyncAction.UPDATE
        assert events[0].payload == [{"id": 1}]

    async def test_updater_function_receives_previous_value(self, make_service):
        service = make_service()
        service.initialize()
        binding = bind(service, "stacked-creators", [1])

        binding.set(lambda rows: rows + [2])
        binding.set(lambda rows: rows + [3])

        assert binding.value == [1, 2, 3]

    async def test_unpacks_like_a_state_hook(self, make_service):
        service = make_service()
        service.initialize()

        value, set_value, is_hydrated = bind(service, "stacked-content", ["a"])
        set_value(["b"])

        assert value == ["a"]
        assert is_hydrated
        assert service.get_last_sync_time() > 0

    async def test_watchers_see_every_change(self, make_service):
        service = make_service()
        service.initialize()
        binding = bind(service, "stacked-content", [])
        seen = []
        unwatch = binding.watch(seen.append)

        binding.set(["a"])
        unwatch()
        binding.set(["b"])

        assert seen == [["a"]]

    async def test_remote_snapshot_is_absorbed_without_reemit(self, make_service):
        a = make_service()
        b = make_service()
        a.initialize()
        b.initialize()
        a_creators = bind(a, "stacked-creators", [])
        b_creators = bind(b, "stacked-creators", [])
        a_events = []
        a.on(Channel.SYNC, a_events.append)

        a_creators.set([{"id": 1, "name": "Ada"}])
        await flush()
        a.poll_once()
        b.poll_once()

        assert b_creators.value == [{"id": 1, "name": "Ada"}]
        # Only a's own emission; b never re-published what it absorbed.
        assert len(a_events) == 1

    async def test_other_topics_are_ignored(self, make_service):
        a = make_service()
        b = make_service()
        a.initialize()
        b.initialize()
        a_content = bind(a, "stacked-content", [])
        b_categories = bind(b, "stacked-categories", ["keep"])

        a_content.set(["x"])
        await flush()

        assert b_categories.value == ["keep"]

    async def test_converges_to_newest_under_reordering(self, make_service):
        c = make_service()
        c.initialize()
        binding = bind(c, "stacked-creators", [])

        newer = SyncEvent(topic="creators", payload=["newer"], origin_id="user_bbbbbbb", emitted_at=2_000)
        older = SyncEvent(topic="creators", payload=["older"], origin_id="user_aaaaaaa", emitted_at=1_000)
        c.receive(newer, DeliveryPath.BROADCAST)
        c.receive(older, DeliveryPath.POLL)

        assert binding.value == ["newer"]

    async def test_poll_only_end_to_end(self, make_service):
        store = MemoryStore()
        a = make_service(target_origin=Origin(store, broadcast=False))
        b = make_service(target_origin=Origin(store, broadcast=False))
        a.initialize()
        b.initialize()
        a_strategies = bind(a, "stacked-custom-strategies", [])
        b_strategies = bind(b, "stacked-custom-strategies", [])

        a_strategies.set([{"name": "momentum"}])
        assert b_strategies.value == []

        b.poll_once()
        assert b_strategies.value == [{"name": "momentum"}]

    async def test_poll_only_writers_converge_when_writes_interleave(self, make_service):
        # b writes key and slot while a is between its own key write and slot write.
        store = MemoryStore()
        clock = FakeClock()
        a = make_service(target_origin=Origin(store, broadcast=False), clock=clock)
        b = make_service(target_origin=Origin(store, broadcast=False), clock=clock)
        a.initialize()
        b.initialize()
        a_creators = bind(a, "stacked-creators", [])
        b_creators = bind(b, "stacked-creators", [])

        def interleave(event):
            a.off(Channel.SYNC, interleave)
            b_creators.set(["P2"])

        a.on(Channel.SYNC, interleave)
        a_creators.set(["P1"])
        assert json.loads(store.get("stacked-creators")) == ["P2"]

        for _ in range(3):
            a.poll_once()
            b.poll_once()

        assert a_creators.value == b_creators.value == json.loads(store.get("stacked-creators"))

    async def test_broadcast_end_to_end_across_stores(self):
        shared = Origin()
        a = SyncService(shared.open_context(), settings=make_settings())
        b_host = Host(storage=Origin().open_context().storage, broadcast=shared.hub)
        b = SyncService(b_host, settings=make_settings())
        a.initialize()
        b.initialize()
        a_settings = bind(a, "stacked-settings", {})
        b_settings = bind(b, "stacked-settings", {})

        a_settings.set({"lang": "de"})
        await flush()

        assert b_settings.value == {"lang": "de"}
        # The receiver wrote the absorbed snapshot to its own store.
        assert json.loads(b_host.storage.get("stacked-settings")) == {"lang": "de"}
        a.destroy()
        b.destroy()

    async def test_closed_binding_stops_absorbing(self, make_service):
        a = make_service()
        b = make_service()
        a.initialize()
        b.initialize()
        a_content = bind(a, "stacked-content", [])
        b_content = bind(b, "stacked-content", [])

        b_content.close()
        a_content.set(["after close"])
        await flush()

        assert b_content.value == []
        assert b_content.set(["ignored"]) == []


def test_unmapped_key_falls_back_to_default_topic():
    service = SyncService(Host.server_side())
    binding = StorageBinding(service, "my-custom-key", None)
    assert binding.topic is SyncTopic.SETTINGS


def test_strict_bind_rejects_unmapped_key():
    service = SyncService(Host.server_side())
    with pytest.raises(UnmappedStorageKeyError):
        bind(service, "my-custom-key", None, strict=True)


def test_binding_on_server_side_host_is_memory_only():
    service = SyncService(Host.server_side())
    service.initialize()
    binding = bind(service, "stacked-creators", ["default"])

    binding.set(["changed"])

    assert binding.is_hydrated
    assert binding.value == ["changed"]
    service.destroy()


def test_unserializable_value_is_kept_in_memory(origin):
    service = SyncService(origin.open_context())
    service.initialize()
    binding = bind(service, "stacked-settings", {})
    marker = object()

    binding.set({"bad": marker})

    assert binding.value == {"bad": marker}
    assert origin.store.get("stacked-settings") is None
    service.destroy()
