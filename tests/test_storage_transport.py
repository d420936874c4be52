"""Tests for the storage backends, the local transport and the host environment."""

import asyncio
import json

import pytest

from plugin_runtime.plugins.environment import HostEnvironment
from plugin_runtime.plugins.errors import TransportError
from plugin_runtime.plugins.storage import JsonFileStorage, MemoryStorage, NamespacedStorage
from plugin_runtime.plugins.transport import LocalHub


class TestMemoryStorage:
    """Key/value semantics and change notification."""

    def test_get_set_remove(self):
        storage = MemoryStorage()

        async def scenario():
            await storage.set({"a": 1, "b": {"nested": True}})
            everything = await storage.get()
            some = await storage.get(["a", "missing"])
            await storage.remove("a")
            after = await storage.get("a")
            return everything, some, after

        everything, some, after = asyncio.run(scenario())
        assert everything == {"a": 1, "b": {"nested": True}}
        assert some == {"a": 1}
        assert after == {}

    def test_values_are_copied(self):
        storage = MemoryStorage()
        value = {"list": [1]}

        async def scenario():
            await storage.set({"k": value})
            value["list"].append(2)
            return await storage.get("k")

        assert asyncio.run(scenario()) == {"k": {"list": [1]}}

    def test_change_listener_runs_later(self):
        """Listeners see old and new values on a later loop iteration."""
        storage = MemoryStorage({"k": 1})
        changes = []
        storage.on_changed(changes.append)

        async def scenario():
            await storage.set({"k": 2})
            seen_immediately = list(changes)
            await asyncio.sleep(0)
            return seen_immediately

        assert asyncio.run(scenario()) == []
        assert changes == [{"k": {"newValue": 2, "oldValue": 1}}]

    def test_detached_listener_not_called(self):
        storage = MemoryStorage()
        changes = []
        detach = storage.on_changed(changes.append)

        async def scenario():
            await storage.set({"k": 1})
            detach()
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert changes == []

    def test_clear_and_size(self):
        storage = MemoryStorage({"a": 1, "b": "two"})
        changes = []
        storage.on_changed(changes.append)

        async def scenario():
            before = await storage.size()
            await storage.clear()
            await asyncio.sleep(0)
            return before, await storage.size(), await storage.get()

        before, after, remaining = asyncio.run(scenario())
        assert before == {"keys": 2, "bytes_in_use": len(json.dumps({"a": 1, "b": "two"}))}
        assert after == {"keys": 0, "bytes_in_use": 2}
        assert remaining == {}
        assert changes == [{"a": {"newValue": None, "oldValue": 1}, "b": {"newValue": None, "oldValue": "two"}}]


class TestJsonFileStorage:
    def test_persists_to_disk(self, tmp_path):
        path = tmp_path / "data" / "settings.json"
        asyncio.run(JsonFileStorage(path).set({"settings": {"version": "1.0.0"}}))

        assert json.loads(path.read_text()) == {"settings": {"version": "1.0.0"}}
        assert asyncio.run(JsonFileStorage(path).get("settings")) == {"settings": {"version": "1.0.0"}}

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{broken")
        assert asyncio.run(JsonFileStorage(path).get()) == {}


class TestNamespacedStorage:
    def test_keys_are_prefixed(self):
        backend = MemoryStorage()
        scoped = NamespacedStorage(backend, "text-presets")

        async def scenario():
            await scoped.set({"draft": "hello"})
            raw = await backend.get()
            mine = await scoped.get()
            await scoped.remove("draft")
            return raw, mine, await backend.get()

        raw, mine, after = asyncio.run(scenario())
        assert raw == {"plugin:text-presets:draft": "hello"}
        assert mine == {"draft": "hello"}
        assert after == {}

    def test_listener_sees_only_own_keys(self):
        backend = MemoryStorage()
        scoped = NamespacedStorage(backend, "a")
        changes = []
        scoped.on_changed(changes.append)

        async def scenario():
            await backend.set({"plugin:b:x": 1, "plugin:a:y": 2})
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert changes == [{"y": {"newValue": 2, "oldValue": None}}]


class TestLocalTransport:
    def test_targeted_send_returns_reply(self):
        hub = LocalHub()
        page = hub.connect("page")
        panel = hub.connect("panel")
        page.on_message(lambda envelope, sender: {"got": envelope["n"], "from": sender})

        assert asyncio.run(panel.send({"n": 1}, "page")) == {"got": 1, "from": "panel"}

    def test_envelopes_are_copied(self):
        hub = LocalHub()
        page = hub.connect("page")
        panel = hub.connect("panel")
        received = []
        page.on_message(lambda envelope, sender: received.append(envelope))
        original = {"data": [1]}

        asyncio.run(panel.send(original, "page"))
        received[0]["data"].append(2)
        assert original == {"data": [1]}

    def test_unknown_target(self):
        hub = LocalHub()
        panel = hub.connect("panel")
        with pytest.raises(TransportError):
            asyncio.run(panel.send({}, "ghost"))

    def test_no_listener(self):
        hub = LocalHub()
        panel = hub.connect("panel")
        hub.connect("page")
        with pytest.raises(TransportError):
            asyncio.run(panel.send({}))

    def test_duplicate_context_name(self):
        hub = LocalHub()
        hub.connect("page")
        with pytest.raises(ValueError):
            hub.connect("page")

    def test_close_disconnects(self):
        hub = LocalHub()
        page = hub.connect("page")
        panel = hub.connect("panel")
        page.close()
        assert panel.broadcast_targets() == []


class TestHostEnvironment:
    def test_wait_until_stable(self):
        env = HostEnvironment(stable=False)
        order = []

        async def scenario():
            waiter = asyncio.ensure_future(env.wait_until_stable())
            await asyncio.sleep(0)
            order.append("before")
            env.mark_stable()
            await waiter
            order.append("after")

        asyncio.run(scenario())
        assert order == ["before", "after"]

    def test_observers(self):
        env = HostEnvironment()
        batches = []
        disconnect = env.observe(batches.append)
        env.publish("a", "b")
        disconnect()
        env.publish("c")
        assert batches == [["a", "b"]]
        assert env.observer_count == 0
