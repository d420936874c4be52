"""Tests for PluginConfigService."""

import asyncio
import json

import pytest

from plugin_runtime.plugins.config import PluginConfigService
from plugin_runtime.plugins.errors import ValidationFailed
from plugin_runtime.plugins.hooks import EventBus
from plugin_runtime.plugins.storage import MemoryStorage


class CountingStorage(MemoryStorage):
    def __init__(self, initial=None):
        super().__init__(initial)
        self.writes = 0

    async def set(self, entries):
        self.writes += 1
        await super().set(entries)


def make_service(initial=None, debounce=0.01):
    storage = CountingStorage(initial)
    bus = EventBus()
    return PluginConfigService(storage, bus, persist_debounce=debounce), storage, bus


class TestSchemaAndValidation:
    """register_schema, get and set validation."""

    def test_schema_seeds_defaults(self):
        service, _, _ = make_service()
        service.register_schema("p", {"x": {"type": "number", "default": 10}})
        assert service.get("p", "x") == 10
        assert service.get("p", "enabled") is False
        assert service.get_all("p") == {"enabled": False, "x": 10}

    def test_stored_values_survive_new_schema(self):
        """Only keys missing from storage get defaults."""
        service, _, _ = make_service(
            {"settings": {"plugins": {"p": {"enabled": True, "settings": {"x": 42}}}}}
        )
        asyncio.run(service.init())
        service.register_schema("p", {"x": {"type": "number", "default": 10}, "y": {"type": "string", "default": "hi"}})
        assert service.get("p", "x") == 42
        assert service.get("p", "y") == "hi"
        assert service.is_enabled("p")

    def test_number_bounds(self):
        """p.x is a number in [0, 100] defaulting to 10; 150 is rejected and 10 is kept."""
        service, _, _ = make_service()
        service.register_schema("p", {"x": {"type": "number", "min": 0, "max": 100, "default": 10}})

        with pytest.raises(ValidationFailed) as exc_info:
            asyncio.run(service.set("p", "x", 150))

        assert exc_info.value.key == "x"
        assert service.get("p", "x") == 10

    @pytest.mark.parametrize(
        "definition,bad,good",
        [
            ({"type": "boolean"}, "yes", True),
            ({"type": "string"}, 5, "five"),
            ({"type": "color"}, "red", "#ff0000"),
            ({"type": "number"}, True, 2.5),
            ({"type": "array"}, "a,b", ["a", "b"]),
            ({"type": "object"}, [], {"a": 1}),
            ({"type": "select", "enum": ["a", "b"]}, "c", "b"),
        ],
    )
    def test_type_checks(self, definition, bad, good):
        service, _, _ = make_service()
        service.register_schema("p", {"k": definition})
        with pytest.raises(ValidationFailed):
            asyncio.run(service.set("p", "k", bad))
        asyncio.run(service.set("p", "k", good))
        assert service.get("p", "k") == good

    def test_custom_validator(self):
        service, _, _ = make_service()
        service.register_schema("p", {"n": {"type": "number", "validator": lambda v: v % 2 == 0}})
        with pytest.raises(ValidationFailed):
            asyncio.run(service.set("p", "n", 3))

    def test_skip_validation(self):
        service, _, _ = make_service()
        service.register_schema("p", {"x": {"type": "number", "max": 1}})
        asyncio.run(service.set("p", "x", 99, skip_validation=True))
        assert service.get("p", "x") == 99

    def test_core_namespace(self):
        service, _, _ = make_service()
        assert service.get("core", "theme") == "dark"
        asyncio.run(service.set("core", "theme", "light"))
        assert service.get_all("core")["theme"] == "light"

    def test_unknown_plugin(self):
        service, _, _ = make_service()
        assert service.get("ghost", "x") is None
        assert service.get_all("ghost") is None


class TestChangeNotification:
    """Watchers and bus events."""

    def test_watchers_and_events(self):
        service, _, bus = make_service()
        service.register_schema("p", {"x": {"type": "number", "default": 1}})
        key_calls, plugin_calls, events = [], [], []

        service.watch("p", "x", lambda value, old: key_calls.append((value, old)))
        service.watch("p", None, lambda key, value, old: plugin_calls.append((key, value, old)))
        bus.register("settings:changed", lambda ctx: events.append(ctx.data))
        bus.register("settings:plugin-changed:p", lambda ctx: events.append(("scoped", ctx.data["key"])))

        asyncio.run(service.set("p", "x", 2))

        assert key_calls == [(2, 1)]
        assert plugin_calls == [("x", 2, 1)]
        assert events == [
            {"plugin_id": "p", "key": "x", "value": 2, "old_value": 1},
            ("scoped", "x"),
        ]

    def test_unwatch(self):
        service, _, _ = make_service()
        calls = []
        unwatch = service.watch("p", "x", lambda value, old: calls.append(value))
        unwatch()
        asyncio.run(service.set("p", "x", 1))
        assert calls == []

    def test_failing_watcher_does_not_block_others(self):
        service, _, _ = make_service()
        calls = []

        def boom(value, old):
            raise RuntimeError("watcher bug")

        service.watch("p", "x", boom)
        service.watch("p", "x", lambda value, old: calls.append(value))
        asyncio.run(service.set("p", "x", 5))
        assert calls == [5]


class TestPersistence:
    """Debounced persistence and document import/export."""

    def test_writes_coalesce_into_one_persist(self):
        """Three sets inside the debounce window produce one storage write."""
        service, storage, _ = make_service(debounce=0.02)

        async def scenario():
            await service.set("p", "a", 1)
            await service.set("p", "b", 2)
            await service.set("p", "c", 3)
            assert service.has_pending_writes
            await asyncio.sleep(0.1)

        asyncio.run(scenario())

        assert storage.writes == 1
        persisted = asyncio.run(storage.get("settings"))["settings"]
        assert persisted["plugins"]["p"]["settings"] == {"a": 1, "b": 2, "c": 3}
        assert not service.has_pending_writes

    def test_flush_persists_immediately(self):
        service, storage, _ = make_service(debounce=10)

        async def scenario():
            await service.enable("p")
            await service.flush()

        asyncio.run(scenario())
        assert storage.writes == 1
        assert asyncio.run(storage.get("settings"))["settings"]["plugins"]["p"]["enabled"] is True

    def test_init_merges_stored_document(self):
        service, _, _ = make_service({"settings": {"core": {"debug_mode": True}, "plugins": {}}})
        asyncio.run(service.init())
        assert service.get("core", "debug_mode") is True
        assert service.get("core", "theme") == "dark"

    def test_enabled_plugins(self):
        service, _, _ = make_service()

        async def scenario():
            await service.enable("a")
            await service.enable("b")
            await service.disable("a")

        asyncio.run(scenario())
        assert service.get_enabled_plugins() == ["b"]

    def test_sync_from_storage_skipped_with_pending_write(self):
        service, _, _ = make_service(debounce=10)
        document = {"plugins": {"p": {"enabled": True, "settings": {}}}}

        async def scenario():
            await service.set("core", "theme", "light")
            return service.sync_from_storage(document)

        assert asyncio.run(scenario()) is False
        assert not service.is_enabled("p")

    def test_sync_from_storage_keeps_schema_defaults(self):
        service, _, _ = make_service()
        service.register_schema("p", {"x": {"type": "number", "default": 7}})
        assert service.sync_from_storage({"plugins": {"p": {"enabled": True, "settings": {}}}})
        assert service.is_enabled("p")
        assert service.get("p", "x") == 7

    def test_export_import_round_trip(self):
        source, _, _ = make_service()
        asyncio.run(source.set("p", "x", 3))
        exported = source.export_settings()

        target, storage, _ = make_service()
        assert asyncio.run(target.import_settings(exported))
        assert target.get("p", "x") == 3
        assert storage.writes == 1

    def test_import_rejects_bad_json(self):
        service, _, _ = make_service()
        assert asyncio.run(service.import_settings("{not json")) is False

    def test_import_replace(self):
        service, _, _ = make_service()
        asyncio.run(service.set("old", "x", 1))
        document = json.dumps({"plugins": {"new": {"enabled": True, "settings": {}}}})
        assert asyncio.run(service.import_settings(document, merge=False))
        assert service.get_all("old") is None
        assert service.is_enabled("new")

    def test_reset_restores_defaults(self):
        service, _, _ = make_service()
        service.register_schema("p", {"x": {"type": "number", "default": 1}})
        asyncio.run(service.set("p", "x", 5))
        asyncio.run(service.reset("p"))
        assert service.get("p", "x") == 1

    def test_reset_without_schema(self):
        service, _, _ = make_service()
        with pytest.raises(KeyError):
            asyncio.run(service.reset("ghost"))

    def test_migrate(self):
        service, _, _ = make_service()

        def migration(document):
            document["core"]["theme"] = "solarized"
            return document

        assert asyncio.run(service.migrate(migration))
        assert service.get("core", "theme") == "solarized"
