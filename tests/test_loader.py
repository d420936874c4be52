"""Tests for plugin discovery, load ordering and loading."""

import asyncio
import itertools
import json
import random

import pytest

from conftest import FakeSource, make_export
from plugin_runtime.plugins.discovery import DirectorySource
from plugin_runtime.plugins.errors import CircularDependency, InvalidStateTransition, PluginNotFound
from plugin_runtime.plugins.loader import PluginLoader
from plugin_runtime.plugins.registry import PluginRegistry, PluginState


def build_loader(*exports):
    source = FakeSource({e["id"]: e for e in exports})
    loader = PluginLoader(PluginRegistry(), source)
    asyncio.run(loader.discover_plugins())
    return loader


class TestDiscovery:
    """Tests for discover_plugins."""

    def test_registers_valid_plugins_in_order(self):
        """Valid exports are registered in registry order."""
        loader = build_loader(make_export("b"), make_export("a"))
        assert loader.registry.get_all_plugins() == ["b", "a"]

    def test_invalid_manifests_are_skipped(self):
        """A bad manifest or failing import never aborts discovery."""
        source = FakeSource(
            {
                "good": make_export("good"),
                "bad-version": make_export("bad-version", version="v1"),
                "broken": ImportError("syntax error"),
                "not-a-dict": ["nope"],
            }
        )
        loader = PluginLoader(PluginRegistry(), source)
        discovered = asyncio.run(loader.discover_plugins())
        assert discovered == ["good"]
        assert loader.registry.get_all_plugins() == ["good"]

    def test_id_mismatch_is_skipped(self):
        """The manifest id must match the registry entry id."""
        source = FakeSource({"expected": make_export("other")})
        loader = PluginLoader(PluginRegistry(), source)
        assert asyncio.run(loader.discover_plugins()) == []

    def test_disabled_entries_not_imported(self):
        """Entries disabled in the registry document are not imported."""
        source = FakeSource({"a": make_export("a"), "b": make_export("b")})
        source.disabled.add("b")
        loader = PluginLoader(PluginRegistry(), source)
        asyncio.run(loader.discover_plugins())
        assert source.imported == ["a"]

    def test_duplicate_is_skipped(self):
        """A plugin already registered is skipped, not fatal."""
        source = FakeSource({"a": make_export("a")})
        loader = PluginLoader(PluginRegistry(), source)
        asyncio.run(loader.discover_plugins())
        assert asyncio.run(loader.discover_plugins()) == []
        assert loader.registry.count() == 1


class TestResolveLoadOrder:
    """Tests for resolve_load_order."""

    def test_dependency_before_dependent(self):
        """a depends on b: b loads first."""
        loader = build_loader(make_export("a", dependencies=["b"]), make_export("b"))
        assert loader.resolve_load_order(["a", "b"]) == ["b", "a"]

    def test_stable_tie_break(self):
        """Independent plugins keep their input order."""
        loader = build_loader(make_export("x"), make_export("y"), make_export("z"))
        assert loader.resolve_load_order(["z", "x", "y"]) == ["z", "x", "y"]

    def test_optional_dependencies_order_too(self):
        """Optional dependencies inside the set also constrain the order."""
        loader = build_loader(make_export("a", optionalDependencies=["b"]), make_export("b"))
        assert loader.resolve_load_order(["a", "b"]) == ["b", "a"]

    def test_dependencies_outside_set_ignored(self):
        """Edges to ids outside the input are dropped."""
        loader = build_loader(make_export("a", dependencies=["missing"]))
        assert loader.resolve_load_order(["a"]) == ["a"]

    def test_random_acyclic_graphs(self):
        """Every id appears once and every dependency precedes its dependent."""
        rng = random.Random(7)
        for _ in range(25):
            ids = [f"p{i}" for i in range(8)]
            exports = []
            for index, plugin_id in enumerate(ids):
                earlier = ids[:index]
                deps = rng.sample(earlier, k=rng.randint(0, min(3, len(earlier))))
                exports.append(make_export(plugin_id, dependencies=deps))
            loader = build_loader(*exports)

            shuffled = ids[:]
            rng.shuffle(shuffled)
            order = loader.resolve_load_order(shuffled)

            assert sorted(order) == sorted(ids)
            position = {pid: i for i, pid in enumerate(order)}
            for export in exports:
                for dep in export["dependencies"]:
                    assert position[dep] < position[export["id"]]

    def test_cycle_names_unresolved_ids(self):
        """a -> b -> a fails; c, which only depends on the cycle, is unresolved too."""
        loader = build_loader(
            make_export("a", dependencies=["b"]),
            make_export("b", dependencies=["a"]),
            make_export("c", dependencies=["a"]),
            make_export("free"),
        )
        with pytest.raises(CircularDependency) as exc_info:
            loader.resolve_load_order(["a", "b", "c", "free"])
        assert exc_info.value.plugin_ids == ["a", "b", "c"]

    def test_self_dependency_is_a_cycle(self):
        """A plugin depending on itself cannot be ordered."""
        loader = build_loader(make_export("loop", dependencies=["loop"]))
        with pytest.raises(CircularDependency) as exc_info:
            loader.resolve_load_order(["loop"])
        assert exc_info.value.plugin_ids == ["loop"]

    def test_every_cycle_rotation_is_detected(self):
        """Cycle detection does not depend on input order."""
        exports = [
            make_export("a", dependencies=["c"]),
            make_export("b", dependencies=["a"]),
            make_export("c", dependencies=["b"]),
        ]
        loader = build_loader(*exports)
        for permutation in itertools.permutations(["a", "b", "c"]):
            with pytest.raises(CircularDependency) as exc_info:
                loader.resolve_load_order(permutation)
            assert sorted(exc_info.value.plugin_ids) == ["a", "b", "c"]


class TestLoadPlugin:
    """Tests for load_plugin/load_plugins."""

    def test_load_transitions_to_loaded(self):
        """Loading stores the module as the instance."""
        loader = build_loader(make_export("a"))
        module = loader.load_plugin("a")
        assert loader.registry.get_state("a") == PluginState.LOADED
        assert loader.registry.get_instance("a") is module
        assert loader.is_loaded("a")

    def test_load_is_reentrant(self):
        """A second load returns the cached module."""
        loader = build_loader(make_export("a"))
        assert loader.load_plugin("a") is loader.load_plugin("a")
        assert loader.load_order == ["a"]

    def test_unknown_plugin(self):
        """Loading an undiscovered id raises PluginNotFound."""
        loader = build_loader()
        with pytest.raises(PluginNotFound):
            loader.load_plugin("ghost")

    def test_load_plugins_continues_past_failures(self):
        """A missing dependency fails only that plugin and its dependents."""
        loader = build_loader(
            make_export("ok"),
            make_export("needs-ghost", dependencies=["ghost"]),
            make_export("needs-needs", dependencies=["needs-ghost"]),
        )
        report = loader.load_plugins(["ok", "needs-ghost", "needs-needs"])

        assert report.loaded == ["ok"]
        assert set(report.failed) == {"needs-ghost", "needs-needs"}
        assert loader.registry.get_state("needs-ghost") == PluginState.ERROR
        assert loader.registry.get_state("ok") == PluginState.LOADED

    def test_dependency_only_needs_to_be_loaded(self):
        """A dependent loads once its dependency is LOADED."""
        loader = build_loader(make_export("child", dependencies=["base"]), make_export("base"))
        report = loader.load_plugins(["child", "base"])
        assert report.loaded == ["base", "child"]

    def test_conflict_with_active_plugin(self):
        """Loading next to an active conflicting plugin fails."""
        loader = build_loader(make_export("a", conflicts=["b"]), make_export("b"))
        loader.registry.set_state("b", PluginState.ACTIVE)
        report = loader.load_plugins(["a"])
        assert "a" in report.failed

    def test_unload(self):
        """Unloading forgets the instance but keeps the manifest."""
        loader = build_loader(make_export("a"))
        loader.load_plugin("a")
        assert loader.unload_plugin("a")
        assert loader.registry.get_state("a") == PluginState.UNLOADED
        assert loader.registry.get_instance("a") is None
        assert loader.registry.has("a")
        assert not loader.unload_plugin("a")

    def test_unload_active_raises(self):
        """Running plugins cannot be unloaded."""
        loader = build_loader(make_export("a"))
        loader.load_plugin("a")
        loader.registry.set_state("a", PluginState.ACTIVE)
        with pytest.raises(InvalidStateTransition):
            loader.unload_plugin("a")

    def test_dependency_tree_marks_cycles(self):
        """Revisited nodes are marked circular."""
        loader = build_loader(make_export("a", dependencies=["b"]), make_export("b", dependencies=["a"]))
        tree = loader.get_dependency_tree("a")
        assert tree["dependencies"][0]["id"] == "b"
        assert tree["dependencies"][0]["dependencies"][0] == {"id": "a", "circular": True}

    def test_stats(self):
        loader = build_loader(make_export("a"), make_export("b"))
        loader.load_plugin("b")
        assert loader.get_stats() == {"discovered": 2, "loaded": 1, "load_order": ["b"]}


class TestDirectorySource:
    """Tests for the on-disk plugin source."""

    def test_imports_entry_point(self, tmp_path):
        """Entries are read in order and their export imported."""
        plugin_dir = tmp_path / "bundled" / "hello"
        plugin_dir.mkdir(parents=True)
        (plugin_dir / "plugin.py").write_text(
            "plugin = {'id': 'hello', 'name': 'Hello', 'version': '1.0.0', 'description': 'Says hi'}\n"
        )
        registry_file = tmp_path / "plugins.json"
        registry_file.write_text(
            json.dumps({"plugins": [{"id": "hello", "path": "bundled/hello"}, {"bad": True}]})
        )

        source = DirectorySource(registry_file)
        entries = asyncio.run(source.list_plugins())
        assert [e.id for e in entries] == ["hello"]

        export = asyncio.run(source.import_plugin(entries[0]))
        assert export["name"] == "Hello"

    def test_missing_registry_is_empty(self, tmp_path):
        """A missing registry document yields no plugins."""
        assert asyncio.run(DirectorySource(tmp_path / "nope.json").list_plugins()) == []

    def test_missing_attribute(self, tmp_path):
        """An entry point naming a missing attribute fails the import."""
        plugin_dir = tmp_path / "p"
        plugin_dir.mkdir()
        (plugin_dir / "main.py").write_text("value = 1\n")
        (tmp_path / "plugins.json").write_text(
            json.dumps({"plugins": [{"id": "p", "path": "p", "entry_point": "main:plugin"}]})
        )
        source = DirectorySource(tmp_path / "plugins.json")
        entry = asyncio.run(source.list_plugins())[0]
        with pytest.raises(AttributeError):
            asyncio.run(source.import_plugin(entry))
