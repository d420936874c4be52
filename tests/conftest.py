"""Shared fakes for the plugin runtime tests."""

from typing import Any, Dict, List

import pytest

from plugin_runtime.plugins.discovery import RegistryEntry
from plugin_runtime.plugins.hooks import EventBus
from plugin_runtime.plugins.manifest import parse_manifest
from plugin_runtime.plugins.registry import PluginRegistry


def make_export(plugin_id: str, **fields: Any) -> Dict[str, Any]:
    """Minimal valid plugin export, overridable field by field."""
    export = {
        "id": plugin_id,
        "name": plugin_id.replace("-", " ").title(),
        "version": "1.0.0",
        "description": f"{plugin_id} test plugin",
    }
    export.update(fields)
    return export


def make_manifest(plugin_id: str, **fields: Any):
    return parse_manifest(make_export(plugin_id, **fields))


class FakeSource:
    """In-memory plugin source. Exports are listed in insertion order.

    An export may be an exception instance, which ``import_plugin`` raises.
    """

    def __init__(self, exports: Dict[str, Any] = None):
        self.exports: Dict[str, Any] = dict(exports or {})
        self.disabled: set = set()
        self.imported: List[str] = []

    def add(self, export: Dict[str, Any]) -> None:
        self.exports[export["id"]] = export

    async def list_plugins(self) -> List[RegistryEntry]:
        return [
            RegistryEntry(id=plugin_id, path=plugin_id, enabled=plugin_id not in self.disabled)
            for plugin_id in self.exports
        ]

    async def import_plugin(self, entry: RegistryEntry) -> Any:
        self.imported.append(entry.id)
        export = self.exports[entry.id]
        if isinstance(export, Exception):
            raise export
        return export


@pytest.fixture
def registry():
    return PluginRegistry()


@pytest.fixture
def bus():
    return EventBus()
