"""Plugin sources - where the loader finds candidate plugins.

``plugins.json`` format:
{
    "plugins": [
        {"id": "text-presets", "path": "bundled/text-presets", "enabled": true},
        {"id": "word-counter", "path": "bundled/word-counter", "entry_point": "main:plugin"}
    ]
}

Entries are kept in document order; that order is the registration order and
therefore the tie-break order of dependency resolution.
"""
from __future__ import annotations

import importlib.util
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Protocol

from pydantic import BaseModel, Field, ValidationError

from plugin_runtime.constants import DEFAULT_ENTRY_POINT

logger = logging.getLogger(__name__)


class RegistryEntry(BaseModel):
    """One line of the registry document."""

    id: str
    path: str
    enabled: bool = True
    entry_point: str = Field(default=DEFAULT_ENTRY_POINT, description="module:attribute")


class PluginSource(Protocol):
    async def list_plugins(self) -> List[RegistryEntry]: ...

    async def import_plugin(self, entry: RegistryEntry) -> Any: ...


class DirectorySource:
    """Reads plugins.json and imports plugin modules from disk."""

    def __init__(self, registry_file: Path):
        self.registry_file = Path(registry_file)

    @property
    def base_dir(self) -> Path:
        return self.registry_file.parent

    async def list_plugins(self) -> List[RegistryEntry]:
        """Parse the registry document.

        Returns:
            Valid entries in document order (malformed ones are skipped)
        """
        if not self.registry_file.exists():
            logger.warning(f"Plugin registry not found: {self.registry_file}")
            return []

        try:
            with open(self.registry_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Error reading plugin registry {self.registry_file}: {e}")
            return []

        entries = []
        for raw in data.get("plugins", []) if isinstance(data, dict) else []:
            try:
                entries.append(RegistryEntry.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed registry entry {raw!r}: {e}")
        return entries

    def plugin_dir(self, entry: RegistryEntry) -> Path:
        path = Path(entry.path)
        return path if path.is_absolute() else (self.base_dir / path).resolve()

    async def import_plugin(self, entry: RegistryEntry) -> Any:
        """Import the entry's module and return its exported attribute.

        Raises:
            ImportError: if the module file cannot be found
            AttributeError: if the module has no such attribute
        """
        module_name, attr_name = entry.entry_point.split(":")
        plugin_dir = self.plugin_dir(entry)

        # Plugin-local imports resolve against the plugin directory
        plugin_path = str(plugin_dir)
        if plugin_path not in sys.path:
            sys.path.insert(0, plugin_path)

        try:
            spec = importlib.util.spec_from_file_location(
                f"plugin_{entry.id.replace('-', '_')}_{module_name}",
                plugin_dir / f"{module_name}.py",
            )
            if spec is None or spec.loader is None:
                raise ImportError(f"Cannot find module {module_name}.py in {plugin_dir}")

            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
        finally:
            if plugin_path in sys.path:
                sys.path.remove(plugin_path)

        export = getattr(module, attr_name, None)
        if export is None:
            raise AttributeError(f"Module {module_name} has no attribute '{attr_name}'")

        logger.debug(f"Imported plugin {entry.id} from {plugin_dir}")
        return export
