"""Plugin configuration service - schema-validated settings with change watchers.

Document format (persisted as one unit under the ``settings`` storage key):
{
    "version": "1.0.0",
    "core": {"theme": "dark", "debug_mode": false},
    "plugins": {
        "text-presets": {
            "enabled": true,
            "settings": {"intensity": 50}
        }
    }
}

The service is the only source of truth for whether a plugin is enabled.
"""
from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from plugin_runtime.constants import SETTINGS_PERSIST_DEBOUNCE
from plugin_runtime.plugins.errors import ValidationFailed
from plugin_runtime.plugins.hooks import EventBus
from plugin_runtime.plugins.manifest import SettingDefinition
from plugin_runtime.plugins.storage import StorageBackend

logger = logging.getLogger(__name__)

CORE_NAMESPACE = "core"
ENABLED_KEY = "enabled"

_COLOR_PATTERN = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")

Watcher = Callable[..., Any]


class PluginSettingsEntry(BaseModel):
    enabled: bool = False
    settings: Dict[str, Any] = Field(default_factory=dict)


class SettingsDocument(BaseModel):
    version: str = "1.0.0"
    core: Dict[str, Any] = Field(default_factory=dict)
    plugins: Dict[str, PluginSettingsEntry] = Field(default_factory=dict)


def default_document() -> Dict[str, Any]:
    return {
        "version": "1.0.0",
        "core": {"theme": "dark", "debug_mode": False},
        "plugins": {},
    }


class PluginConfigService:
    """Namespaced, persisted key/value settings for the runtime and its plugins."""

    STORAGE_KEY = "settings"

    def __init__(
        self,
        storage: StorageBackend,
        bus: EventBus,
        persist_debounce: float = SETTINGS_PERSIST_DEBOUNCE,
    ):
        self.storage = storage
        self.bus = bus
        self.persist_debounce = persist_debounce
        self.initialized = False

        self._settings: Dict[str, Any] = default_document()
        self._schemas: Dict[str, Dict[str, SettingDefinition]] = {}
        # "plugin_id.key" -> key watchers, "plugin_id" -> plugin-wide watchers
        self._watchers: Dict[str, List[Watcher]] = {}
        self._persist_handle: Optional[asyncio.TimerHandle] = None
        self._persist_tasks: set = set()

    async def init(self) -> None:
        """Load the persisted document and merge it over the defaults."""
        if self.initialized:
            return

        try:
            stored = await self.storage.get(self.STORAGE_KEY)
            document = stored.get(self.STORAGE_KEY)
            if document:
                self._settings = self._merge(self._settings, self._validate_document(document))
            self.initialized = True
            logger.info(f"Loaded settings ({len(self._settings['plugins'])} plugin entries)")
        except (ValidationError, OSError, ValueError) as e:
            logger.error(f"Failed to load settings: {e}")

    @staticmethod
    def _validate_document(document: Mapping[str, Any]) -> Dict[str, Any]:
        return SettingsDocument.model_validate(document).model_dump()

    @staticmethod
    def _merge(defaults: Dict[str, Any], stored: Dict[str, Any]) -> Dict[str, Any]:
        return {
            **defaults,
            **stored,
            "core": {**defaults.get("core", {}), **stored.get("core", {})},
            "plugins": {**defaults.get("plugins", {}), **stored.get("plugins", {})},
        }

    def register_schema(self, plugin_id: str, schema: Mapping[str, Any]) -> None:
        """Register a plugin's settings schema.

        Seeds ``{enabled: False, settings: defaults}`` for a new plugin; for a
        known plugin only keys missing from the stored settings get defaults.
        """
        definitions = {
            key: d if isinstance(d, SettingDefinition) else SettingDefinition.model_validate(d)
            for key, d in schema.items()
        }
        self._schemas[plugin_id] = definitions
        defaults = self._defaults(definitions)

        entry = self._settings["plugins"].get(plugin_id)
        if entry is None:
            self._settings["plugins"][plugin_id] = {"enabled": False, "settings": defaults}
        else:
            entry["settings"] = {**defaults, **(entry.get("settings") or {})}
        logger.debug(f"Registered settings schema for {plugin_id} ({len(definitions)} keys)")

    def get_schema(self, plugin_id: str) -> Optional[Dict[str, SettingDefinition]]:
        return self._schemas.get(plugin_id)

    @staticmethod
    def _defaults(schema: Mapping[str, SettingDefinition]) -> Dict[str, Any]:
        return {key: d.default for key, d in schema.items() if d.default is not None}

    def get(self, plugin_id: str, key: str) -> Any:
        if plugin_id == CORE_NAMESPACE:
            return self._settings["core"].get(key)

        entry = self._settings["plugins"].get(plugin_id)
        if entry is None:
            return None
        if key == ENABLED_KEY:
            return entry.get("enabled", False)
        return (entry.get("settings") or {}).get(key)

    def get_all(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        if plugin_id == CORE_NAMESPACE:
            return dict(self._settings["core"])

        entry = self._settings["plugins"].get(plugin_id)
        if entry is None:
            return None
        return {"enabled": entry.get("enabled", False), **(entry.get("settings") or {})}

    async def set(self, plugin_id: str, key: str, value: Any, skip_validation: bool = False) -> None:
        """Set a setting value.

        Args:
            plugin_id: Plugin ID ('core' for runtime-wide settings)
            key: Setting key ('enabled' is reserved)
            value: New value
            skip_validation: Skip schema validation

        Raises:
            ValidationFailed: if the value violates the registered schema
        """
        if not skip_validation:
            self._validate(plugin_id, key, value)

        old_value = self.get(plugin_id, key)

        if plugin_id == CORE_NAMESPACE:
            self._settings["core"][key] = value
        else:
            entry = self._settings["plugins"].setdefault(plugin_id, {"enabled": False, "settings": {}})
            if key == ENABLED_KEY:
                entry["enabled"] = value
            else:
                entry.setdefault("settings", {})[key] = value

        self._queue_persist()
        self._notify_watchers(plugin_id, key, value, old_value)

        await self.bus.action(
            "settings:changed",
            {"plugin_id": plugin_id, "key": key, "value": value, "old_value": old_value},
        )
        await self.bus.action(
            f"settings:plugin-changed:{plugin_id}",
            {"key": key, "value": value, "old_value": old_value},
        )

    async def set_many(self, plugin_id: str, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            await self.set(plugin_id, key, value)

    def _validate(self, plugin_id: str, key: str, value: Any) -> None:
        definition = (self._schemas.get(plugin_id) or {}).get(key)
        if definition is None:
            return

        def fail(reason: str) -> None:
            raise ValidationFailed(plugin_id, key, value, reason)

        kind = definition.type
        if kind == "boolean":
            if not isinstance(value, bool):
                fail("expected boolean")
        elif kind in ("string", "color"):
            if not isinstance(value, str):
                fail(f"expected {kind}")
            if kind == "color" and not _COLOR_PATTERN.match(value):
                fail("expected hex color")
        elif kind == "number":
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
                fail("expected number")
            if definition.min is not None and value < definition.min:
                fail(f"below minimum {definition.min}")
            if definition.max is not None and value > definition.max:
                fail(f"above maximum {definition.max}")
        elif kind == "array":
            if not isinstance(value, (list, tuple)):
                fail("expected array")
        elif kind == "object":
            if not isinstance(value, dict):
                fail("expected object")

        if definition.enum is not None and value not in definition.enum:
            fail(f"not one of {definition.enum}")

        if definition.validator is not None and not definition.validator(value):
            fail("rejected by validator")

    async def reset(self, plugin_id: str) -> None:
        """Restore a plugin's settings to its schema defaults."""
        schema = self._schemas.get(plugin_id)
        if schema is None:
            raise KeyError(f"No schema found for plugin: {plugin_id}")

        entry = self._settings["plugins"].setdefault(plugin_id, {"enabled": False, "settings": {}})
        entry["settings"] = self._defaults(schema)
        await self.flush()
        await self.bus.action("settings:reset", {"plugin_id": plugin_id})

    def watch(self, plugin_id: str, key: Optional[str], callback: Watcher) -> Callable[[], None]:
        """Watch a setting.

        Key watchers are called with ``(value, old_value)``; plugin-wide
        watchers (``key=None``) with ``(key, value, old_value)``.

        Returns:
            Function that removes the watcher
        """
        watch_key = f"{plugin_id}.{key}" if key else plugin_id
        self._watchers.setdefault(watch_key, []).append(callback)

        def unwatch() -> None:
            watchers = self._watchers.get(watch_key)
            if watchers and callback in watchers:
                watchers.remove(callback)
                if not watchers:
                    del self._watchers[watch_key]

        return unwatch

    def _notify_watchers(self, plugin_id: str, key: str, value: Any, old_value: Any) -> None:
        for callback in list(self._watchers.get(f"{plugin_id}.{key}", [])):
            try:
                callback(value, old_value)
            except Exception as e:
                logger.error(f"Error in settings watcher for {plugin_id}.{key}: {e}", exc_info=True)

        for callback in list(self._watchers.get(plugin_id, [])):
            try:
                callback(key, value, old_value)
            except Exception as e:
                logger.error(f"Error in settings watcher for {plugin_id}: {e}", exc_info=True)

    def _queue_persist(self) -> None:
        """Coalesce writes inside the debounce window into one persist."""
        loop = asyncio.get_running_loop()
        if self._persist_handle is not None:
            self._persist_handle.cancel()
        self._persist_handle = loop.call_later(self.persist_debounce, self._start_persist)

    def _start_persist(self) -> None:
        self._persist_handle = None
        task = asyncio.ensure_future(self._persist())
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _persist(self) -> None:
        try:
            await self.storage.set({self.STORAGE_KEY: copy.deepcopy(self._settings)})
            logger.debug("Persisted settings")
        except Exception as e:
            logger.error(f"Failed to persist settings: {e}")

    async def flush(self) -> None:
        """Persist now, dropping any scheduled write."""
        if self._persist_handle is not None:
            self._persist_handle.cancel()
            self._persist_handle = None
        await self._persist()

    @property
    def has_pending_writes(self) -> bool:
        return self._persist_handle is not None or bool(self._persist_tasks)

    def sync_from_storage(self, document: Optional[Mapping[str, Any]]) -> bool:
        """Adopt a document written by another context.

        Never persists or notifies. Skipped while a local write is pending,
        since the local document is newer.

        Returns:
            True if the document was adopted
        """
        if not document or self.has_pending_writes:
            return False
        try:
            self._settings = self._merge(default_document(), self._validate_document(document))
        except ValidationError as e:
            logger.error(f"Ignoring malformed settings document from storage: {e}")
            return False
        for plugin_id, schema in self._schemas.items():
            entry = self._settings["plugins"].setdefault(plugin_id, {"enabled": False, "settings": {}})
            entry["settings"] = {**self._defaults(schema), **(entry.get("settings") or {})}
        return True

    def export_settings(self) -> str:
        return json.dumps(self._settings, indent=2, ensure_ascii=False)

    async def import_settings(self, data: Union[str, Mapping[str, Any]], merge: bool = True) -> bool:
        """Import a settings document.

        Args:
            data: JSON text or an already-parsed document
            merge: Merge with the current document (True) or replace it (False)

        Returns:
            True if imported successfully
        """
        try:
            parsed = json.loads(data) if isinstance(data, str) else dict(data)
            imported = self._validate_document(parsed)
        except (json.JSONDecodeError, ValidationError, TypeError, ValueError) as e:
            logger.error(f"Failed to import settings: {e}")
            return False

        if merge:
            self._settings = self._merge(self._settings, imported)
        else:
            self._settings = self._merge(default_document(), imported)

        await self.flush()
        await self.bus.action("settings:imported", {"merge": merge})
        logger.info(f"Imported settings (merge={merge})")
        return True

    def is_enabled(self, plugin_id: str) -> bool:
        entry = self._settings["plugins"].get(plugin_id)
        return bool(entry and entry.get("enabled"))

    async def enable(self, plugin_id: str) -> None:
        await self.set(plugin_id, ENABLED_KEY, True, skip_validation=True)

    async def disable(self, plugin_id: str) -> None:
        await self.set(plugin_id, ENABLED_KEY, False, skip_validation=True)

    def get_enabled_plugins(self) -> List[str]:
        return [pid for pid, entry in self._settings["plugins"].items() if entry.get("enabled")]

    async def migrate(self, migration: Callable[[Dict[str, Any]], Any]) -> bool:
        """Replace the document with ``migration(document)`` and persist it."""
        try:
            result = migration(copy.deepcopy(self._settings))
            if inspect.isawaitable(result):
                result = await result
            self._settings = self._merge(default_document(), self._validate_document(result))
        except Exception as e:
            logger.error(f"Settings migration failed: {e}")
            return False

        await self.flush()
        return True

    def close(self) -> None:
        """Drop scheduled and in-flight persists."""
        if self._persist_handle is not None:
            self._persist_handle.cancel()
            self._persist_handle = None
        for task in list(self._persist_tasks):
            task.cancel()
        self._persist_tasks.clear()
