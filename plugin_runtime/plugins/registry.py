"""Plugin registry - catalog of manifests, instances, states and the dependency graph."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from plugin_runtime.plugins.errors import DuplicateModule
from plugin_runtime.plugins.manifest import PluginManifest, PluginModule

logger = logging.getLogger(__name__)


class PluginState(str, Enum):
    """Plugin lifecycle states."""

    UNLOADED = "UNLOADED"
    LOADING = "LOADING"
    LOADED = "LOADED"
    STARTING = "STARTING"
    ACTIVE = "ACTIVE"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    DESTROYED = "DESTROYED"

    def __str__(self) -> str:
        return self.value


@dataclass
class DependencyCheck:
    met: bool
    missing: List[str] = field(default_factory=list)


@dataclass
class ConflictCheck:
    conflicts: bool
    conflicting: List[str] = field(default_factory=list)


@dataclass
class PluginMetadata:
    registered_at: float
    load_time: Optional[float] = None
    last_error: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "registered_at": self.registered_at,
            "load_time": self.load_time,
            "last_error": self.last_error,
        }


class PluginRegistry:
    """Central registry for all plugins.

    The registry only mutates its own maps; it never calls into plugin code.
    """

    def __init__(self):
        self._manifests: Dict[str, PluginManifest] = {}
        self._instances: Dict[str, PluginModule] = {}
        self._states: Dict[str, PluginState] = {}
        self._errors: Dict[str, BaseException] = {}
        self._metadata: Dict[str, PluginMetadata] = {}
        # plugin -> its dependencies (required + optional)
        self._dependencies: Dict[str, List[str]] = {}
        # plugin -> plugins that depend on it
        self._dependents: Dict[str, List[str]] = {}

    def register(self, manifest: PluginManifest) -> None:
        """Register a plugin manifest.

        Raises:
            DuplicateModule: if a plugin with the same id is registered
        """
        plugin_id = manifest.id
        if plugin_id in self._manifests:
            raise DuplicateModule(plugin_id)

        self._manifests[plugin_id] = manifest
        self._states[plugin_id] = PluginState.UNLOADED
        self._metadata[plugin_id] = PluginMetadata(registered_at=time.time())

        deps = manifest.all_dependencies
        self._dependencies[plugin_id] = list(deps)
        for dep_id in deps:
            self._dependents.setdefault(dep_id, []).append(plugin_id)

        logger.info(f"Registered plugin: {plugin_id} ({manifest.version})")

    def unregister(self, plugin_id: str) -> None:
        """Remove a plugin and its dependency edges."""
        for dep_id in self._dependencies.get(plugin_id, []):
            dependents = self._dependents.get(dep_id)
            if dependents and plugin_id in dependents:
                dependents.remove(plugin_id)

        for table in (
            self._manifests,
            self._instances,
            self._states,
            self._errors,
            self._metadata,
            self._dependencies,
        ):
            table.pop(plugin_id, None)
        logger.debug(f"Unregistered plugin: {plugin_id}")

    def get_manifest(self, plugin_id: str) -> Optional[PluginManifest]:
        return self._manifests.get(plugin_id)

    def get_instance(self, plugin_id: str) -> Optional[PluginModule]:
        return self._instances.get(plugin_id)

    def set_instance(self, plugin_id: str, instance: PluginModule) -> None:
        self._instances[plugin_id] = instance

    def remove_instance(self, plugin_id: str) -> Optional[PluginModule]:
        return self._instances.pop(plugin_id, None)

    def get_state(self, plugin_id: str) -> PluginState:
        """Current state; unknown plugins report UNLOADED."""
        return self._states.get(plugin_id, PluginState.UNLOADED)

    def set_state(self, plugin_id: str, state: PluginState) -> PluginState:
        """Set the state and return the previous one."""
        old_state = self.get_state(plugin_id)
        self._states[plugin_id] = state

        meta = self._metadata.get(plugin_id)
        if meta and state == PluginState.ACTIVE and meta.load_time is None:
            meta.load_time = time.time() - meta.registered_at

        if old_state != state:
            logger.debug(f"Plugin {plugin_id}: {old_state} -> {state}")
        return old_state

    def get_error(self, plugin_id: str) -> Optional[BaseException]:
        return self._errors.get(plugin_id)

    def record_error(self, plugin_id: str, error: BaseException) -> None:
        """Store an error without touching the plugin's state."""
        self._errors[plugin_id] = error
        meta = self._metadata.get(plugin_id)
        if meta:
            meta.last_error = {"message": str(error), "type": type(error).__name__, "timestamp": time.time()}

    def set_error(self, plugin_id: str, error: BaseException) -> None:
        """Store an error and force the plugin into the ERROR state."""
        self.record_error(plugin_id, error)
        self.set_state(plugin_id, PluginState.ERROR)

    def clear_error(self, plugin_id: str) -> None:
        self._errors.pop(plugin_id, None)

    def get_all_plugins(self) -> List[str]:
        return list(self._manifests)

    def get_plugins_by_state(self, state: PluginState) -> List[str]:
        return [pid for pid, s in self._states.items() if s == state]

    def get_active_plugins(self) -> List[str]:
        return self.get_plugins_by_state(PluginState.ACTIVE)

    def get_plugins_by_tag(self, tag: str) -> List[str]:
        return [pid for pid, m in self._manifests.items() if tag in m.tags]

    def get_plugins_by_category(self, category: str) -> List[str]:
        return [pid for pid, m in self._manifests.items() if m.category == category]

    def get_categories(self) -> List[str]:
        categories: List[str] = []
        for manifest in self._manifests.values():
            if manifest.category and manifest.category not in categories:
                categories.append(manifest.category)
        return categories

    def get_tags(self) -> List[str]:
        tags: List[str] = []
        for manifest in self._manifests.values():
            for tag in manifest.tags:
                if tag not in tags:
                    tags.append(tag)
        return tags

    def get_dependencies(self, plugin_id: str) -> List[str]:
        return list(self._dependencies.get(plugin_id, []))

    def get_dependents(self, plugin_id: str) -> List[str]:
        return list(self._dependents.get(plugin_id, []))

    def check_dependencies(
        self,
        plugin_id: str,
        satisfied_by: Optional[Iterable[PluginState]] = None,
    ) -> DependencyCheck:
        """Check that every required (non-optional) dependency is satisfied.

        Args:
            plugin_id: Plugin ID
            satisfied_by: States that count as satisfied (default: ACTIVE only)

        Returns:
            DependencyCheck with the missing dependency ids
        """
        manifest = self.get_manifest(plugin_id)
        if manifest is None:
            return DependencyCheck(met=False)

        ok_states = set(satisfied_by) if satisfied_by else {PluginState.ACTIVE}
        missing = [dep for dep in manifest.dependencies if self.get_state(dep) not in ok_states]
        return DependencyCheck(met=not missing, missing=missing)

    def check_conflicts(self, plugin_id: str) -> ConflictCheck:
        """Check the plugin's declared conflicts against active plugins."""
        manifest = self.get_manifest(plugin_id)
        if manifest is None or not manifest.conflicts:
            return ConflictCheck(conflicts=False)

        active = set(self.get_active_plugins())
        conflicting = [pid for pid in manifest.conflicts if pid in active]
        return ConflictCheck(conflicts=bool(conflicting), conflicting=conflicting)

    def search(self, query: str) -> List[str]:
        """Case-insensitive search over plugin names and descriptions."""
        needle = query.lower()
        return [
            pid
            for pid, m in self._manifests.items()
            if needle in m.name.lower() or needle in m.description.lower()
        ]

    def get_metadata(self, plugin_id: str) -> Optional[PluginMetadata]:
        return self._metadata.get(plugin_id)

    def get_plugin_info(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        """Manifest fields merged with runtime state, for API responses."""
        manifest = self.get_manifest(plugin_id)
        if manifest is None:
            return None

        error = self.get_error(plugin_id)
        meta = self.get_metadata(plugin_id)
        info = manifest.to_dict()
        info.update(
            {
                "state": self.get_state(plugin_id).value,
                "error": str(error) if error else None,
                "metadata": meta.to_dict() if meta else None,
                "dependencies": self.get_dependencies(plugin_id),
                "dependents": self.get_dependents(plugin_id),
            }
        )
        return info

    def get_all_plugin_info(self) -> List[Dict[str, Any]]:
        return [self.get_plugin_info(pid) for pid in self.get_all_plugins()]

    def has(self, plugin_id: str) -> bool:
        return plugin_id in self._manifests

    def count(self) -> int:
        return len(self._manifests)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total": len(self._manifests),
            "by_state": {state.value: len(self.get_plugins_by_state(state)) for state in PluginState},
            "by_category": {c: len(self.get_plugins_by_category(c)) for c in self.get_categories()},
            "with_errors": len(self._errors),
        }

    def clear(self) -> None:
        for table in (
            self._manifests,
            self._instances,
            self._states,
            self._errors,
            self._metadata,
            self._dependencies,
            self._dependents,
        ):
            table.clear()
