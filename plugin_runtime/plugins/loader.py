"""Plugin loader - discovery, dependency ordering and loading."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from plugin_runtime.plugins.discovery import PluginSource
from plugin_runtime.plugins.errors import (
    CircularDependency,
    ConflictDetected,
    DependencyUnmet,
    DuplicateModule,
    InvalidStateTransition,
    ManifestInvalid,
    PluginError,
    PluginNotFound,
)
from plugin_runtime.plugins.manifest import PluginModule
from plugin_runtime.plugins.registry import PluginRegistry, PluginState

logger = logging.getLogger(__name__)

# A dependency is usable at load time once it has been loaded, not only once active
LOADED_STATES = frozenset(
    {
        PluginState.LOADED,
        PluginState.STARTING,
        PluginState.ACTIVE,
        PluginState.STOPPING,
        PluginState.STOPPED,
    }
)


@dataclass
class LoadReport:
    loaded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"loaded": list(self.loaded), "failed": dict(self.failed)}


class PluginLoader:
    """Discovers plugins from a source, orders them and loads them."""

    def __init__(self, registry: PluginRegistry, source: PluginSource):
        self.registry = registry
        self.source = source
        # Imported during discovery, keyed by plugin id
        self._modules: Dict[str, PluginModule] = {}
        self._loaded: Dict[str, PluginModule] = {}
        self.load_order: List[str] = []

    async def discover_plugins(self) -> List[str]:
        """Import every enabled registry entry and register its manifest.

        Invalid, duplicate and unimportable plugins are logged and skipped.

        Returns:
            Ids of the newly registered plugins, in registry order
        """
        entries = await self.source.list_plugins()
        discovered = []

        for entry in entries:
            if not entry.enabled:
                logger.debug(f"Plugin '{entry.id}' is disabled in the registry, skipping")
                continue

            try:
                export = await self.source.import_plugin(entry)
                module = PluginModule.from_export(export)
                if module.id != entry.id:
                    raise ManifestInvalid(
                        f"manifest id '{module.id}' does not match registry id", entry.id
                    )
                self.registry.register(module.manifest)
            except (ManifestInvalid, DuplicateModule) as e:
                logger.warning(f"Skipping plugin '{entry.id}': {e}")
                continue
            except Exception as e:
                logger.error(f"Failed to import plugin '{entry.id}': {e}")
                continue

            self._modules[module.id] = module
            discovered.append(module.id)

        logger.info(f"Discovered {len(discovered)}/{len(entries)} plugin(s)")
        return discovered

    def add_module(self, module: PluginModule) -> None:
        """Register an already-built module, bypassing the source."""
        self.registry.register(module.manifest)
        self._modules[module.id] = module

    def resolve_load_order(self, plugin_ids: Iterable[str]) -> List[str]:
        """Topologically sort ``plugin_ids`` (Kahn's algorithm).

        Edges come from required and optional dependencies that are
        themselves in ``plugin_ids``. Ties are broken by input order.

        Raises:
            CircularDependency: naming every id that could not be ordered
        """
        ids = list(dict.fromkeys(plugin_ids))
        wanted = set(ids)

        in_degree = {pid: 0 for pid in ids}
        dependents: Dict[str, List[str]] = {pid: [] for pid in ids}
        for pid in ids:
            manifest = self.registry.get_manifest(pid)
            deps = manifest.all_dependencies if manifest else []
            for dep in dict.fromkeys(deps):
                if dep in wanted:
                    dependents[dep].append(pid)
                    in_degree[pid] += 1

        queue = deque(pid for pid in ids if in_degree[pid] == 0)
        order = []
        while queue:
            pid = queue.popleft()
            order.append(pid)
            for dependent in dependents[pid]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) < len(ids):
            resolved = set(order)
            raise CircularDependency([pid for pid in ids if pid not in resolved])

        return order

    def load_plugin(self, plugin_id: str) -> PluginModule:
        """Load a discovered plugin. Returns the cached module if already loaded.

        Raises:
            PluginNotFound: if the plugin was never discovered
            DependencyUnmet: if a required dependency is not loaded
            ConflictDetected: if a conflicting plugin is active
        """
        if plugin_id in self._loaded:
            return self._loaded[plugin_id]

        module = self._modules.get(plugin_id)
        if module is None or not self.registry.has(plugin_id):
            raise PluginNotFound(plugin_id)

        deps = self.registry.check_dependencies(plugin_id, satisfied_by=LOADED_STATES)
        if not deps.met:
            raise DependencyUnmet(plugin_id, deps.missing)

        conflicts = self.registry.check_conflicts(plugin_id)
        if conflicts.conflicts:
            raise ConflictDetected(plugin_id, conflicts.conflicting)

        self.registry.set_state(plugin_id, PluginState.LOADING)
        self.registry.set_instance(plugin_id, module)
        self.registry.set_state(plugin_id, PluginState.LOADED)

        self._loaded[plugin_id] = module
        self.load_order.append(plugin_id)
        logger.info(f"Loaded plugin: {plugin_id} (capabilities: {', '.join(sorted(module.capabilities)) or 'none'})")
        return module

    def load_plugins(self, plugin_ids: Iterable[str]) -> LoadReport:
        """Load plugins in dependency order, continuing past failures.

        Each failure is recorded on that plugin only (state ERROR).

        Raises:
            CircularDependency: if the ids cannot be ordered
        """
        report = LoadReport()
        for plugin_id in self.resolve_load_order(plugin_ids):
            try:
                self.load_plugin(plugin_id)
                report.loaded.append(plugin_id)
            except PluginError as e:
                logger.error(f"Failed to load plugin {plugin_id}: {e}")
                if self.registry.has(plugin_id):
                    self.registry.set_error(plugin_id, e)
                report.failed[plugin_id] = str(e)

        logger.info(f"Loaded {len(report.loaded)}/{len(report.loaded) + len(report.failed)} plugin(s)")
        return report

    def unload_plugin(self, plugin_id: str) -> bool:
        """Forget a loaded plugin's instance. The manifest stays registered.

        Raises:
            InvalidStateTransition: if the plugin is still running
        """
        if plugin_id not in self._loaded:
            return False

        state = self.registry.get_state(plugin_id)
        if state in (PluginState.STARTING, PluginState.ACTIVE, PluginState.STOPPING):
            raise InvalidStateTransition(
                plugin_id, state, "unload", [PluginState.LOADED, PluginState.STOPPED]
            )

        del self._loaded[plugin_id]
        if plugin_id in self.load_order:
            self.load_order.remove(plugin_id)
        self.registry.remove_instance(plugin_id)
        self.registry.set_state(plugin_id, PluginState.UNLOADED)
        logger.info(f"Unloaded plugin: {plugin_id}")
        return True

    def get_dependency_tree(self, plugin_id: str, _visited: Optional[Set[str]] = None) -> Dict[str, Any]:
        visited = set(_visited or ())
        if plugin_id in visited:
            return {"id": plugin_id, "circular": True}
        visited.add(plugin_id)

        manifest = self.registry.get_manifest(plugin_id)
        if manifest is None:
            return {"id": plugin_id, "error": "Not found"}

        return {
            "id": plugin_id,
            "name": manifest.name,
            "version": manifest.version,
            "state": self.registry.get_state(plugin_id).value,
            "dependencies": [
                self.get_dependency_tree(dep, visited) for dep in self.registry.get_dependencies(plugin_id)
            ],
        }

    def get_module(self, plugin_id: str) -> Optional[PluginModule]:
        return self._modules.get(plugin_id)

    def get_loaded_plugins(self) -> List[str]:
        return list(self._loaded)

    def is_loaded(self, plugin_id: str) -> bool:
        return plugin_id in self._loaded

    def get_stats(self) -> Dict[str, Any]:
        return {
            "discovered": len(self._modules),
            "loaded": len(self._loaded),
            "load_order": list(self.load_order),
        }

    def clear(self) -> None:
        self._modules.clear()
        self._loaded.clear()
        self.load_order.clear()
