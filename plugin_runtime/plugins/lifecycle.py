"""Plugin lifecycle management - the state machine behind start/stop.

    LOADED/STOPPED --start--> STARTING --> ACTIVE
    ACTIVE --stop--> STOPPING --> STOPPED
    any --destroy--> DESTROYED

A failure inside plugin code never escapes this module: it is wrapped in
LifecycleHookFailed, recorded on the registry and emitted as ``plugin:error``.
Misuse (wrong state, unmet dependencies, active conflicts or dependents) is
raised to the caller before anything changes.
"""
from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from plugin_runtime.plugins.config import PluginConfigService
from plugin_runtime.plugins.errors import (
    ActiveDependents,
    ConflictDetected,
    DependencyUnmet,
    InvalidStateTransition,
    LifecycleHookFailed,
    PluginNotFound,
)
from plugin_runtime.plugins.hooks import DEFAULT_PRIORITY, EventBus, HookContext
from plugin_runtime.plugins.manifest import PluginModule
from plugin_runtime.plugins.registry import PluginRegistry, PluginState

if TYPE_CHECKING:
    from plugin_runtime.plugins.api import PluginAPI

logger = logging.getLogger(__name__)


def _bind_hook(handler: Callable[..., Any], api: Optional[PluginAPI]) -> Callable[[HookContext], Any]:
    """Manifest hook handlers are called as ``handler(context, api)``."""

    def bound(context: HookContext) -> Any:
        return handler(context, api)

    bound.__name__ = getattr(handler, "__name__", "hook")
    return bound


class PluginLifecycle:
    """Drives plugins through init --> start --> stop --> destroy."""

    def __init__(self, registry: PluginRegistry, bus: EventBus, config: PluginConfigService):
        self.registry = registry
        self.bus = bus
        self.config = config
        self._counters: Dict[str, int] = {"starts": 0, "stops": 0, "failures": 0}

    def _require_instance(self, plugin_id: str) -> PluginModule:
        module = self.registry.get_instance(plugin_id)
        if module is None:
            raise PluginNotFound(plugin_id)
        return module

    async def _call_slot(self, module: PluginModule, phase: str, api: Optional[PluginAPI]) -> None:
        fn = getattr(module, phase)
        if fn is None:
            return
        try:
            result = fn(api)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            raise LifecycleHookFailed(module.id, phase, e) from e

    async def _report(self, plugin_id: str, error: BaseException) -> None:
        self._counters["failures"] += 1
        logger.error(f"Plugin {plugin_id}: {error}")
        await self.bus.action("plugin:error", {"plugin_id": plugin_id, "error": str(error)})

    async def init_plugin(self, plugin_id: str, api: Optional[PluginAPI] = None) -> bool:
        """Run the plugin's ``init`` hook. Only legal from LOADED; never changes state.

        Returns:
            True if init succeeded (or the plugin has no init hook)
        """
        module = self._require_instance(plugin_id)
        state = self.registry.get_state(plugin_id)
        if state != PluginState.LOADED:
            raise InvalidStateTransition(plugin_id, state, "init", [PluginState.LOADED])

        try:
            await self._call_slot(module, "init", api)
        except LifecycleHookFailed as e:
            self.registry.record_error(plugin_id, e)
            await self._report(plugin_id, e)
            return False

        logger.debug(f"Initialized plugin: {plugin_id}")
        return True

    async def start_plugin(self, plugin_id: str, api: Optional[PluginAPI] = None) -> bool:
        """Start a plugin, rolling back completely if its start hook fails.

        Args:
            plugin_id: Plugin to start
            api: Capability context handed to the plugin

        Returns:
            True if the plugin is ACTIVE afterwards

        Raises:
            InvalidStateTransition: if not LOADED or STOPPED
            DependencyUnmet: if a required dependency is not active
            ConflictDetected: if a conflicting plugin is active
        """
        module = self._require_instance(plugin_id)
        state = self.registry.get_state(plugin_id)
        if state == PluginState.ACTIVE:
            logger.debug(f"Plugin {plugin_id} already active, skip start")
            return True
        if state not in (PluginState.LOADED, PluginState.STOPPED):
            raise InvalidStateTransition(
                plugin_id, state, "start", [PluginState.LOADED, PluginState.STOPPED]
            )

        deps = self.registry.check_dependencies(plugin_id)
        if not deps.met:
            raise DependencyUnmet(plugin_id, deps.missing)
        conflicts = self.registry.check_conflicts(plugin_id)
        if conflicts.conflicts:
            raise ConflictDetected(plugin_id, conflicts.conflicting)

        await self.bus.action("plugin:before-enable", {"plugin_id": plugin_id})

        # Rollback snapshot
        prior_state = self.registry.get_state(plugin_id)
        prior_tokens = self.bus.owner_tokens(plugin_id)

        self.registry.set_state(plugin_id, PluginState.STARTING)
        try:
            manifest = module.manifest
            for hook_name, handler in manifest.hooks.items():
                self.bus.register(hook_name, _bind_hook(handler, api), priority=DEFAULT_PRIORITY, owner=plugin_id)
            if manifest.settings:
                self.config.register_schema(plugin_id, manifest.settings)
            await self._call_slot(module, "start", api)
        except Exception as e:
            self.bus.unregister_tokens(self.bus.owner_tokens(plugin_id) - prior_tokens)
            self.registry.set_state(plugin_id, prior_state)
            error = e if isinstance(e, LifecycleHookFailed) else LifecycleHookFailed(plugin_id, "start", e)
            self.registry.record_error(plugin_id, error)
            await self._report(plugin_id, error)
            return False

        self.registry.set_state(plugin_id, PluginState.ACTIVE)
        self.registry.clear_error(plugin_id)
        self._counters["starts"] += 1
        logger.info(f"Started plugin: {plugin_id}")
        await self.bus.action("plugin:enabled", {"plugin_id": plugin_id})
        return True

    async def stop_plugin(self, plugin_id: str, api: Optional[PluginAPI] = None) -> bool:
        """Stop an active plugin. Its hooks are removed even if its stop hook fails.

        Raises:
            InvalidStateTransition: if not ACTIVE (STOPPED is a no-op)
            ActiveDependents: if an active plugin depends on this one
        """
        module = self._require_instance(plugin_id)
        state = self.registry.get_state(plugin_id)
        if state == PluginState.STOPPED:
            logger.debug(f"Plugin {plugin_id} already stopped, skip stop")
            return True
        if state != PluginState.ACTIVE:
            raise InvalidStateTransition(plugin_id, state, "stop", [PluginState.ACTIVE])

        blockers = [
            dep for dep in self.registry.get_dependents(plugin_id)
            if self.registry.get_state(dep) == PluginState.ACTIVE
        ]
        if blockers:
            raise ActiveDependents(plugin_id, blockers)

        await self.bus.action("plugin:before-disable", {"plugin_id": plugin_id})
        self.registry.set_state(plugin_id, PluginState.STOPPING)

        error = None
        try:
            await self._call_slot(module, "stop", api)
        except LifecycleHookFailed as e:
            error = e
        finally:
            self.bus.unregister_owner(plugin_id)

        self.registry.set_state(plugin_id, PluginState.STOPPED)
        self._counters["stops"] += 1
        if error is not None:
            self.registry.record_error(plugin_id, error)
            await self._report(plugin_id, error)

        logger.info(f"Stopped plugin: {plugin_id}")
        await self.bus.action("plugin:disabled", {"plugin_id": plugin_id})
        return True

    async def destroy_plugin(self, plugin_id: str, api: Optional[PluginAPI] = None) -> bool:
        """Best-effort terminal cleanup; always ends in DESTROYED."""
        module = self._require_instance(plugin_id)
        state = self.registry.get_state(plugin_id)
        if state == PluginState.DESTROYED:
            return True
        if state == PluginState.ACTIVE:
            await self.stop_plugin(plugin_id, api)

        try:
            await self._call_slot(module, "destroy", api)
        except LifecycleHookFailed as e:
            self.registry.record_error(plugin_id, e)
            await self._report(plugin_id, e)

        self.bus.unregister_owner(plugin_id)
        self.registry.set_state(plugin_id, PluginState.DESTROYED)
        logger.info(f"Destroyed plugin: {plugin_id}")
        return True

    async def reload_plugin(self, plugin_id: str, api: Optional[PluginAPI] = None) -> bool:
        """Stop then start an active plugin; anything else is a no-op."""
        if self.registry.get_state(plugin_id) != PluginState.ACTIVE:
            logger.debug(f"Plugin {plugin_id} not active, skip reload")
            return True

        await self.stop_plugin(plugin_id, api)
        return await self.start_plugin(plugin_id, api)

    async def enable_plugin(self, plugin_id: str, api: Optional[PluginAPI] = None) -> bool:
        """Bring a plugin to ACTIVE from whatever resting state it is in.

        LOADED runs init first; ERROR is retried from a clean STOPPED state.
        """
        state = self.registry.get_state(plugin_id)
        if state == PluginState.ACTIVE:
            return True

        if state == PluginState.LOADED:
            if not await self.init_plugin(plugin_id, api):
                return False
        elif state == PluginState.ERROR:
            self._require_instance(plugin_id)
            self.bus.unregister_owner(plugin_id)
            self.registry.set_state(plugin_id, PluginState.STOPPED)

        return await self.start_plugin(plugin_id, api)

    async def disable_plugin(self, plugin_id: str, api: Optional[PluginAPI] = None) -> bool:
        if self.registry.get_state(plugin_id) != PluginState.ACTIVE:
            return True
        return await self.stop_plugin(plugin_id, api)

    async def handle_error(self, plugin_id: str, error: BaseException) -> None:
        """A running plugin reported a fatal error: tear down its hooks, mark ERROR."""
        was_active = self.registry.get_state(plugin_id) == PluginState.ACTIVE
        removed = self.bus.unregister_owner(plugin_id)
        self.registry.set_error(plugin_id, error)
        logger.error(
            f"Plugin {plugin_id} failed at runtime (was active: {was_active}, hooks removed: {removed}): {error}"
        )
        self._counters["failures"] += 1
        await self.bus.action("plugin:error", {"plugin_id": plugin_id, "error": str(error)})

    def get_stats(self) -> Dict[str, Any]:
        return {**self._counters, "states": self.registry.get_stats()["by_state"]}

    def clear(self) -> None:
        for key in self._counters:
            self._counters[key] = 0
