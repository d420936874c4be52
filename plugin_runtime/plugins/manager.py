"""Plugin manager - top-level orchestrator for the plugin runtime.

Startup order (each step waits for the previous one):
    1. load settings from storage
    2. install IPC command handlers and core hooks
    3. discover plugins and register their manifests
    4. load them in dependency order
    5. register every loaded plugin's settings schema
    6. start the plugins the settings mark enabled (no write-back)
    7. wait for the host environment to be stable
    8. observe environment events (throttled into ``env:mutated``)
    9. mark initialized

Commands (``enable_plugin``/``disable_plugin``) write storage first and sync
the runtime second, undoing the write if the runtime half fails. Storage
changes made elsewhere are reconciled into the runtime without ever writing
storage back. Every runtime start or stop of a plugin holds that plugin's
lock, and reconciliation re-reads the enabled flag after each step until the
runtime agrees with it, so the echo of one of our own commands settles as a
no-op.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from plugin_runtime.constants import (
    ENV_EVENT_THROTTLE,
    IPC_DEFAULT_TIMEOUT,
    SETTINGS_PERSIST_DEBOUNCE,
    STORAGE_CHANGE_DEBOUNCE,
)
from plugin_runtime.plugins.api import PluginAPI
from plugin_runtime.plugins.config import CORE_NAMESPACE, ENABLED_KEY, PluginConfigService
from plugin_runtime.plugins.discovery import PluginSource
from plugin_runtime.plugins.environment import HostEnvironment
from plugin_runtime.plugins.errors import CircularDependency, PluginError, PluginNotFound
from plugin_runtime.plugins.hooks import EventBus, HookContext
from plugin_runtime.plugins.ipc import MessageBroker
from plugin_runtime.plugins.lifecycle import PluginLifecycle
from plugin_runtime.plugins.loader import PluginLoader
from plugin_runtime.plugins.registry import PluginRegistry, PluginState
from plugin_runtime.plugins.storage import StorageBackend
from plugin_runtime.plugins.transport import Transport

logger = logging.getLogger(__name__)


class PluginManager:
    """Top-level plugin runtime orchestrator.

    Owns one instance of every collaborator and passes them explicitly to
    each other and to the plugins' API objects.
    """

    def __init__(
        self,
        storage: StorageBackend,
        source: PluginSource,
        transport: Optional[Transport] = None,
        environment: Optional[HostEnvironment] = None,
        ipc_timeout: float = IPC_DEFAULT_TIMEOUT,
        persist_debounce: float = SETTINGS_PERSIST_DEBOUNCE,
        storage_debounce: float = STORAGE_CHANGE_DEBOUNCE,
        env_throttle: float = ENV_EVENT_THROTTLE,
    ):
        self.storage = storage
        self.environment = environment or HostEnvironment()
        self.storage_debounce = storage_debounce
        self.env_throttle = env_throttle

        self.registry = PluginRegistry()
        self.bus = EventBus()
        self.config = PluginConfigService(storage, self.bus, persist_debounce=persist_debounce)
        self.loader = PluginLoader(self.registry, source)
        self.lifecycle = PluginLifecycle(self.registry, self.bus, self.config)
        self.broker = MessageBroker(transport, default_timeout=ipc_timeout) if transport is not None else None

        self.initialized = False
        self.destroyed = False
        self._initializing = False

        self._apis: Dict[str, PluginAPI] = {}
        # "{plugin_id}:{enable|disable}" -> the command's task
        self._operations: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: set = set()
        self._listeners: List[Callable[[], None]] = []
        self._env_disconnect: Optional[Callable[[], None]] = None

        self._storage_change: Optional[Dict[str, Any]] = None
        self._storage_handle: Optional[asyncio.TimerHandle] = None
        self._env_buffer: List[Any] = []
        self._env_handle: Optional[asyncio.TimerHandle] = None

    # === Startup ===

    async def initialize(self) -> None:
        """Run the startup sequence once per manager lifetime."""
        if self.initialized or self._initializing:
            logger.warning("Plugin manager already initialized or initializing, skipping")
            return
        if self.destroyed:
            logger.warning("Plugin manager was destroyed, cannot initialize")
            return

        self._initializing = True
        try:
            await self.config.init()

            self._install_ipc_handlers()
            self._install_core_hooks()
            self._listeners.append(self.storage.on_changed(self._on_storage_changed))

            discovered = await self.loader.discover_plugins()
            self._load_all(discovered)

            for plugin_id in self.loader.load_order:
                self.config.register_schema(plugin_id, self.registry.get_manifest(plugin_id).settings)

            started = 0
            for plugin_id in self.loader.load_order:
                if self.destroyed:
                    return
                if not self.config.is_enabled(plugin_id):
                    continue
                async with self._plugin_lock(plugin_id):
                    if await self._runtime_start(plugin_id):
                        started += 1

            await self.bus.action("framework:ready", {"discovered": len(discovered), "enabled": started})

            await self.environment.wait_until_stable()
            if self.destroyed:
                return
            self._env_disconnect = self.environment.observe(self._on_environment_events)
            await self.bus.action("env:ready", {})

            self.initialized = True
            logger.info(
                f"Plugin runtime initialized, "
                f"{started}/{self.registry.count()} plugins started"
            )
        finally:
            self._initializing = False

    def _load_all(self, plugin_ids: List[str]) -> None:
        """Load in dependency order; plugins caught in a cycle are marked ERROR."""
        pending = list(plugin_ids)
        while pending:
            try:
                self.loader.load_plugins(pending)
                return
            except CircularDependency as e:
                logger.error(str(e))
                for plugin_id in e.plugin_ids:
                    self.registry.set_error(plugin_id, e)
                cyclic = set(e.plugin_ids)
                pending = [pid for pid in pending if pid not in cyclic]

    def _install_ipc_handlers(self) -> None:
        if self.broker is None:
            return

        handlers = {
            "plugin:enable": self._ipc_enable,
            "plugin:disable": self._ipc_disable,
            "plugin:reload": self._ipc_reload,
            "plugin:getInfo": lambda data, sender: self.get_plugin_info(data["plugin_id"]),
            "plugins:getAll": lambda data, sender: self.list_plugins(),
            "settings:get": lambda data, sender: self.get_plugin_settings(data["plugin_id"]),
            "settings:change": self._ipc_change_setting,
        }
        for action, handler in handlers.items():
            self._listeners.append(self.broker.on(action, handler))

    async def _ipc_enable(self, data: Dict[str, Any], sender: Optional[str]) -> Dict[str, Any]:
        plugin_id = data["plugin_id"]
        success = await self.enable_plugin(plugin_id)
        return {"success": success, "plugin": self.get_plugin_info(plugin_id)}

    async def _ipc_disable(self, data: Dict[str, Any], sender: Optional[str]) -> Dict[str, Any]:
        plugin_id = data["plugin_id"]
        success = await self.disable_plugin(plugin_id)
        return {"success": success, "plugin": self.get_plugin_info(plugin_id)}

    async def _ipc_reload(self, data: Dict[str, Any], sender: Optional[str]) -> Dict[str, Any]:
        plugin_id = data["plugin_id"]
        success = await self.reload_plugin(plugin_id)
        return {"success": success, "plugin": self.get_plugin_info(plugin_id)}

    async def _ipc_change_setting(self, data: Dict[str, Any], sender: Optional[str]) -> Dict[str, Any]:
        plugin_id, key = data["plugin_id"], data["key"]
        value = await self.update_plugin_setting(plugin_id, key, data.get("value"))
        return {"plugin_id": plugin_id, "key": key, "value": value}

    def _install_core_hooks(self) -> None:
        self._listeners.append(self.bus.register("settings:changed", self._forward_settings_change))
        self._listeners.append(self.bus.register("plugin:error", self._forward_plugin_error))

    async def _forward_settings_change(self, context: HookContext) -> None:
        if self.broker is not None:
            await self.broker.send_event("settings:changed", context.data)

    async def _forward_plugin_error(self, context: HookContext) -> None:
        logger.warning(f"Plugin error event: {context.data}")
        if self.broker is not None:
            await self.broker.send_event("plugin:error", context.data)

    # === Runtime paths (never write storage) ===

    def _plugin_lock(self, plugin_id: str) -> asyncio.Lock:
        lock = self._locks.get(plugin_id)
        if lock is None:
            lock = self._locks[plugin_id] = asyncio.Lock()
        return lock

    def _get_api(self, plugin_id: str) -> PluginAPI:
        api = self._apis.get(plugin_id)
        if api is None:
            api = PluginAPI(
                plugin_id,
                registry=self.registry,
                bus=self.bus,
                config=self.config,
                storage=self.storage,
                broker=self.broker,
                on_error=self._on_plugin_error,
            )
            self._apis[plugin_id] = api
        return api

    async def _on_plugin_error(self, plugin_id: str, error: BaseException) -> None:
        await self.lifecycle.handle_error(plugin_id, error)
        self._get_api(plugin_id).release()

    async def _runtime_start(self, plugin_id: str) -> bool:
        api = self._get_api(plugin_id)
        try:
            started = await self.lifecycle.enable_plugin(plugin_id, api)
        except PluginError as e:
            logger.error(f"Cannot start plugin {plugin_id}: {e}")
            if self.registry.has(plugin_id):
                self.registry.record_error(plugin_id, e)
            return False

        if not started:
            api.release()
        return started

    async def _runtime_stop(self, plugin_id: str) -> bool:
        api = self._get_api(plugin_id)
        try:
            stopped = await self.lifecycle.disable_plugin(plugin_id, api)
        except PluginError as e:
            logger.error(f"Cannot stop plugin {plugin_id}: {e}")
            return False

        if stopped:
            api.release()
        return stopped

    # === Command API ===

    async def _single_flight(self, token: str, operation: Callable[[], Awaitable[bool]]) -> bool:
        """Run ``operation`` unless one with the same token is in flight; then join it."""
        task = self._operations.get(token)
        if task is None:
            task = asyncio.ensure_future(operation())
            self._operations[token] = task

            def done(finished: asyncio.Task) -> None:
                if self._operations.get(token) is finished:
                    del self._operations[token]

            task.add_done_callback(done)
        else:
            logger.debug(f"Joining in-flight operation {token}")

        return await asyncio.shield(task)

    async def enable_plugin(self, plugin_id: str) -> bool:
        """Enable a plugin: persist the flag, then start it.

        Returns:
            True if the plugin is enabled and active afterwards
        """
        if self.destroyed:
            return False
        return await self._single_flight(f"{plugin_id}:enable", lambda: self._enable(plugin_id))

    async def disable_plugin(self, plugin_id: str) -> bool:
        """Disable a plugin: persist the flag, then stop it."""
        if self.destroyed:
            return False
        return await self._single_flight(f"{plugin_id}:disable", lambda: self._disable(plugin_id))

    async def _enable(self, plugin_id: str) -> bool:
        if not self.registry.has(plugin_id):
            logger.error(f"Plugin not found: {plugin_id}")
            return False

        was_enabled = self.config.is_enabled(plugin_id)
        if not was_enabled:
            await self.config.enable(plugin_id)
            await self.config.flush()

        async with self._plugin_lock(plugin_id):
            started = await self._runtime_start(plugin_id)
        if started:
            return True

        if not was_enabled and not self.destroyed:
            logger.warning(f"Start of {plugin_id} failed, restoring enabled=False")
            await self.config.disable(plugin_id)
            await self.config.flush()
        return False

    async def _disable(self, plugin_id: str) -> bool:
        if not self.registry.has(plugin_id):
            logger.error(f"Plugin not found: {plugin_id}")
            return False

        was_enabled = self.config.is_enabled(plugin_id)
        if was_enabled:
            await self.config.disable(plugin_id)
            await self.config.flush()

        async with self._plugin_lock(plugin_id):
            stopped = await self._runtime_stop(plugin_id)
        if stopped:
            return True

        if was_enabled and not self.destroyed:
            logger.warning(f"Stop of {plugin_id} failed, restoring enabled=True")
            await self.config.enable(plugin_id)
            await self.config.flush()
        return False

    async def reload_plugin(self, plugin_id: str) -> bool:
        if self.destroyed or not self.registry.has(plugin_id):
            return False
        async with self._plugin_lock(plugin_id):
            try:
                return await self.lifecycle.reload_plugin(plugin_id, self._get_api(plugin_id))
            except PluginError as e:
                logger.error(f"Cannot reload plugin {plugin_id}: {e}")
                return False

    # === Reconciliation ===

    def _on_storage_changed(self, changes: Dict[str, Dict[str, Any]]) -> None:
        # Startup reads storage itself; nothing is reconciled until it is over
        if self.destroyed or self._initializing or not self.initialized:
            return
        change = changes.get(self.config.STORAGE_KEY)
        if change is None:
            return

        if self._storage_change is None:
            self._storage_change = {"oldValue": change.get("oldValue"), "newValue": change.get("newValue")}
        else:
            # Keep the earliest oldValue, take the latest newValue
            self._storage_change["newValue"] = change.get("newValue")

        if self._storage_handle is not None:
            self._storage_handle.cancel()
        loop = asyncio.get_running_loop()
        self._storage_handle = loop.call_later(self.storage_debounce, self._flush_storage_change)

    def _flush_storage_change(self) -> None:
        self._storage_handle = None
        change, self._storage_change = self._storage_change, None
        if change is not None and not self.destroyed:
            self._spawn(self._process_storage_change(change["oldValue"], change["newValue"]))

    @staticmethod
    def _enabled_transitions(old_doc: Optional[Dict[str, Any]], new_doc: Optional[Dict[str, Any]]) -> List[Tuple[str, bool]]:
        old_plugins = (old_doc or {}).get("plugins") or {}
        new_plugins = (new_doc or {}).get("plugins") or {}

        transitions = []
        for plugin_id in dict.fromkeys([*old_plugins, *new_plugins]):
            was = bool((old_plugins.get(plugin_id) or {}).get(ENABLED_KEY))
            now = bool((new_plugins.get(plugin_id) or {}).get(ENABLED_KEY))
            if was != now:
                transitions.append((plugin_id, now))
        return transitions

    async def _process_storage_change(self, old_doc: Any, new_doc: Any) -> None:
        transitions = self._enabled_transitions(old_doc, new_doc)
        self.config.sync_from_storage(new_doc)

        # A debounced batch can net out while one of our commands is still
        # running, so plugins with a command in flight are re-checked as well
        candidates = {plugin_id for plugin_id, _ in transitions}
        candidates.update(token.rsplit(":", 1)[0] for token in self._operations)

        ordered = [pid for pid in self.loader.load_order if pid in candidates]
        stopping = [pid for pid in reversed(ordered) if not self.config.is_enabled(pid)]
        starting = [pid for pid in ordered if self.config.is_enabled(pid)]

        for plugin_id in stopping + starting:
            if self.destroyed:
                return
            await self._reconcile(plugin_id)

    async def _reconcile(self, plugin_id: str) -> None:
        """Drive one plugin's runtime state toward its stored enabled flag.

        The flag is re-read after every step, so a change that lands while a
        start or stop is running is applied once that step finishes.
        STARTING/STOPPING outside the lock belong to another path; wait and
        look again.
        """
        while not self.destroyed and self.registry.has(plugin_id):
            async with self._plugin_lock(plugin_id):
                if self.destroyed:
                    return
                state = self.registry.get_state(plugin_id)
                settled = state not in (PluginState.STARTING, PluginState.STOPPING)
                if settled:
                    enabled = self.config.is_enabled(plugin_id)
                    if enabled == (state == PluginState.ACTIVE):
                        return
                    if enabled:
                        done = await self._reconcile_enable(plugin_id)
                    else:
                        done = await self._reconcile_disable(plugin_id)
                    if not done:
                        # The failure is recorded on the plugin
                        return

            if not settled:
                await asyncio.sleep(self.storage_debounce)

    async def _reconcile_enable(self, plugin_id: str) -> bool:
        logger.info(f"Reconciling {plugin_id}: enabled in storage, starting")
        return await self._runtime_start(plugin_id)

    async def _reconcile_disable(self, plugin_id: str) -> bool:
        logger.info(f"Reconciling {plugin_id}: disabled in storage, stopping")
        return await self._runtime_stop(plugin_id)

    # === Environment ===

    def _on_environment_events(self, events: List[Any]) -> None:
        if self.destroyed or not self.bus.has_handlers("env:mutated"):
            return
        self._env_buffer.extend(events)
        if self._env_handle is None:
            loop = asyncio.get_running_loop()
            self._env_handle = loop.call_later(self.env_throttle, self._flush_environment_events)

    def _flush_environment_events(self) -> None:
        self._env_handle = None
        batch, self._env_buffer = self._env_buffer, []
        if batch and not self.destroyed:
            self._spawn(self.bus.action("env:mutated", {"events": batch}))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # === Queries ===

    def get_plugin_info(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        """Get plugin information as dict."""
        info = self.registry.get_plugin_info(plugin_id)
        if info is None:
            return None
        info["enabled"] = self.config.is_enabled(plugin_id)
        info["config"] = self.config.get_all(plugin_id)
        return info

    def list_plugins(self) -> List[Dict[str, Any]]:
        """List all plugins as dicts."""
        return [self.get_plugin_info(pid) for pid in self.registry.get_all_plugins()]

    def get_plugin_settings(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        if plugin_id != CORE_NAMESPACE and not self.registry.has(plugin_id):
            return None
        schema = self.config.get_schema(plugin_id) or {}
        return {
            "plugin_id": plugin_id,
            "settings": self.config.get_all(plugin_id),
            "schema": {key: definition.model_dump() for key, definition in schema.items()},
        }

    async def update_plugin_setting(self, plugin_id: str, key: str, value: Any) -> Any:
        """Change one setting. ``enabled`` goes through the command API.

        Raises:
            PluginNotFound: for unknown plugins
            ValidationFailed: if the value violates the schema
        """
        if plugin_id != CORE_NAMESPACE and not self.registry.has(plugin_id):
            raise PluginNotFound(plugin_id)

        if key == ENABLED_KEY and plugin_id != CORE_NAMESPACE:
            if value:
                await self.enable_plugin(plugin_id)
            else:
                await self.disable_plugin(plugin_id)
        else:
            await self.config.set(plugin_id, key, value)
        return self.config.get(plugin_id, key)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "destroyed": self.destroyed,
            "registry": self.registry.get_stats(),
            "loader": self.loader.get_stats(),
            "lifecycle": self.lifecycle.get_stats(),
            "hooks": len(self.bus.registered_hooks()),
            "ipc": self.broker.get_stats() if self.broker else None,
            "operations_in_flight": list(self._operations),
        }

    # === Teardown ===

    async def destroy(self) -> None:
        """Tear everything down. The manager cannot be reused afterwards."""
        if self.destroyed:
            return
        self.destroyed = True

        self._operations.clear()
        for handle in (self._storage_handle, self._env_handle):
            if handle is not None:
                handle.cancel()
        self._storage_handle = self._env_handle = None
        self._storage_change = None
        self._env_buffer = []

        if self.broker is not None:
            self.broker.destroy()

        active = [pid for pid in reversed(self.loader.load_order) if self.registry.get_state(pid) == PluginState.ACTIVE]
        for plugin_id in active:
            try:
                await self.lifecycle.stop_plugin(plugin_id, self._apis.get(plugin_id))
            except PluginError as e:
                logger.error(f"Failed to stop plugin {plugin_id} during shutdown: {e}")

        if self._env_disconnect is not None:
            self._env_disconnect()
            self._env_disconnect = None

        for detach in self._listeners:
            detach()
        self._listeners.clear()
        for api in self._apis.values():
            api.release()

        self.config.close()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self.bus.clear()
        logger.info("Plugin runtime destroyed")
