"""PluginAPI - the capability context handed to a plugin's lifecycle and hook handlers."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from plugin_runtime.plugins.config import PluginConfigService
from plugin_runtime.plugins.hooks import DEFAULT_PRIORITY, EmitResult, EventBus, Handler
from plugin_runtime.plugins.ipc import BrokerChannel, MessageBroker
from plugin_runtime.plugins.registry import PluginRegistry, PluginState
from plugin_runtime.plugins.storage import NamespacedStorage, StorageBackend

ErrorReporter = Callable[[str, BaseException], Awaitable[None]]


class SettingsFacade:
    """Settings access scoped to one plugin."""

    def __init__(self, plugin_id: str, config: PluginConfigService):
        self.plugin_id = plugin_id
        self._config = config
        self._unwatchers: List[Callable[[], None]] = []

    def get(self, key: str) -> Any:
        return self._config.get(self.plugin_id, key)

    def get_all(self) -> Optional[Dict[str, Any]]:
        return self._config.get_all(self.plugin_id)

    async def set(self, key: str, value: Any) -> None:
        await self._config.set(self.plugin_id, key, value)

    def watch(self, key: Optional[str], callback: Callable[..., Any]) -> Callable[[], None]:
        unwatch = self._config.watch(self.plugin_id, key, callback)
        self._unwatchers.append(unwatch)
        return unwatch

    def release(self) -> int:
        count = len(self._unwatchers)
        for unwatch in self._unwatchers:
            unwatch()
        self._unwatchers.clear()
        return count


class HooksFacade:
    """Event bus access; every registration is owned by the plugin."""

    def __init__(self, plugin_id: str, bus: EventBus):
        self.plugin_id = plugin_id
        self._bus = bus

    def register(
        self,
        hook: str,
        handler: Handler,
        priority: int = DEFAULT_PRIORITY,
        once: bool = False,
    ) -> Callable[[], None]:
        return self._bus.register(hook, handler, priority=priority, once=once, owner=self.plugin_id)

    def unregister(self, hook: str, handler: Handler) -> None:
        self._bus.unregister(hook, handler)

    async def emit(self, hook: str, data: Any = None, parallel: bool = True, cancelable: bool = False) -> EmitResult:
        return await self._bus.emit(hook, data, parallel=parallel, cancelable=cancelable)

    async def filter(self, hook: str, data: Any) -> Any:
        return await self._bus.filter(hook, data)

    async def action(self, hook: str, data: Any = None) -> None:
        await self._bus.action(hook, data)


class PluginsFacade:
    """Read-only view of the other plugins."""

    def __init__(self, registry: PluginRegistry, config: PluginConfigService):
        self._registry = registry
        self._config = config

    def get(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        return self._registry.get_plugin_info(plugin_id)

    def is_enabled(self, plugin_id: str) -> bool:
        return self._config.is_enabled(plugin_id)

    def is_active(self, plugin_id: str) -> bool:
        return self._registry.get_state(plugin_id) == PluginState.ACTIVE


class PluginAPI:
    """API object provided to plugins.

    Plugins use this to read and write their settings, register hooks, keep
    private storage, inspect other plugins and talk to other contexts.
    """

    def __init__(
        self,
        plugin_id: str,
        registry: PluginRegistry,
        bus: EventBus,
        config: PluginConfigService,
        storage: StorageBackend,
        broker: Optional[MessageBroker] = None,
        on_error: Optional[ErrorReporter] = None,
    ):
        self.plugin_id = plugin_id
        self.settings = SettingsFacade(plugin_id, config)
        self.hooks = HooksFacade(plugin_id, bus)
        self.storage = NamespacedStorage(storage, plugin_id)
        self.plugins = PluginsFacade(registry, config)
        self.ipc: Optional[BrokerChannel] = broker.create_channel(plugin_id) if broker else None
        self._on_error = on_error
        self._logger = logging.getLogger(f"plugin.{plugin_id}")

    def get_logger(self, name: Optional[str] = None) -> logging.Logger:
        """Get a logger for this plugin.

        Args:
            name: Optional sub-logger name (appended to plugin.{plugin_id})

        Returns:
            Logger instance
        """
        if name:
            return logging.getLogger(f"plugin.{self.plugin_id}.{name}")
        return self._logger

    async def report_error(self, error: BaseException) -> None:
        """Report a fatal runtime failure; the plugin is taken out of service."""
        if self._on_error is None:
            self._logger.error(f"Unhandled plugin error: {error}")
            return
        await self._on_error(self.plugin_id, error)

    def release(self) -> None:
        """Drop the settings watchers registered through this API."""
        released = self.settings.release()
        if released:
            self._logger.debug(f"Released {released} settings watcher(s)")
