"""Background service - the long-lived context that keeps page contexts in step.

Page contexts come and go; the background context outlives them. It relays
enable/disable commands to every connected page, fans settings changes out
to the other contexts and rebroadcasts storage changes.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from plugin_runtime import __version__
from plugin_runtime.plugins.config import PluginConfigService
from plugin_runtime.plugins.ipc import MessageBroker
from plugin_runtime.plugins.storage import StorageBackend

logger = logging.getLogger(__name__)


class BackgroundService:
    """Relays commands between the panel and every page context."""

    def __init__(self, broker: MessageBroker, storage: StorageBackend):
        self.broker = broker
        self.storage = storage
        self.state: Dict[str, Any] = {
            "initialized": False,
            "version": __version__,
            "enabled_count": 0,
            "relayed": 0,
        }
        self._listeners: List[Callable[[], None]] = []

    async def initialize(self) -> None:
        if self.state["initialized"]:
            logger.warning("Background service already initialized")
            return

        logger.info("Initializing background service...")
        handlers = {
            "plugin:enable": self._relay_enable,
            "plugin:disable": self._relay_disable,
            "settings:sync": self._sync_settings,
            "background:getState": lambda data, sender: self.get_state(),
        }
        for action, handler in handlers.items():
            self._listeners.append(self.broker.on(action, handler))
        self._listeners.append(self.storage.on_changed(self._on_storage_changed))

        stored = await self.storage.get(PluginConfigService.STORAGE_KEY)
        self._count_enabled(stored.get(PluginConfigService.STORAGE_KEY))

        self.state["initialized"] = True
        self.state["started_at"] = time.time()
        logger.info("Background service initialized successfully")

    async def _relay(self, action: str, plugin_id: str) -> Dict[str, Any]:
        logger.info(f"Relaying {action} request for plugin: {plugin_id}")
        delivered = await self.broker.broadcast(action, {"plugin_id": plugin_id})
        self.state["relayed"] += 1
        return {"success": True, "delivered": delivered}

    async def _relay_enable(self, data: Dict[str, Any], sender: Optional[str]) -> Dict[str, Any]:
        return await self._relay("plugin:enable", data["plugin_id"])

    async def _relay_disable(self, data: Dict[str, Any], sender: Optional[str]) -> Dict[str, Any]:
        return await self._relay("plugin:disable", data["plugin_id"])

    async def _sync_settings(self, data: Any, sender: Optional[str]) -> Dict[str, Any]:
        """Forward a settings change to every context except the one it came from."""
        logger.info("Syncing settings across contexts")
        targets = [name for name in self.broker.transport.broadcast_targets() if name != sender]
        for target in targets:
            await self.broker.send_event("settings:changed", data, target=target)
        return {"success": True, "targets": targets}

    async def _on_storage_changed(self, changes: Dict[str, Dict[str, Any]]) -> None:
        logger.debug(f"Storage changed: {list(changes)}")
        change = changes.get(PluginConfigService.STORAGE_KEY)
        if change is not None:
            self._count_enabled(change.get("newValue"))
        await self.broker.broadcast("storage:changed", changes)

    def _count_enabled(self, document: Optional[Dict[str, Any]]) -> None:
        plugins = (document or {}).get("plugins") or {}
        self.state["enabled_count"] = sum(1 for entry in plugins.values() if (entry or {}).get("enabled"))

    def get_state(self) -> Dict[str, Any]:
        return dict(self.state)

    def destroy(self) -> None:
        for detach in self._listeners:
            detach()
        self._listeners.clear()
        self.broker.destroy()
        self.state["initialized"] = False
        logger.info("Background service destroyed")
