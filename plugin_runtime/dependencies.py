"""Dependency injection container for the runtime's services."""

import logging

from plugin_runtime.constants import (
    BACKGROUND_CONTEXT,
    IPC_DEFAULT_TIMEOUT,
    PAGE_CONTEXT,
    PANEL_CONTEXT,
    PLUGIN_REGISTRY_FILE,
    SETTINGS_FILE,
)
from plugin_runtime.plugins.background import BackgroundService
from plugin_runtime.plugins.discovery import DirectorySource
from plugin_runtime.plugins.ipc import MessageBroker
from plugin_runtime.plugins.manager import PluginManager
from plugin_runtime.plugins.storage import JsonFileStorage
from plugin_runtime.plugins.transport import LocalHub

logger = logging.getLogger(__name__)

# ============================================================================
# Global service instances (Singleton pattern, but exposed via functions for easier testing/mocking)
# ============================================================================

_hub_instance = None
_storage_instance = None
_plugin_manager_instance = None
_background_service_instance = None
_control_channel_instance = None


def get_hub() -> LocalHub:
    """Get the message hub connecting the runtime's contexts (singleton)."""
    global _hub_instance
    if _hub_instance is None:
        _hub_instance = LocalHub()
        logger.info("Created LocalHub instance")
    return _hub_instance


def get_storage() -> JsonFileStorage:
    """Get the settings storage shared by every context (singleton)."""
    global _storage_instance
    if _storage_instance is None:
        _storage_instance = JsonFileStorage(SETTINGS_FILE)
        logger.info(f"Created JsonFileStorage instance at {SETTINGS_FILE}")
    return _storage_instance


def get_plugin_manager() -> PluginManager:
    """Get the page-context plugin manager (singleton)."""
    global _plugin_manager_instance
    if _plugin_manager_instance is None:
        _plugin_manager_instance = PluginManager(
            storage=get_storage(),
            source=DirectorySource(PLUGIN_REGISTRY_FILE),
            transport=get_hub().connect(PAGE_CONTEXT),
        )
        logger.info("Created PluginManager instance")
    return _plugin_manager_instance


def get_background_service() -> BackgroundService:
    """Get the background service relaying commands to page contexts (singleton)."""
    global _background_service_instance
    if _background_service_instance is None:
        broker = MessageBroker(
            get_hub().connect(BACKGROUND_CONTEXT),
            default_timeout=IPC_DEFAULT_TIMEOUT,
            name=BACKGROUND_CONTEXT,
        )
        _background_service_instance = BackgroundService(broker, get_storage())
        logger.info("Created BackgroundService instance")
    return _background_service_instance


def get_control_channel() -> MessageBroker:
    """Get the control panel's broker (singleton).

    The panel never touches the manager directly; it talks to the page
    context through this broker.
    """
    global _control_channel_instance
    if _control_channel_instance is None:
        _control_channel_instance = MessageBroker(
            get_hub().connect(PANEL_CONTEXT),
            default_timeout=IPC_DEFAULT_TIMEOUT,
            name=PANEL_CONTEXT,
        )
        logger.info("Created control channel instance")
    return _control_channel_instance


# Test utility function (for unit testing - resets all singletons)
def reset_services():
    """Reset all service instances (only for testing)."""
    global _hub_instance, _storage_instance, _plugin_manager_instance
    global _background_service_instance, _control_channel_instance

    _hub_instance = None
    _storage_instance = None
    _background_service_instance = None
    _plugin_manager_instance = None
    _control_channel_instance = None
    logger.info("Reset all service instances")
