"""Plugin runtime core.

Imports are lazy so lightweight pieces (EventBus, PluginRegistry, storage)
can be used without pulling in the whole orchestrator.
"""

__all__ = [
    "PluginManifest",
    "PluginModule",
    "PluginAPI",
    "PluginRegistry",
    "PluginState",
    "PluginLoader",
    "PluginLifecycle",
    "PluginManager",
    "PluginConfigService",
    "EventBus",
    "MessageBroker",
    "DirectorySource",
]


def __getattr__(name):
    if name in ("PluginManifest", "PluginModule"):
        from plugin_runtime.plugins import manifest
        return getattr(manifest, name)
    if name == "PluginAPI":
        from plugin_runtime.plugins.api import PluginAPI
        return PluginAPI
    if name in ("PluginRegistry", "PluginState"):
        from plugin_runtime.plugins import registry
        return getattr(registry, name)
    if name == "PluginLoader":
        from plugin_runtime.plugins.loader import PluginLoader
        return PluginLoader
    if name == "PluginLifecycle":
        from plugin_runtime.plugins.lifecycle import PluginLifecycle
        return PluginLifecycle
    if name == "PluginManager":
        from plugin_runtime.plugins.manager import PluginManager
        return PluginManager
    if name == "PluginConfigService":
        from plugin_runtime.plugins.config import PluginConfigService
        return PluginConfigService
    if name == "EventBus":
        from plugin_runtime.plugins.hooks import EventBus
        return EventBus
    if name == "MessageBroker":
        from plugin_runtime.plugins.ipc import MessageBroker
        return MessageBroker
    if name == "DirectorySource":
        from plugin_runtime.plugins.discovery import DirectorySource
        return DirectorySource
    raise AttributeError(f"module 'plugin_runtime.plugins' has no attribute {name!r}")
