"""Global constants for the plugin runtime."""

import os
from pathlib import Path

# Directory paths
RUNTIME_ROOT = Path(os.getenv("PLUGIN_RUNTIME_ROOT", Path(__file__).resolve().parent.parent))

_plugins_dir_env = os.getenv("PLUGINS_DIR", "")
if _plugins_dir_env:
    _plugins_dir_path = Path(_plugins_dir_env)
    PLUGINS_DIR = _plugins_dir_path if _plugins_dir_path.is_absolute() else (RUNTIME_ROOT / _plugins_dir_path).resolve()
else:
    PLUGINS_DIR = RUNTIME_ROOT / "plugins"

PLUGIN_REGISTRY_FILE = Path(os.getenv("PLUGIN_REGISTRY_FILE", PLUGINS_DIR / "plugins.json"))
SETTINGS_FILE = Path(os.getenv("SETTINGS_FILE", RUNTIME_ROOT / "data" / "settings.json"))

# Default entry point inside a plugin directory ("module:attribute")
DEFAULT_ENTRY_POINT = "plugin:plugin"

# Timing (seconds)
IPC_DEFAULT_TIMEOUT = float(os.getenv("IPC_DEFAULT_TIMEOUT", "5.0"))
SETTINGS_PERSIST_DEBOUNCE = float(os.getenv("SETTINGS_PERSIST_DEBOUNCE", "0.5"))
STORAGE_CHANGE_DEBOUNCE = float(os.getenv("STORAGE_CHANGE_DEBOUNCE", "0.15"))
ENV_EVENT_THROTTLE = float(os.getenv("ENV_EVENT_THROTTLE", str(1 / 60)))

# Context names on the local message hub
PAGE_CONTEXT = "page"
PANEL_CONTEXT = "panel"
BACKGROUND_CONTEXT = "background"
