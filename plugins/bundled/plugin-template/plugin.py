"""Plugin template - every feature a plugin can use, in one place.

Copy this directory, change the id, and register it in plugins.json.
"""


def _on_env_mutated(context, api):
    api.get_logger().debug(f"Environment changed: {len(context.data['events'])} event(s)")


def _on_settings_changed(context, api):
    if context.data["plugin_id"] == api.plugin_id:
        api.get_logger().info(f"Setting {context.data['key']} changed to {context.data['value']!r}")


async def init(api):
    """One-time setup, called before the first start."""
    seen = await api.storage.get("start_count")
    api.get_logger().info(f"Initializing (started {seen.get('start_count', 0)} time(s) before)")


async def start(api):
    log = api.get_logger()
    log.info(f"Starting in {api.settings.get('mode')} mode")

    seen = await api.storage.get("start_count")
    await api.storage.set({"start_count": seen.get("start_count", 0) + 1})

    api.settings.watch(
        "customText",
        lambda value, old_value: log.info(f"Custom text changed from {old_value!r} to {value!r}"),
    )

    if api.ipc is not None:
        api.ipc.on("ping", lambda data, sender: {"pong": data, "plugin": api.plugin_id})


async def stop(api):
    # Hooks and settings watchers are released by the runtime
    if api.ipc is not None:
        api.ipc.off("ping")
    api.get_logger().info("Stopped")


async def destroy(api):
    await api.storage.remove("start_count")


plugin = {
    "id": "plugin-template",
    "name": "Plugin Template",
    "description": "A template plugin demonstrating all available features",
    "version": "1.0.0",
    "author": "Plugin Runtime Team",
    "dependencies": [],
    "optionalDependencies": [],
    "conflicts": [],
    "tags": ["template", "example"],
    "category": "other",
    "settings": {
        "enableFeature": {
            "type": "boolean",
            "default": True,
            "title": "Enable Feature",
            "section": "General",
        },
        "customText": {
            "type": "string",
            "default": "Hello World",
            "title": "Custom Text",
            "section": "General",
        },
        "intensity": {
            "type": "number",
            "default": 50,
            "min": 0,
            "max": 100,
            "step": 5,
            "title": "Intensity",
            "section": "General",
        },
        "mode": {
            "type": "select",
            "default": "auto",
            "enum": ["auto", "manual", "disabled"],
            "title": "Mode",
            "section": "General",
        },
        "highlightColor": {
            "type": "color",
            "default": "#4CAF50",
            "title": "Highlight Color",
            "section": "Appearance",
        },
        "maxItems": {
            "type": "number",
            "default": 10,
            "min": 5,
            "max": 50,
            "validator": lambda value: value % 5 == 0,
            "title": "Max Items",
            "description": "Multiple of 5 between 5 and 50",
            "section": "Advanced",
        },
    },
    "hooks": {
        "env:mutated": _on_env_mutated,
        "settings:changed": _on_settings_changed,
    },
    "init": init,
    "start": start,
    "stop": stop,
    "destroy": destroy,
}
