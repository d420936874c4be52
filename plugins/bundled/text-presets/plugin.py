"""Text presets - named formatting presets applied through the ``text:format`` filter."""

BUILTIN_PRESETS = {
    "shout": {"transform": "upper", "prefix": "", "suffix": "!"},
    "quiet": {"transform": "lower", "prefix": "(", "suffix": ")"},
    "title": {"transform": "title", "prefix": "", "suffix": ""},
}


def _apply(text, preset):
    transform = preset.get("transform")
    if transform in ("upper", "lower", "title"):
        text = getattr(text, transform)()
    return f"{preset.get('prefix', '')}{text}{preset.get('suffix', '')}"


async def _format_text(context, api):
    preset_id = api.settings.get("defaultPreset")
    if not api.settings.get("autoApply") or not preset_id:
        return None

    stored = await api.storage.get("presets")
    presets = {**BUILTIN_PRESETS, **stored.get("presets", {})}
    preset = presets.get(preset_id)
    if preset is None:
        api.get_logger().warning(f"Unknown preset: {preset_id}")
        return None
    return _apply(context.data, preset)


async def start(api):
    async def save_preset(data, sender):
        stored = await api.storage.get("presets")
        presets = stored.get("presets", {})
        presets[data["name"]] = data["preset"]
        await api.storage.set({"presets": presets})
        return sorted({**BUILTIN_PRESETS, **presets})

    if api.ipc is not None:
        api.ipc.on("save", save_preset)


async def stop(api):
    if api.ipc is not None:
        api.ipc.off("save")


plugin = {
    "id": "text-presets",
    "name": "Text Format Presets",
    "description": "Apply named formatting presets to text passing through the text:format filter",
    "version": "2.0.0",
    "author": "Plugin Runtime Team",
    "category": "editor",
    "tags": ["text", "formatting"],
    "settings": {
        "autoApply": {
            "type": "boolean",
            "default": False,
            "title": "Auto-Apply Default Preset",
            "section": "Auto-Styling",
        },
        "defaultPreset": {
            "type": "string",
            "default": "",
            "title": "Default Preset",
            "description": "Preset to auto-apply (leave empty to disable)",
            "section": "Auto-Styling",
        },
    },
    "hooks": {
        "text:format": _format_text,
    },
    "start": start,
    "stop": stop,
}
