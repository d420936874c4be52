"""Word counter - reports the word count of formatted text.

Depends on text-presets so it always sees the already-formatted text.
"""


def _count_words(context, api):
    count = len(str(context.data).split())
    limit = api.settings.get("warnAbove")
    if limit and count > limit:
        api.get_logger().warning(f"Text has {count} words (limit {limit})")
    return None


def _annotate(context, api):
    if not api.settings.get("annotate"):
        return None
    return f"{context.data} [{len(str(context.data).split())} words]"


plugin = {
    "id": "word-counter",
    "name": "Word Counter",
    "description": "Counts words in formatted text and optionally annotates it",
    "version": "1.0.0",
    "dependencies": ["text-presets"],
    "category": "editor",
    "tags": ["text"],
    "settings": {
        "annotate": {"type": "boolean", "default": False, "title": "Append word count"},
        "warnAbove": {"type": "number", "default": 500, "min": 0, "title": "Warn above N words"},
    },
    "hooks": {
        "text:formatted": _count_words,
        "text:format": _annotate,
    },
}
