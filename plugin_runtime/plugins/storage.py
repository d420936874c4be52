"""Persistent key/value storage backends.

Every backend reports writes through ``on_changed`` listeners with
``{key: {"newValue": ..., "oldValue": ...}}``. Notifications are delivered on
a later loop iteration, decoupled from the writer, and writes made by the
listening process itself are reported too.
"""
from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)

Keys = Union[None, str, Iterable[str]]
ChangeListener = Callable[[Dict[str, Dict[str, Any]]], Any]


class StorageBackend(Protocol):
    async def get(self, keys: Keys = None) -> Dict[str, Any]: ...

    async def set(self, entries: Dict[str, Any]) -> None: ...

    async def remove(self, keys: Keys) -> None: ...

    def on_changed(self, callback: ChangeListener) -> Callable[[], None]: ...


def _key_list(keys: Keys) -> Optional[List[str]]:
    if keys is None:
        return None
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class MemoryStorage:
    """In-process storage; one instance may be shared by several contexts."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._listeners: List[ChangeListener] = []
        self._pending: set = set()

    async def get(self, keys: Keys = None) -> Dict[str, Any]:
        wanted = _key_list(keys)
        if wanted is None:
            return copy.deepcopy(self._data)
        return {k: copy.deepcopy(self._data[k]) for k in wanted if k in self._data}

    async def set(self, entries: Dict[str, Any]) -> None:
        changes = {}
        for key, value in entries.items():
            changes[key] = {
                "newValue": copy.deepcopy(value),
                "oldValue": copy.deepcopy(self._data.get(key)),
            }
            self._data[key] = copy.deepcopy(value)
        self._written()
        self._notify(changes)

    async def remove(self, keys: Keys) -> None:
        changes = {}
        for key in _key_list(keys) or []:
            if key in self._data:
                changes[key] = {"newValue": None, "oldValue": self._data.pop(key)}
        if changes:
            self._written()
            self._notify(changes)

    async def clear(self) -> None:
        """Remove every key; listeners see each one go to None."""
        await self.remove(list(self._data))

    async def size(self) -> Dict[str, int]:
        """Key count and the size of the data serialized as JSON."""
        encoded = json.dumps(self._data, ensure_ascii=False).encode("utf-8")
        return {"keys": len(self._data), "bytes_in_use": len(encoded)}

    def on_changed(self, callback: ChangeListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def detach() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return detach

    def _written(self) -> None:
        """Hook for subclasses that mirror the data somewhere else."""

    def _notify(self, changes: Dict[str, Dict[str, Any]]) -> None:
        if not changes or not self._listeners:
            return
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            loop.call_soon(self._dispatch, listener, copy.deepcopy(changes))

    def _dispatch(self, listener: ChangeListener, changes: Dict[str, Dict[str, Any]]) -> None:
        if listener not in self._listeners:
            return
        try:
            result = listener(changes)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        except Exception as e:
            logger.error(f"Error in storage change listener: {e}", exc_info=True)


class JsonFileStorage(MemoryStorage):
    """Storage persisted to a single JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> Dict[str, Any]:
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.error(f"Error loading storage file {self.path}: {e}")
        return {}

    def _written(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, ensure_ascii=False)
        logger.debug(f"Saved storage to {self.path}")


class NamespacedStorage:
    """View of a backend whose keys are prefixed with a plugin namespace."""

    def __init__(self, backend: StorageBackend, namespace: str):
        self.backend = backend
        self.prefix = f"plugin:{namespace}:"

    def _wrap(self, keys: Keys) -> Keys:
        wanted = _key_list(keys)
        return None if wanted is None else [self.prefix + k for k in wanted]

    async def get(self, keys: Keys = None) -> Dict[str, Any]:
        values = await self.backend.get(self._wrap(keys))
        return {k[len(self.prefix):]: v for k, v in values.items() if k.startswith(self.prefix)}

    async def set(self, entries: Dict[str, Any]) -> None:
        await self.backend.set({self.prefix + k: v for k, v in entries.items()})

    async def remove(self, keys: Keys) -> None:
        await self.backend.remove(self._wrap(keys))

    def on_changed(self, callback: ChangeListener) -> Callable[[], None]:
        def scoped(changes: Dict[str, Dict[str, Any]]) -> Any:
            mine = {k[len(self.prefix):]: v for k, v in changes.items() if k.startswith(self.prefix)}
            if mine:
                return callback(mine)
            return None

        return self.backend.on_changed(scoped)
