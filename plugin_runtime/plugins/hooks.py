"""EventBus - priority-ordered, cancellable publish/subscribe for plugins.

Handlers for a hook are grouped into bands by priority (lower runs first).
Bands always run one after another. Inside a band handlers run concurrently
(``parallel=True``) or one by one in registration order, each receiving the
previous handler's return value (``parallel=False``, used by ``filter``).

Contracts:
  - ``once`` handlers are removed after the whole emission finishes, even
    when they raised.
  - In a parallel band the last settled non-None result becomes the band's
    output, regardless of registration position.
  - ``cancel()`` is only offered for cancelable emissions and is checked
    between bands; a band that already started runs to completion.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 50

Handler = Callable[["HookContext"], Any]

_FAILED = object()


class BandStatus(str, Enum):
    CONTINUE = "continue"
    CANCELLED = "cancelled"


@dataclass
class HookEntry:
    hook: str
    handler: Handler
    priority: int
    once: bool
    owner: Optional[str]
    token: int


@dataclass
class HookContext:
    """What a handler receives: the hook name, the current data and, for
    cancelable emissions, a ``cancel`` callback."""

    hook: str
    data: Any
    cancel: Optional[Callable[[], None]] = None


@dataclass
class EmitResult:
    data: Any
    cancelled: bool = False


class _CancelSwitch:
    def __init__(self):
        self.requested = False

    def __call__(self) -> None:
        self.requested = True


class EventBus:
    """Central hook registry shared by the runtime and all plugins."""

    def __init__(self):
        self._hooks: Dict[str, List[HookEntry]] = {}
        # owner -> {token: hook name}
        self._owners: Dict[str, Dict[int, str]] = {}
        self._tokens = itertools.count(1)

    def register(
        self,
        hook: str,
        handler: Handler,
        priority: int = DEFAULT_PRIORITY,
        once: bool = False,
        owner: Optional[str] = None,
    ) -> Callable[[], None]:
        """Register a hook handler.

        Args:
            hook: Hook name (e.g. 'settings:changed')
            handler: Sync or async callable taking a HookContext
            priority: Execution band, lower runs earlier
            once: Remove the handler after its first emission
            owner: Plugin id used for bulk removal

        Returns:
            Function that unregisters this handler
        """
        if not callable(handler):
            raise TypeError(f"Handler for hook '{hook}' must be callable")

        entry = HookEntry(
            hook=hook,
            handler=handler,
            priority=int(priority),
            once=once,
            owner=owner,
            token=next(self._tokens),
        )
        self._hooks.setdefault(hook, []).append(entry)
        if owner is not None:
            self._owners.setdefault(owner, {})[entry.token] = hook

        return lambda: self._remove(hook, entry.token)

    def unregister(self, hook: str, handler: Handler) -> None:
        """Remove the first registration of ``handler`` on ``hook``."""
        for entry in self._hooks.get(hook, []):
            if entry.handler is handler:
                self._remove(hook, entry.token)
                return

    def unregister_owner(self, owner: str) -> int:
        """Remove every handler registered by ``owner``. Returns the count."""
        tokens = self._owners.pop(owner, {})
        for token, hook in list(tokens.items()):
            self._remove(hook, token)
        if tokens:
            logger.debug(f"Unregistered {len(tokens)} hook(s) owned by {owner}")
        return len(tokens)

    def unregister_tokens(self, tokens: Iterable[int]) -> None:
        wanted = set(tokens)
        for hook, entries in list(self._hooks.items()):
            for entry in list(entries):
                if entry.token in wanted:
                    self._remove(hook, entry.token)

    def _remove(self, hook: str, token: int) -> None:
        entries = self._hooks.get(hook)
        if not entries:
            return

        for index, entry in enumerate(entries):
            if entry.token == token:
                del entries[index]
                if entry.owner is not None:
                    owned = self._owners.get(entry.owner)
                    if owned is not None:
                        owned.pop(token, None)
                        if not owned:
                            del self._owners[entry.owner]
                break

        if not entries:
            del self._hooks[hook]

    async def emit(
        self,
        hook: str,
        data: Any = None,
        parallel: bool = True,
        cancelable: bool = False,
    ) -> EmitResult:
        """Run every handler of ``hook`` band by band.

        Returns:
            EmitResult with the final data and whether a handler cancelled
        """
        entries = self._hooks.get(hook)
        if not entries:
            return EmitResult(data=data)

        switch = _CancelSwitch() if cancelable else None
        current = data
        fired: List[HookEntry] = []

        try:
            for band in self._bands(entries):
                fired.extend(band)
                if parallel:
                    current = await self._run_parallel(hook, band, current, switch)
                else:
                    current = await self._run_sequential(hook, band, current, switch)

                if self._band_status(switch) is BandStatus.CANCELLED:
                    logger.debug(f"Emission of '{hook}' cancelled")
                    break
        finally:
            for entry in fired:
                if entry.once:
                    self._remove(hook, entry.token)

        return EmitResult(data=current, cancelled=bool(switch and switch.requested))

    @staticmethod
    def _band_status(switch: Optional[_CancelSwitch]) -> BandStatus:
        if switch is not None and switch.requested:
            return BandStatus.CANCELLED
        return BandStatus.CONTINUE

    @staticmethod
    def _bands(entries: List[HookEntry]) -> List[List[HookEntry]]:
        # sorted() is stable, so registration order survives inside a band
        ordered = sorted(entries, key=lambda e: e.priority)
        return [list(group) for _, group in itertools.groupby(ordered, key=lambda e: e.priority)]

    async def _run_parallel(
        self, hook: str, band: List[HookEntry], data: Any, switch: Optional[_CancelSwitch]
    ) -> Any:
        context = HookContext(hook=hook, data=data, cancel=switch)
        current = data
        for settled in asyncio.as_completed([self._invoke(entry, context) for entry in band]):
            result = await settled
            if result is not None and result is not _FAILED:
                current = result
        return current

    async def _run_sequential(
        self, hook: str, band: List[HookEntry], data: Any, switch: Optional[_CancelSwitch]
    ) -> Any:
        current = data
        for entry in band:
            result = await self._invoke(entry, HookContext(hook=hook, data=current, cancel=switch))
            if result is not None and result is not _FAILED:
                current = result
        return current

    async def _invoke(self, entry: HookEntry, context: HookContext) -> Any:
        try:
            result = entry.handler(context)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.error(
                f"Error in hook '{entry.hook}' handler (plugin: {entry.owner}): {e}",
                exc_info=True,
            )
            return _FAILED

    async def filter(self, hook: str, data: Any) -> Any:
        """Chain ``data`` through every handler sequentially."""
        result = await self.emit(hook, data, parallel=False)
        return result.data

    async def action(self, hook: str, data: Any = None) -> None:
        """Notify every handler; return values are ignored."""
        await self.emit(hook, data, parallel=True)

    def has_handlers(self, hook: str) -> bool:
        return bool(self._hooks.get(hook))

    def handler_count(self, hook: str) -> int:
        return len(self._hooks.get(hook, []))

    def registered_hooks(self) -> List[str]:
        return list(self._hooks)

    def owner_hooks(self, owner: str) -> List[str]:
        """Hook names (one per registration) owned by ``owner``."""
        return list(self._owners.get(owner, {}).values())

    def owner_tokens(self, owner: str) -> Set[int]:
        return set(self._owners.get(owner, {}))

    def clear(self) -> None:
        self._hooks.clear()
        self._owners.clear()
