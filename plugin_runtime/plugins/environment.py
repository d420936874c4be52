"""Host environment the runtime is embedded in (a page, a worker, a panel).

The runtime only needs two things from it: a point at which the host is
stable enough for plugins to act, and a stream of dynamic events.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)

EnvironmentObserver = Callable[[List[Any]], None]


class HostEnvironment:
    def __init__(self, stable: bool = True):
        self._stable = stable
        self._stable_event: Optional[asyncio.Event] = None
        self._observers: List[EnvironmentObserver] = []

    async def wait_until_stable(self) -> None:
        if self._stable:
            return
        if self._stable_event is None:
            self._stable_event = asyncio.Event()
        await self._stable_event.wait()

    def mark_stable(self) -> None:
        self._stable = True
        if self._stable_event is not None:
            self._stable_event.set()

    def observe(self, callback: EnvironmentObserver) -> Callable[[], None]:
        """Subscribe to dynamic events. Returns a disconnect function."""
        self._observers.append(callback)

        def disconnect() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return disconnect

    def publish(self, *events: Any) -> None:
        for observer in list(self._observers):
            try:
                observer(list(events))
            except Exception as e:
                logger.error(f"Error in environment observer: {e}", exc_info=True)

    @property
    def observer_count(self) -> int:
        return len(self._observers)
