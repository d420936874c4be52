"""In-process message transport connecting isolated execution contexts.

Contexts never share objects: every envelope is deep-copied on delivery.
"""
from __future__ import annotations

import copy
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

from plugin_runtime.plugins.errors import TransportError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any], str], Any]


class Transport(Protocol):
    async def send(self, envelope: Dict[str, Any], target: Optional[str] = None) -> Any: ...

    def on_message(self, handler: MessageHandler) -> Callable[[], None]: ...

    def broadcast_targets(self) -> List[str]: ...


class LocalHub:
    """Registry of named contexts reachable by each other."""

    def __init__(self):
        self._contexts: Dict[str, "LocalTransport"] = {}

    def connect(self, name: str) -> "LocalTransport":
        if name in self._contexts:
            raise ValueError(f"Context '{name}' is already connected")
        transport = LocalTransport(name, self)
        self._contexts[name] = transport
        logger.debug(f"Context connected: {name}")
        return transport

    def disconnect(self, name: str) -> None:
        if self._contexts.pop(name, None) is not None:
            logger.debug(f"Context disconnected: {name}")

    def get(self, name: str) -> Optional["LocalTransport"]:
        return self._contexts.get(name)

    def names(self) -> List[str]:
        return list(self._contexts)


class LocalTransport:
    """One context's endpoint on a LocalHub."""

    def __init__(self, name: str, hub: LocalHub):
        self.name = name
        self.hub = hub
        self._handlers: List[MessageHandler] = []

    async def send(self, envelope: Dict[str, Any], target: Optional[str] = None) -> Any:
        """Deliver an envelope and return the first non-None reply.

        Untargeted sends go to every other connected context.

        Raises:
            TransportError: if no context is listening
        """
        if target is not None:
            if self.hub.get(target) is None:
                raise TransportError(f"Unknown context: {target}")
            targets = [target]
        else:
            targets = [n for n in self.hub.names() if n != self.name]

        delivered = False
        for name in targets:
            peer = self.hub.get(name)
            if peer is None or not peer._handlers:
                continue
            delivered = True
            reply = await peer._deliver(copy.deepcopy(envelope), sender=self.name)
            if reply is not None:
                return copy.deepcopy(reply)

        if not delivered:
            raise TransportError("Receiving end does not exist")
        return None

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def detach() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return detach

    def broadcast_targets(self) -> List[str]:
        return [n for n in self.hub.names() if n != self.name]

    async def _deliver(self, envelope: Dict[str, Any], sender: str) -> Any:
        for handler in list(self._handlers):
            reply = handler(envelope, sender)
            if inspect.isawaitable(reply):
                reply = await reply
            if reply is not None:
                return reply
        return None

    def close(self) -> None:
        self._handlers.clear()
        self.hub.disconnect(self.name)
