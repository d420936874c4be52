"""MessageBroker - request/response and fire-and-forget messaging across contexts.

A request settles exactly once: by a matching RESPONSE (looked up by
requestId), by its timeout, or by ``destroy()``. Whichever comes first wins
and the others become no-ops. A request the transport cannot deliver is
treated like a dropped message and left to its timeout.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from plugin_runtime.constants import IPC_DEFAULT_TIMEOUT
from plugin_runtime.plugins.errors import BrokerDestroyed, RequestFailed, RequestTimeout
from plugin_runtime.plugins.transport import Transport

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any, Optional[str]], Any]


class MessageType(str, Enum):
    REQUEST = "REQUEST"
    RESPONSE = "RESPONSE"
    EVENT = "EVENT"
    BROADCAST = "BROADCAST"


class Envelope(BaseModel):
    """Wire format shared by every context."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, extra="ignore")

    type: MessageType
    action: Optional[str] = None
    event: Optional[str] = None
    data: Any = None
    request_id: Optional[int] = Field(default=None, alias="requestId")
    success: Optional[bool] = None
    error: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class PendingRequest:
    request_id: int
    action: str
    future: asyncio.Future
    timer: asyncio.TimerHandle
    issued_at: float


class BrokerChannel:
    """Namespaced view of a broker: every name is prefixed with ``namespace:``."""

    def __init__(self, broker: "MessageBroker", namespace: str):
        self.broker = broker
        self.namespace = namespace

    def _name(self, name: str) -> str:
        return f"{self.namespace}:{name}"

    async def request(self, action: str, data: Any = None, timeout: Optional[float] = None, target: Optional[str] = None) -> Any:
        return await self.broker.request(self._name(action), data, timeout=timeout, target=target)

    async def send_event(self, event: str, data: Any = None, target: Optional[str] = None) -> None:
        await self.broker.send_event(self._name(event), data, target=target)

    async def broadcast(self, event: str, data: Any = None) -> int:
        return await self.broker.broadcast(self._name(event), data)

    def on(self, name: str, handler: MessageHandler) -> Callable[[], None]:
        return self.broker.on(self._name(name), handler)

    def off(self, name: str) -> None:
        self.broker.off(self._name(name))


class MessageBroker:
    """Routes REQUEST/RESPONSE/EVENT/BROADCAST envelopes over a transport."""

    def __init__(
        self,
        transport: Transport,
        default_timeout: float = IPC_DEFAULT_TIMEOUT,
        name: Optional[str] = None,
    ):
        self.transport = transport
        self.default_timeout = default_timeout
        self.name = name or getattr(transport, "name", None)

        self._pending: Dict[int, PendingRequest] = {}
        self._request_id = 0
        self._handlers: Dict[str, MessageHandler] = {}
        self._tasks: set = set()
        self._destroyed = False
        self._detach: Optional[Callable[[], None]] = transport.on_message(self._on_message)

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    # === Inbound ===

    async def _on_message(self, raw: Dict[str, Any], sender: Optional[str] = None) -> Any:
        if self._destroyed or not isinstance(raw, dict):
            return None

        try:
            envelope = Envelope.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"Ignoring malformed envelope from {sender}: {e}")
            return None

        if envelope.type == MessageType.REQUEST:
            return await self._handle_request(envelope, sender)
        if envelope.type == MessageType.RESPONSE:
            self._handle_response(envelope)
        else:
            await self._handle_event(envelope, sender)
        return None

    async def _handle_request(self, envelope: Envelope, sender: Optional[str]) -> Optional[Dict[str, Any]]:
        handler = self._handlers.get(envelope.action)
        if handler is None:
            # Another context may own this action
            return None

        try:
            result = handler(envelope.data, sender)
            if inspect.isawaitable(result):
                result = await result
            response = Envelope(
                type=MessageType.RESPONSE,
                action=envelope.action,
                request_id=envelope.request_id,
                success=True,
                data=result,
            )
        except Exception as e:
            logger.warning(f"Handler for '{envelope.action}' failed: {e}")
            response = Envelope(
                type=MessageType.RESPONSE,
                action=envelope.action,
                request_id=envelope.request_id,
                success=False,
                error=str(e) or type(e).__name__,
            )

        if self._destroyed:
            return None
        return response.to_wire()

    def _handle_response(self, envelope: Envelope) -> None:
        pending = self._pending.pop(envelope.request_id, None)
        if pending is None:
            return

        pending.timer.cancel()
        if pending.future.done():
            return
        if envelope.success:
            pending.future.set_result(envelope.data)
        else:
            pending.future.set_exception(RequestFailed(pending.action, envelope.error or "Request failed"))

    async def _handle_event(self, envelope: Envelope, sender: Optional[str]) -> None:
        name = envelope.event or envelope.action
        handler = self._handlers.get(name)
        if handler is None:
            return

        try:
            result = handler(envelope.data, sender)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in event handler for {name}: {e}", exc_info=True)

    # === Outbound ===

    async def request(
        self,
        action: str,
        data: Any = None,
        timeout: Optional[float] = None,
        target: Optional[str] = None,
    ) -> Any:
        """Send a request and wait for its response.

        Args:
            action: Action name the remote handler is registered under
            data: Payload
            timeout: Seconds to wait (default: broker default)
            target: Specific context to address (default: any listener)

        Returns:
            The remote handler's result

        Raises:
            RequestTimeout: no response within ``timeout``
            RequestFailed: the remote handler raised
            BrokerDestroyed: the broker was destroyed before settling
        """
        if self._destroyed:
            raise BrokerDestroyed("IPC destroyed - cannot send request")

        timeout = self.default_timeout if timeout is None else timeout
        self._request_id += 1
        request_id = self._request_id

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = PendingRequest(
            request_id=request_id,
            action=action,
            future=future,
            timer=timer,
            issued_at=time.time(),
        )

        envelope = Envelope(type=MessageType.REQUEST, action=action, data=data, request_id=request_id)
        self._spawn(self._deliver_request(envelope, target))

        try:
            return await future
        finally:
            pending = self._pending.pop(request_id, None)
            if pending is not None:
                pending.timer.cancel()

    def _expire(self, request_id: int, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        logger.debug(f"Request {request_id} ({pending.action}) timed out")
        pending.future.set_exception(RequestTimeout(pending.action, timeout))

    async def _deliver_request(self, envelope: Envelope, target: Optional[str]) -> None:
        try:
            reply = await self.transport.send(envelope.to_wire(), target)
        except Exception as e:
            logger.debug(f"Request {envelope.request_id} ({envelope.action}) not delivered: {e}")
            return

        if self._destroyed or not isinstance(reply, dict):
            return
        try:
            response = Envelope.model_validate(reply)
        except ValidationError:
            return
        if response.type == MessageType.RESPONSE:
            self._handle_response(response)

    async def send_event(self, event: str, data: Any = None, target: Optional[str] = None) -> None:
        """Fire-and-forget event. Delivery failures are logged, never raised."""
        if self._destroyed:
            return

        envelope = Envelope(type=MessageType.EVENT, event=event, data=data)
        try:
            await self.transport.send(envelope.to_wire(), target)
        except Exception as e:
            logger.debug(f"Event {event} not delivered: {e}")

    async def broadcast(self, event: str, data: Any = None) -> int:
        """Best-effort delivery to every known peer context.

        Returns:
            Number of peers the envelope was handed to
        """
        if self._destroyed:
            return 0

        envelope = Envelope(type=MessageType.BROADCAST, event=event, data=data).to_wire()
        targets = self.transport.broadcast_targets() if hasattr(self.transport, "broadcast_targets") else []
        delivered = 0
        for target in targets:
            try:
                await self.transport.send(envelope, target)
                delivered += 1
            except Exception as e:
                # Peers without a listener are expected
                logger.debug(f"Broadcast {event} to {target} skipped: {e}")
        return delivered

    def on(self, name: str, handler: MessageHandler) -> Callable[[], None]:
        """Register the handler for an action/event name (last one wins).

        Returns:
            Function that unregisters the handler
        """
        if not callable(handler):
            raise TypeError("Handler must be callable")

        self._handlers[name] = handler

        def unregister() -> None:
            if self._handlers.get(name) is handler:
                del self._handlers[name]

        return unregister

    def off(self, name: str) -> None:
        self._handlers.pop(name, None)

    def create_channel(self, namespace: str) -> BrokerChannel:
        return BrokerChannel(self, namespace)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pending_requests": len(self._pending),
            "handlers": len(self._handlers),
            "next_request_id": self._request_id + 1,
            "destroyed": self._destroyed,
        }

    def destroy(self) -> None:
        """Terminal teardown: reject pending requests, drop handlers, detach."""
        if self._destroyed:
            return

        self._destroyed = True
        for pending in list(self._pending.values()):
            pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(BrokerDestroyed())
        self._pending.clear()
        self._handlers.clear()

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        if self._detach is not None:
            self._detach()
            self._detach = None
        logger.debug(f"Message broker destroyed ({self.name})")
