"""Requester side of the protocol.

Turns an `Operation` into a cancellable, possibly multi-valued remote call
over a port:

    link = MessagingLink(port)
    async for result in link.request(Operation(query="{ foo }")):
        ...

Each stream posts one operation-request when it starts, yields every
operation-result for its correlation id, and ends on operation-complete or
raises on operation-error. Closing the stream early posts an
operation-unsubscribe so the executor can release its resources.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

from .config import LinkConfig
from .exceptions import OperationError, PortDisconnectedError
from .ids import IdGenerator, UniqueIdGenerator
from .operation import Operation
from .protocol import (
    OperationCompleteMessage,
    OperationErrorMessage,
    OperationResultMessage,
    ReplyMessage,
    decode_message,
    operation_request,
    operation_unsubscribe,
)
from .transport.base import ListenerHandle, MessagingPort, close_event, listen

logger = logging.getLogger(__name__)

PortOrPortFn = MessagingPort | Callable[[Operation], MessagingPort]


class StreamState(str, Enum):
    """Lifecycle of an OperationStream."""

    PENDING = "pending"  # Not started, nothing sent
    ACTIVE = "active"  # Request sent, waiting for replies
    TERMINATED = "terminated"  # Complete/error/disconnect received
    CANCELLED = "cancelled"  # Closed locally before a terminal reply


class _PortRouter:
    """Routes replies arriving on one port to the streams waiting for them.

    Holds one message listener and one disconnect listener on the port (plus
    one on_close listener where the port has that event) while at least one
    stream is registered, and none otherwise.
    """

    def __init__(self, port: MessagingPort, on_idle: Callable[[_PortRouter], None]):
        self.port = port
        self._on_idle = on_idle
        self._streams: dict[str, OperationStream] = {}
        self._handles: list[ListenerHandle] = []

    def register(self, operation_id: str, stream: OperationStream) -> None:
        if operation_id in self._streams:
            raise ValueError(f"Operation id already in flight on this port: {operation_id}")
        if not self._streams:
            self._handles = [
                listen(self.port.on_message, self._on_message),
                listen(self.port.on_disconnect, self._on_disconnect),
            ]
            on_close = close_event(self.port)
            if on_close is not None:
                self._handles.append(listen(on_close, self._on_disconnect))
        self._streams[operation_id] = stream

    def unregister(self, operation_id: str) -> None:
        if self._streams.pop(operation_id, None) is None:
            return
        if not self._streams:
            for handle in self._handles:
                handle.remove()
            self._handles = []
            self._on_idle(self)

    def _on_message(self, value: Any) -> None:
        message = decode_message(value)
        if not isinstance(
            message, (OperationResultMessage, OperationCompleteMessage, OperationErrorMessage)
        ):
            return
        stream = self._streams.get(message.operation_id)
        if stream is not None:
            stream._receive(message)

    def _on_disconnect(self, *args: Any) -> None:
        for stream in list(self._streams.values()):
            stream._port_disconnected()


class OperationStream:
    """Single-use async iterator over the results of one remote operation.

    Starting the stream (first `__anext__`, `start()` or `async with`)
    sends the request. Results are queued as they arrive, without
    backpressure. `aclose()`/`cancel()` before a terminal reply sends one
    unsubscribe message and ends any pending `__anext__`; further calls do
    nothing.

    `async for` iterates through an async generator, so leaving the loop
    early (break, exception, task cancellation) also cancels the operation
    once the generator is finalized.
    """

    def __init__(
        self,
        link: MessagingLink,
        port: MessagingPort,
        operation: Operation,
    ):
        self.operation = operation
        self.operation_id: str | None = None
        self._link = link
        self._port = port
        self._state = StreamState.PENDING
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def port(self) -> MessagingPort:
        return self._port

    def start(self) -> None:
        """Send the request. Does nothing if the stream was already started."""
        if self._state != StreamState.PENDING:
            return

        operation_id = self._link._next_id()
        router = self._link._router_for(self._port)
        router.register(operation_id, self)
        self.operation_id = operation_id
        self._state = StreamState.ACTIVE

        try:
            self._port.post_message(operation_request(operation_id, self.operation).to_wire())
        except Exception:
            self._state = StreamState.TERMINATED
            router.unregister(operation_id)
            raise

        logger.debug(
            f"Requested operation {self.operation.operation_name or '<anonymous>'} "
            f"(id={operation_id})"
        )

    def cancel(self) -> None:
        """Stop the operation if it has not reached a terminal reply."""
        if self._state == StreamState.PENDING:
            self._state = StreamState.CANCELLED
            return
        if self._state != StreamState.ACTIVE:
            return

        self._state = StreamState.CANCELLED
        operation_id = self._require_id()
        self._link._release(self._port, operation_id)
        # Wake a consumer blocked in __anext__
        self._queue.put_nowait(("complete", None))
        try:
            self._port.post_message(operation_unsubscribe(operation_id).to_wire())
        except Exception as e:
            logger.warning(f"Failed to send unsubscribe for operation {operation_id}: {e}")
        logger.debug(f"Cancelled operation {operation_id}")

    async def aclose(self) -> None:
        self.cancel()

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        try:
            while True:
                try:
                    result = await self.__anext__()
                except StopAsyncIteration:
                    return
                yield result
        finally:
            self.cancel()

    async def __anext__(self) -> Any:
        self.start()
        if self._state == StreamState.CANCELLED:
            raise StopAsyncIteration
        if self._state == StreamState.TERMINATED and self._queue.empty():
            raise StopAsyncIteration

        kind, value = await self._queue.get()
        if kind == "result":
            return value
        if kind == "error":
            raise value
        raise StopAsyncIteration

    async def __aenter__(self) -> OperationStream:
        self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def _receive(self, message: ReplyMessage) -> None:
        if self._state != StreamState.ACTIVE:
            return
        if isinstance(message, OperationResultMessage):
            self._queue.put_nowait(("result", message.params.result))
            return

        self._terminate()
        if isinstance(message, OperationErrorMessage):
            error = OperationError(message.params.error_message, operation_id=self.operation_id)
            self._queue.put_nowait(("error", error))
        else:
            self._queue.put_nowait(("complete", None))

    def _port_disconnected(self) -> None:
        if self._state != StreamState.ACTIVE:
            return
        self._terminate()
        error = PortDisconnectedError(
            f"Port disconnected before operation {self.operation_id} completed"
        )
        self._queue.put_nowait(("error", error))

    def _terminate(self) -> None:
        self._state = StreamState.TERMINATED
        self._link._release(self._port, self._require_id())

    def _require_id(self) -> str:
        if self.operation_id is None:
            raise RuntimeError("Operation stream has not been started")
        return self.operation_id


class MessagingLink:
    """Issues operations over a port.

    Args:
        port: The port to use, or a function returning the port for a given
            operation (to route operations to different ports).
        id_generator: Correlation id source; defaults to a UniqueIdGenerator.
        config: Link settings.

    A link is callable with an `Operation` and returns an async iterable,
    so it can also serve as the execution engine of a `MessagingExecutor`
    to relay operations to another port.
    """

    def __init__(
        self,
        port: PortOrPortFn,
        *,
        id_generator: IdGenerator | None = None,
        config: LinkConfig | None = None,
    ):
        self.config = config or LinkConfig()
        self._port_or_fn = port
        self._next_id = id_generator or UniqueIdGenerator(self.config.id_prefix)
        # Keyed by id(port); a router holds its port, so the key stays valid
        self._routers: dict[int, _PortRouter] = {}

    def request(self, operation: Operation) -> OperationStream:
        """Create a stream for `operation`. Nothing is sent until it starts."""
        return OperationStream(self, self._resolve_port(operation), operation)

    __call__ = request

    async def execute(self, operation: Operation) -> list[Any]:
        """Run `operation` to completion and return all of its results."""
        async with self.request(operation) as stream:
            return [result async for result in stream]

    def in_flight(self, port: MessagingPort) -> int:
        """Number of operations waiting for replies on `port`."""
        router = self._routers.get(id(port))
        return len(router._streams) if router else 0

    def _resolve_port(self, operation: Operation) -> MessagingPort:
        if isinstance(self._port_or_fn, MessagingPort) or not callable(self._port_or_fn):
            return self._port_or_fn
        return self._port_or_fn(operation)

    def _router_for(self, port: MessagingPort) -> _PortRouter:
        router = self._routers.get(id(port))
        if router is None:
            router = _PortRouter(port, self._drop_router)
            self._routers[id(port)] = router
        return router

    def _release(self, port: MessagingPort, operation_id: str) -> None:
        router = self._routers.get(id(port))
        if router is not None:
            router.unregister(operation_id)

    def _drop_router(self, router: _PortRouter) -> None:
        if self._routers.get(id(router.port)) is router:
            del self._routers[id(router.port)]


def create_messaging_link(
    port: PortOrPortFn,
    *,
    id_generator: IdGenerator | None = None,
    config: LinkConfig | None = None,
) -> MessagingLink:
    """Create a link that transfers operations over `port`."""
    return MessagingLink(port, id_generator=id_generator, config=config)
