"""Executor side of the protocol.

Serves operations requested over any number of ports against an execution
engine:

    executor = MessagingExecutor(engine)
    executor.bind(port)  # once per connected port

An engine is any callable taking an `Operation` and returning an async
iterable of results. Each request runs in its own task; results are posted
back as they are produced, followed by exactly one complete or error
message. An unsubscribe message or a disconnect cancels the task, which
cancels the engine's iteration.

Operations get a `context` with the requesting port under the configured
key (default "port"), overriding whatever the requester sent for that key.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

from .config import LinkConfig
from .operation import Operation
from .protocol import (
    OperationRequestMessage,
    OperationUnsubscribeMessage,
    decode_message,
    operation_complete,
    operation_error,
    operation_result,
)
from .transport.base import ListenerHandle, MessagingPort, close_event, listen

logger = logging.getLogger(__name__)

ExecutionEngine = Callable[[Operation], AsyncIterable[Any]]


async def _close_iterator(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.warning(f"Error closing engine results: {e}")


class ExecutorOperation:
    """One in-flight operation on a binding.

    `close()` is the single teardown path for unsubscribe, disconnect and
    unbinding; it runs once and later calls do nothing.
    """

    def __init__(self, binding: ExecutorBinding, operation_id: str, operation: Operation):
        self.binding = binding
        self.operation_id = operation_id
        self.operation = operation
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"operation-{self.operation_id}")

    def close(self) -> None:
        """Cancel the engine iteration and release this operation."""
        if self._closed:
            return
        self._closed = True
        self.binding._release(self)
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug(f"Closed operation {self.operation_id}")

    async def wait(self) -> None:
        """Wait until the operation task has finished."""
        if self._task is not None:
            await asyncio.wait([self._task])

    async def _run(self) -> None:
        iterator: AsyncIterator[Any] | None = None
        try:
            iterator = aiter(self.binding.executor.engine(self.operation))
            async for result in iterator:
                self._post(operation_result(self.operation_id, result))
                if self._closed:
                    break
        except asyncio.CancelledError:
            logger.debug(f"Operation {self.operation_id} cancelled")
            raise
        except Exception as e:
            logger.warning(f"Operation {self.operation_id} failed: {e}")
            self._post(operation_error(self.operation_id, e))
        else:
            self._post(operation_complete(self.operation_id))
        finally:
            if iterator is not None:
                await _close_iterator(iterator)
            self._closed = True
            self.binding._release(self)

    def _post(self, message: Any) -> None:
        if self._closed:
            return
        try:
            self.binding.port.post_message(message.to_wire())
        except Exception as e:
            # The port is gone; nothing more can be delivered for this operation
            logger.warning(f"Failed to send {message.method} for operation {self.operation_id}: {e}")
            self._closed = True


class ExecutorBinding:
    """Serves the operations requested over one port.

    Holds one message listener and one disconnect listener on the port for
    as long as it is bound, plus one on_close listener where the port has
    that event: closing either end cancels everything in flight. Inbound
    values are decoded once and routed by operation id.
    """

    def __init__(self, executor: MessagingExecutor, port: MessagingPort):
        self.executor = executor
        self.port = port
        self._operations: dict[str, ExecutorOperation] = {}
        self._handles: list[ListenerHandle] = [
            listen(port.on_message, self._on_message),
            listen(port.on_disconnect, self._on_disconnect),
        ]
        on_close = close_event(port)
        if on_close is not None:
            self._handles.append(listen(on_close, self._on_disconnect))

    @property
    def is_bound(self) -> bool:
        return bool(self._handles)

    @property
    def operations(self) -> dict[str, ExecutorOperation]:
        """In-flight operations keyed by operation id."""
        return dict(self._operations)

    def unbind(self) -> None:
        """Stop serving the port, cancelling everything in flight."""
        if not self._handles:
            return
        for handle in self._handles:
            handle.remove()
        self._handles = []
        for operation in list(self._operations.values()):
            operation.close()
        self.executor._bindings.discard(self)

    def _on_message(self, value: Any) -> None:
        message = decode_message(value)
        if isinstance(message, OperationRequestMessage):
            self._start(message)
        elif isinstance(message, OperationUnsubscribeMessage):
            operation = self._operations.get(message.operation_id)
            if operation is not None:
                logger.debug(f"Unsubscribe received for operation {message.operation_id}")
                operation.close()

    def _on_disconnect(self, *args: Any) -> None:
        logger.debug(f"Port disconnected with {len(self._operations)} operation(s) in flight")
        self.unbind()

    def _start(self, message: OperationRequestMessage) -> None:
        operation_id = message.operation_id
        if operation_id in self._operations:
            logger.warning(f"Ignoring request reusing in-flight operation id {operation_id}")
            return

        key = self.executor.config.port_context_key
        operation = message.params.to_operation().with_context(**{key: self.port})

        logger.debug(
            f"Executing operation {operation.operation_name or '<anonymous>'} (id={operation_id})"
        )
        entry = ExecutorOperation(self, operation_id, operation)
        self._operations[operation_id] = entry
        entry.start()

    def _release(self, entry: ExecutorOperation) -> None:
        if self._operations.get(entry.operation_id) is entry:
            del self._operations[entry.operation_id]


class MessagingExecutor:
    """Executes operations received over ports against an engine.

    Args:
        engine: Callable returning an async iterable of results for an
            operation. Closing or cancelling the iteration must release
            whatever the engine holds for that call.
        config: Link settings (context key for the requesting port).
    """

    def __init__(self, engine: ExecutionEngine, *, config: LinkConfig | None = None):
        self.engine = engine
        self.config = config or LinkConfig()
        self._bindings: set[ExecutorBinding] = set()

    @property
    def bindings(self) -> list[ExecutorBinding]:
        return list(self._bindings)

    @property
    def active_operations(self) -> int:
        return sum(len(binding._operations) for binding in self._bindings)

    def bind(self, port: MessagingPort) -> ExecutorBinding:
        """Start serving operation requests arriving on `port`."""
        binding = ExecutorBinding(self, port)
        self._bindings.add(binding)
        return binding

    __call__ = bind

    def close(self) -> None:
        """Unbind every port."""
        for binding in list(self._bindings):
            binding.unbind()


def create_executor_listener(
    engine: ExecutionEngine,
    *,
    config: LinkConfig | None = None,
) -> Callable[[MessagingPort], ExecutorBinding]:
    """Create a reusable function that binds ports to `engine`."""
    return MessagingExecutor(engine, config=config).bind
