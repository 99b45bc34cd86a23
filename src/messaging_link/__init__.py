"""messaging-link - run queries over message ports.

Multiplexes many concurrent, possibly multi-valued, cancellable operations
over a single duplex message channel:

    requester_port, executor_port = create_port_pair()

    MessagingExecutor(engine).bind(executor_port)
    link = MessagingLink(requester_port)

    async for result in link.request(Operation(query="{ foo }")):
        ...
"""

from .config import LinkConfig
from .exceptions import MessagingLinkError, OperationError, PortDisconnectedError
from .executor import (
    ExecutionEngine,
    ExecutorBinding,
    MessagingExecutor,
    create_executor_listener,
)
from .ids import SequentialIdGenerator, UniqueIdGenerator
from .link import MessagingLink, OperationStream, StreamState, create_messaging_link
from .operation import Operation
from .transport import MemoryPort, MessagingPort, create_port_pair

__all__ = [
    # Requester
    "MessagingLink",
    "OperationStream",
    "StreamState",
    "create_messaging_link",
    # Executor
    "ExecutionEngine",
    "ExecutorBinding",
    "MessagingExecutor",
    "create_executor_listener",
    # Shared
    "LinkConfig",
    "Operation",
    "SequentialIdGenerator",
    "UniqueIdGenerator",
    # Ports
    "MemoryPort",
    "MessagingPort",
    "create_port_pair",
    # Errors
    "MessagingLinkError",
    "OperationError",
    "PortDisconnectedError",
]
