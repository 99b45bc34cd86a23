"""Port abstraction layer.

A port is the duplex, message-oriented, disconnectable channel both sides
of a link share. Implementations:
- MemoryPort - connected in-process pair
- StreamPort - newline-delimited JSON over asyncio streams (stdio, pipes, sockets)
- WebSocketPort - server side of a Starlette WebSocket

Any object with `post_message`, `on_message` and `on_disconnect` works.
"""

from .base import (
    BasePort,
    Listener,
    ListenerEvent,
    ListenerHandle,
    MessagingPort,
    PortEvent,
    close_event,
    listen,
)
from .memory import MemoryPort, create_port_pair
from .stream import (
    StreamPort,
    SubprocessPort,
    open_stdio_port,
    open_stream_port,
    spawn_port,
)

# Note: websocket is imported separately so the core does not require starlette
# Use: from messaging_link.transport.websocket import WebSocketPort

__all__ = [
    # Base abstractions
    "BasePort",
    "Listener",
    "ListenerEvent",
    "ListenerHandle",
    "MessagingPort",
    "PortEvent",
    "close_event",
    "listen",
    # In-memory
    "MemoryPort",
    "create_port_pair",
    # Streams
    "StreamPort",
    "SubprocessPort",
    "open_stdio_port",
    "open_stream_port",
    "spawn_port",
]
