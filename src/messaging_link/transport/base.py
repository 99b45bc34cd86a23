"""Port abstraction.

A port is a duplex, message-oriented channel that can disconnect. The
minimal contract mirrors browser extension `runtime.Port` objects:

    port.post_message(message)          # fire-and-forget send
    port.on_message.add_listener(cb)    # cb(message)
    port.on_disconnect.add_listener(cb) # cb(port)

Ports may also offer an `on_close` event that fires when *this* end is
closed locally; the link and executor use it when present.

Any object with that shape can carry the protocol. `BasePort` provides the
shared plumbing for the ports shipped with this package.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from ..exceptions import PortDisconnectedError

logger = logging.getLogger(__name__)

Listener = Callable[..., None]


@runtime_checkable
class PortEvent(Protocol):
    """An event source supporting independent add/remove of listeners."""

    def add_listener(self, callback: Listener) -> None: ...

    def remove_listener(self, callback: Listener) -> None: ...


@runtime_checkable
class MessagingPort(Protocol):
    """Protocol for duplex ports carrying arbitrary structured values."""

    @property
    def on_message(self) -> PortEvent: ...

    @property
    def on_disconnect(self) -> PortEvent: ...

    def post_message(self, message: Any) -> None:
        """Send a message without waiting for delivery."""
        ...


class ListenerHandle:
    """Token for one listener registration.

    `remove()` releases exactly the registration this handle was created
    for and is a no-op after the first call.
    """

    def __init__(self, event: PortEvent, callback: Listener):
        self._event = event
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def remove(self) -> None:
        if not self._active:
            return
        self._active = False
        self._event.remove_listener(self._callback)


def close_event(port: Any) -> PortEvent | None:
    """Return the port's on_close event, or None if it does not report local closes."""
    event = getattr(port, "on_close", None)
    return event if isinstance(event, PortEvent) else None


def listen(event: PortEvent, callback: Listener) -> ListenerHandle:
    """Add `callback` to `event` and return the handle that removes it."""
    event.add_listener(callback)
    return ListenerHandle(event, callback)


class ListenerEvent:
    """In-process event with add/remove semantics.

    Listeners run synchronously in registration order. A listener that
    raises is logged and does not prevent the others from running.
    """

    def __init__(self, name: str = "event"):
        self.name = name
        self._listeners: list[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, callback: Listener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Listener) -> None:
        # Removes one registration, like EventEmitter.removeListener
        if callback in self._listeners:
            self._listeners.remove(callback)

    def has_listener(self, callback: Listener) -> bool:
        return callback in self._listeners

    def emit(self, *args: Any) -> None:
        # Copy so listeners may add/remove during dispatch
        for callback in list(self._listeners):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Error in {self.name} listener")


class BasePort(ABC):
    """Base class for ports with common functionality.

    Provides:
    - on_message / on_disconnect events
    - on_close, fired once when this end is closed locally (on_disconnect
      reports the other end going away)
    - Connection state, with disconnect emitted at most once
    - Refusal to send once disconnected
    """

    def __init__(self, name: str | None = None):
        self.name = name or self.__class__.__name__
        self._on_message = ListenerEvent(f"{self.name}.on_message")
        self._on_disconnect = ListenerEvent(f"{self.name}.on_disconnect")
        self._on_close = ListenerEvent(f"{self.name}.on_close")
        self._connected = True

    @property
    def on_message(self) -> ListenerEvent:
        return self._on_message

    @property
    def on_disconnect(self) -> ListenerEvent:
        return self._on_disconnect

    @property
    def on_close(self) -> ListenerEvent:
        return self._on_close

    @property
    def is_connected(self) -> bool:
        return self._connected

    def post_message(self, message: Any) -> None:
        """Send a message to the other end."""
        if not self._connected:
            raise PortDisconnectedError(f"Attempting to use disconnected port {self.name}")
        self._do_post(message)

    def _deliver(self, message: Any) -> None:
        """Hand an inbound message to the on_message listeners."""
        if self._connected:
            self._on_message.emit(message)

    def _mark_disconnected(self) -> None:
        """Mark the port unusable and notify on_disconnect listeners once."""
        if not self._connected:
            return
        self._connected = False
        logger.debug(f"Port {self.name} disconnected")
        self._on_disconnect.emit(self)

    def _mark_closed(self) -> None:
        """Mark the port unusable after a local close and notify on_close listeners."""
        if not self._connected:
            return
        self._connected = False
        logger.debug(f"Port {self.name} closed")
        self._on_close.emit(self)

    @abstractmethod
    def _do_post(self, message: Any) -> None:
        """Implementation-specific send logic. Must not block."""
        ...
