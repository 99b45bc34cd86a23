"""In-memory connected port pair.

Used for in-process links (and tests). Delivery is synchronous: posting on
one port runs the other port's message listeners before `post_message`
returns.
"""

from __future__ import annotations

import itertools
from typing import Any

from .base import BasePort

_port_ids = itertools.count()


class MemoryPort(BasePort):
    """One end of an in-memory port pair.

    `disconnect()` makes both ends unusable. The other end observes
    on_disconnect, as with `runtime.Port`; this end observes on_close.
    """

    def __init__(self, name: str | None = None):
        self.id = next(_port_ids)
        super().__init__(name or f"memory-port-{self.id}")
        self._peer: MemoryPort | None = None

    def _do_post(self, message: Any) -> None:
        if self._peer is not None:
            self._peer._deliver(message)

    def disconnect(self) -> None:
        """Disconnect both ends: on_close fires here, on_disconnect on the peer."""
        if not self._connected:
            return
        self._mark_closed()
        if self._peer is not None:
            self._peer._mark_disconnected()


def create_port_pair() -> tuple[MemoryPort, MemoryPort]:
    """Create two ports that deliver to one another."""
    first = MemoryPort()
    second = MemoryPort()
    first._peer = second
    second._peer = first
    return first, second
