"""WebSocket port for the server side.

Wraps an accepted Starlette WebSocket. Every text frame is one JSON value.
Outbound messages go through a queue drained by a sender task, so
`post_message` never blocks and frames keep their posting order.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from .base import BasePort

logger = logging.getLogger(__name__)


class WebSocketPort(BasePort):
    """Port over a server-side WebSocket connection.

    Usage:
        await websocket.accept()
        port = WebSocketPort(websocket)
        executor.bind(port)
        await port.run()  # returns once the client disconnects
    """

    def __init__(self, websocket: WebSocket, *, name: str | None = None):
        client = websocket.client
        default_name = f"websocket-{client.host}:{client.port}" if client else "websocket"
        super().__init__(name or default_name)
        self._websocket = websocket
        self._send_queue: asyncio.Queue[str] = asyncio.Queue()

    def _do_post(self, message: Any) -> None:
        self._send_queue.put_nowait(json.dumps(message, ensure_ascii=False))

    async def run(self) -> None:
        """Receive frames until the connection ends, then disconnect."""
        sender = asyncio.create_task(self._send_loop(), name=f"{self.name}-sender")
        try:
            while self._connected:
                data = await self._websocket.receive_text()
                try:
                    message = json.loads(data)
                except json.JSONDecodeError as e:
                    logger.warning(f"Invalid WebSocket message on {self.name}: {e}")
                    continue
                self._deliver(message)
        except WebSocketDisconnect:
            logger.debug(f"WebSocket {self.name} closed by client")
        except Exception as e:
            logger.exception(f"WebSocket receive error on {self.name}: {e}")
        finally:
            self._mark_disconnected()
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender

    async def close(self, code: int = 1000) -> None:
        """Close the connection from the server side."""
        if self._websocket.client_state == WebSocketState.CONNECTED:
            await self._websocket.close(code=code)
        self._mark_closed()

    async def _send_loop(self) -> None:
        while True:
            data = await self._send_queue.get()
            try:
                await self._websocket.send_text(data)
            except Exception as e:
                logger.warning(f"WebSocket send failed on {self.name}: {e}")
                self._mark_disconnected()
                return
