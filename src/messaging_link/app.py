"""Server application.

Creates the Starlette ASGI application:
- /health - Health check
- /ws - WebSocket port; every connection is bound to the executor

Each WebSocket connection is one port. Operations requested over it see the
connection's WebSocketPort under the configured context key.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from .config import LinkConfig, get_engine_ref
from .engines import load_engine
from .executor import ExecutionEngine, MessagingExecutor
from .transport.websocket import WebSocketPort

logger = logging.getLogger(__name__)


def create_app(
    engine: ExecutionEngine | None = None,
    *,
    config: LinkConfig | None = None,
) -> Starlette:
    """Create the server application.

    Args:
        engine: Engine to serve. Defaults to the one named by the
            MESSAGING_LINK_ENGINE environment variable.
        config: Link settings. Defaults to LinkConfig.from_env().

    Returns:
        Configured Starlette application
    """
    if engine is None:
        engine = load_engine(get_engine_ref())
    executor = MessagingExecutor(engine, config=config or LinkConfig.from_env())

    async def health_check(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "connections": len(executor.bindings),
                "operations": executor.active_operations,
            }
        )

    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        port = WebSocketPort(websocket)
        binding = executor.bind(port)
        logger.info(f"WebSocket {port.name} connected")
        try:
            await port.run()
        finally:
            binding.unbind()
            logger.info(f"WebSocket {port.name} disconnected")

    routes = [
        Route("/health", health_check, methods=["GET"]),
        WebSocketRoute("/ws", websocket_endpoint),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        yield
        executor.close()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.executor = executor
    return app
