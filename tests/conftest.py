"""Pytest configuration and shared fixtures."""

import asyncio

import pytest

from messaging_link.transport import create_port_pair


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


@pytest.fixture
def port_pair():
    """Connected in-memory ports: (requester side, executor side)."""
    return create_port_pair()


@pytest.fixture
def wait_until():
    """Yield to the event loop until a condition holds."""

    async def _wait_until(predicate, timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not reached")
            await asyncio.sleep(0)

    return _wait_until
