"""Execution engine helpers."""

from __future__ import annotations

import importlib
from collections.abc import AsyncIterator
from typing import Any

from .executor import ExecutionEngine
from .operation import Operation


async def echo_engine(operation: Operation) -> AsyncIterator[dict[str, Any]]:
    """Reply once with the operation's name and variables."""
    yield {
        "data": {
            "operationName": operation.operation_name,
            "variables": operation.variables,
        }
    }


def load_engine(ref: str) -> ExecutionEngine:
    """Import an engine from a "package.module:attribute" reference.

    Raises:
        ValueError: If the reference is malformed or the attribute is not callable
        ImportError: If the module cannot be imported
    """
    module_name, sep, attribute = ref.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Engine reference must look like 'module:attribute', got {ref!r}")

    module = importlib.import_module(module_name)
    try:
        engine = getattr(module, attribute)
    except AttributeError as e:
        raise ValueError(f"Module {module_name!r} has no attribute {attribute!r}") from e

    if not callable(engine):
        raise ValueError(f"Engine {ref!r} is not callable")
    return engine
