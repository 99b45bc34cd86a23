"""Correlation id generators.

A link accepts any zero-argument callable returning a string; ids only need
to be unique among the operations in flight on one port.
"""

from __future__ import annotations

import itertools
import uuid
from collections.abc import Callable

IdGenerator = Callable[[], str]


class UniqueIdGenerator:
    """Random per-generator seed plus a monotonic counter.

    Two ids from the same generator never collide; ids from different
    generators collide only if their 48-bit seeds do.
    """

    def __init__(self, prefix: str = "op"):
        self.prefix = prefix
        self._seed = uuid.uuid4().hex[:12]
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self.prefix}_{self._seed}_{next(self._counter)}"


class SequentialIdGenerator:
    """Deterministic ids (`op_1`, `op_2`, ...) for tests."""

    def __init__(self, prefix: str = "op", start: int = 1):
        self.prefix = prefix
        self._counter = itertools.count(start)

    def __call__(self) -> str:
        return f"{self.prefix}_{next(self._counter)}"
