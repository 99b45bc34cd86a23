"""Operation descriptor shared by both sides of a link."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Operation(BaseModel):
    """A query to run remotely.

    The query document is opaque text; only the execution engine interprets
    it. `context` is carried through unchanged, except that the executor
    adds a reference to the port the request arrived on.
    """

    model_config = ConfigDict(frozen=True)

    query: str
    operation_name: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)

    def get_context(self, key: str, default: Any = None) -> Any:
        """Get a context value with optional default."""
        return self.context.get(key, default)

    def with_context(self, **updates: Any) -> Operation:
        """Return a copy whose context is extended with `updates`."""
        return self.model_copy(update={"context": {**self.context, **updates}})
