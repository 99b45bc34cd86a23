"""Exception hierarchy for messaging-link.

Hierarchy:
    MessagingLinkError (base)
    ├── OperationError         ← remote execution failed (message only)
    └── PortDisconnectedError  ← port is no longer usable
"""

from __future__ import annotations


class MessagingLinkError(Exception):
    """Base exception for all messaging-link errors."""


class OperationError(MessagingLinkError):
    """A remote operation failed.

    Only the human-readable message crosses the port; the type and any
    structured detail of the executor-side failure are lost.
    """

    def __init__(self, message: str, operation_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.operation_id = operation_id


class PortDisconnectedError(MessagingLinkError):
    """The port was disconnected or used after disconnection."""
