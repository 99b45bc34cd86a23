"""Message codec shared by the requester and executor sides.

Key concepts:
- Request: requester -> executor, starts an operation
- Result/Complete/Error: executor -> requester, correlated by operation id
- Unsubscribe: requester -> executor, cancels an operation

Foreign values decode to None and are ignored by both sides.
"""

from .messages import (
    JSONRPC_VERSION,
    UNKNOWN_ERROR_MESSAGE,
    MessageMethod,
    OperationCompleteMessage,
    OperationErrorMessage,
    OperationRequestMessage,
    OperationResultMessage,
    OperationUnsubscribeMessage,
    ProtocolMessage,
    ReplyMessage,
    decode_message,
    is_operation_complete,
    is_operation_error,
    is_operation_request,
    is_operation_result,
    is_operation_unsubscribe,
    is_protocol_message,
    operation_complete,
    operation_error,
    operation_request,
    operation_result,
    operation_unsubscribe,
)

__all__ = [
    "JSONRPC_VERSION",
    "UNKNOWN_ERROR_MESSAGE",
    "MessageMethod",
    "OperationCompleteMessage",
    "OperationErrorMessage",
    "OperationRequestMessage",
    "OperationResultMessage",
    "OperationUnsubscribeMessage",
    "ProtocolMessage",
    "ReplyMessage",
    "decode_message",
    "is_operation_complete",
    "is_operation_error",
    "is_operation_request",
    "is_operation_result",
    "is_operation_unsubscribe",
    "is_protocol_message",
    "operation_complete",
    "operation_error",
    "operation_request",
    "operation_result",
    "operation_unsubscribe",
]
