"""Wire messages for the operation multiplexing protocol.

Five notification shapes travel over a port, each tagged with the JSON-RPC
version and a `method`, and each carrying the operation's correlation id:

    requester -> executor: operation-request, operation-unsubscribe
    executor -> requester: operation-result, operation-error, operation-complete

Example (request):
    {
        "jsonrpc": "2.0",
        "method": "operation-request",
        "params": {
            "operationId": "op_3f2a9c1b7e04_1",
            "operationName": "BasicQuery",
            "variables": {"arg1": 1},
            "query": "query BasicQuery { foo }",
            "context": {}
        }
    }

Anything without the version tag, with an unknown method or with malformed
params is foreign traffic: `decode_message` returns None for it and both
sides ignore it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from ..operation import Operation

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

UNKNOWN_ERROR_MESSAGE = "<unknown error>"


class MessageMethod(str, Enum):
    """All message methods in the protocol."""

    REQUEST = "operation-request"
    RESULT = "operation-result"
    ERROR = "operation-error"
    COMPLETE = "operation-complete"
    UNSUBSCRIBE = "operation-unsubscribe"


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# =============================================================================
# Params
# =============================================================================


class OperationRequestParams(_WireModel):
    operation_id: str
    query: str
    operation_name: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)

    def to_operation(self) -> Operation:
        """Rebuild the operation descriptor carried by this request."""
        return Operation(
            query=self.query,
            operation_name=self.operation_name,
            variables=self.variables,
            context=self.context,
        )


class OperationResultParams(_WireModel):
    operation_id: str
    result: Any


class OperationErrorParams(_WireModel):
    operation_id: str
    error_message: str


class OperationIdParams(_WireModel):
    operation_id: str


# =============================================================================
# Messages
# =============================================================================


class _Notification(_WireModel):
    jsonrpc: Literal["2.0"] = JSONRPC_VERSION

    @property
    def operation_id(self) -> str:
        return self.params.operation_id  # type: ignore[attr-defined]

    def to_wire(self) -> dict[str, Any]:
        """Render the plain dict posted on a port."""
        return self.model_dump(by_alias=True)


class OperationRequestMessage(_Notification):
    method: Literal["operation-request"] = MessageMethod.REQUEST.value
    params: OperationRequestParams


class OperationResultMessage(_Notification):
    method: Literal["operation-result"] = MessageMethod.RESULT.value
    params: OperationResultParams


class OperationErrorMessage(_Notification):
    method: Literal["operation-error"] = MessageMethod.ERROR.value
    params: OperationErrorParams


class OperationCompleteMessage(_Notification):
    method: Literal["operation-complete"] = MessageMethod.COMPLETE.value
    params: OperationIdParams


class OperationUnsubscribeMessage(_Notification):
    method: Literal["operation-unsubscribe"] = MessageMethod.UNSUBSCRIBE.value
    params: OperationIdParams


ProtocolMessage = Annotated[
    OperationRequestMessage
    | OperationResultMessage
    | OperationErrorMessage
    | OperationCompleteMessage
    | OperationUnsubscribeMessage,
    Field(discriminator="method"),
]

# Messages the executor sends back for an operation
ReplyMessage = OperationResultMessage | OperationErrorMessage | OperationCompleteMessage

# Built once; decoding runs for every inbound value on every port
_MESSAGE_ADAPTER: TypeAdapter[ProtocolMessage] = TypeAdapter(ProtocolMessage)


# =============================================================================
# Constructors
# =============================================================================


def operation_request(operation_id: str, operation: Operation) -> OperationRequestMessage:
    """Create an operation-request message for `operation`."""
    return OperationRequestMessage(
        params=OperationRequestParams(
            operation_id=operation_id,
            operation_name=operation.operation_name,
            variables=operation.variables,
            query=operation.query,
            context=operation.context,
        )
    )


def operation_result(operation_id: str, result: Any) -> OperationResultMessage:
    """Create an operation-result message."""
    return OperationResultMessage(
        params=OperationResultParams(operation_id=operation_id, result=result)
    )


def operation_error(operation_id: str, error: object) -> OperationErrorMessage:
    """Create an operation-error message.

    Only the message of an exception is transmitted; any other value is
    reported as UNKNOWN_ERROR_MESSAGE.
    """
    error_message = str(error) if isinstance(error, BaseException) else UNKNOWN_ERROR_MESSAGE
    return OperationErrorMessage(
        params=OperationErrorParams(operation_id=operation_id, error_message=error_message)
    )


def operation_complete(operation_id: str) -> OperationCompleteMessage:
    """Create an operation-complete message."""
    return OperationCompleteMessage(params=OperationIdParams(operation_id=operation_id))


def operation_unsubscribe(operation_id: str) -> OperationUnsubscribeMessage:
    """Create an operation-unsubscribe message."""
    return OperationUnsubscribeMessage(params=OperationIdParams(operation_id=operation_id))


# =============================================================================
# Decoding and predicates
# =============================================================================


def is_protocol_message(value: Any) -> bool:
    """Check if a value carries the protocol version tag."""
    if isinstance(value, _Notification):
        return True
    return isinstance(value, Mapping) and value.get("jsonrpc") == JSONRPC_VERSION


def decode_message(value: Any) -> ProtocolMessage | None:
    """Decode an inbound value, or return None if it is not ours."""
    if isinstance(value, _Notification):
        return value  # type: ignore[return-value]
    if not is_protocol_message(value):
        return None
    try:
        return _MESSAGE_ADAPTER.validate_python(value)
    except ValidationError as e:
        logger.debug(f"Ignoring malformed protocol message: {e}")
        return None


def _matches(value: Any, message_type: type[_Notification], operation_id: str | None) -> bool:
    message = decode_message(value)
    if not isinstance(message, message_type):
        return False
    return operation_id is None or message.operation_id == operation_id


def is_operation_request(value: Any) -> bool:
    return _matches(value, OperationRequestMessage, None)


def is_operation_result(value: Any, operation_id: str) -> bool:
    return _matches(value, OperationResultMessage, operation_id)


def is_operation_error(value: Any, operation_id: str) -> bool:
    return _matches(value, OperationErrorMessage, operation_id)


def is_operation_complete(value: Any, operation_id: str) -> bool:
    return _matches(value, OperationCompleteMessage, operation_id)


def is_operation_unsubscribe(value: Any, operation_id: str) -> bool:
    return _matches(value, OperationUnsubscribeMessage, operation_id)
