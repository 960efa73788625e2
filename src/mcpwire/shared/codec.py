"""JSON-RPC message codec.

One framed unit of transport data (a stdio line, an HTTP body, an SSE event)
decodes to one message or, for a JSON array, to a batch. Encoding always yields
a single line of compact JSON.
"""

import json
from collections.abc import Sequence
from typing import Any

from pydantic import TypeAdapter, ValidationError

from mcpwire.shared.exceptions import MessageDecodeError
from mcpwire.types import (
    INVALID_REQUEST,
    JSONRPC_VERSION,
    PARSE_ERROR,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
)

MessageLike = JSONRPCMessage | JSONRPCRequest | JSONRPCNotification | JSONRPCResponse | JSONRPCError
# One element of a decoded batch: malformed elements are kept in place as their error
BatchItem = JSONRPCMessage | MessageDecodeError

_request_id_adapter: TypeAdapter[RequestId] = TypeAdapter(RequestId)


def _invalid(message: str, request_id: RequestId | None = None) -> MessageDecodeError:
    return MessageDecodeError(ErrorData(code=INVALID_REQUEST, message=message), request_id=request_id)


def _recover_request_id(raw: dict[str, Any]) -> RequestId | None:
    if "method" not in raw or "id" not in raw:
        return None
    try:
        return _request_id_adapter.validate_python(raw["id"])
    except ValidationError:
        return None


def _decode_object(raw: Any) -> JSONRPCMessage:
    if not isinstance(raw, dict):
        raise _invalid("Invalid Request: message must be a JSON object")

    request_id = _recover_request_id(raw)

    if raw.get("jsonrpc") != JSONRPC_VERSION:
        raise _invalid("Invalid Request: jsonrpc must be exactly '2.0'", request_id)

    has_result = "result" in raw
    has_error = "error" in raw
    model: type[JSONRPCRequest | JSONRPCNotification | JSONRPCResponse | JSONRPCError]
    if "method" in raw:
        if has_result or has_error:
            raise _invalid("Invalid Request: a request cannot carry result or error", request_id)
        if "id" in raw:
            if raw["id"] is None:
                raise _invalid("Invalid Request: request id must not be null")
            model = JSONRPCRequest
        else:
            model = JSONRPCNotification
    elif has_result and has_error:
        raise _invalid("Invalid Request: response cannot have both result and error")
    elif has_result:
        model = JSONRPCResponse
    elif has_error:
        model = JSONRPCError
    else:
        raise _invalid("Invalid Request: not a request, notification or response")

    if model is not JSONRPCError and "id" in raw and raw["id"] is None:
        raise _invalid("Invalid Request: id must not be null")

    try:
        return JSONRPCMessage(model.model_validate(raw))
    except ValidationError as exc:
        raise MessageDecodeError(
            ErrorData(code=INVALID_REQUEST, message="Invalid Request", data=str(exc)),
            request_id=request_id,
        ) from exc


def _decode_batch_item(raw: Any) -> BatchItem:
    try:
        return _decode_object(raw)
    except MessageDecodeError as exc:
        return exc


def decode(data: bytes | str) -> JSONRPCMessage | list[BatchItem]:
    """Decode one framed unit into a message, or a list of items for a batch.

    Batch elements are decoded independently. A malformed element does not
    spoil its siblings; it appears in the list as the ``MessageDecodeError``
    describing it, carrying its request id when one could be recovered.

    Raises:
        MessageDecodeError: with PARSE_ERROR when ``data`` is not JSON, and with
            INVALID_REQUEST when it is JSON but not a well-formed message or is
            an empty batch.
    """
    try:
        raw = json.loads(data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise MessageDecodeError(ErrorData(code=PARSE_ERROR, message="Parse error", data=str(exc))) from exc

    if isinstance(raw, list):
        if not raw:
            raise _invalid("Invalid Request: empty batch")
        return [_decode_batch_item(item) for item in raw]
    return _decode_object(raw)


def decode_all(data: bytes | str) -> list[BatchItem]:
    """Decode one framed unit into its items in array order, never raising.

    A single message yields a one-element list; a payload that fails as a whole
    yields its ``MessageDecodeError`` alone.
    """
    try:
        decoded = decode(data)
    except MessageDecodeError as exc:
        return [exc]
    return decoded if isinstance(decoded, list) else [decoded]


def _unwrap(message: MessageLike) -> JSONRPCRequest | JSONRPCNotification | JSONRPCResponse | JSONRPCError:
    return message.root if isinstance(message, JSONRPCMessage) else message


def to_jsonable(message: MessageLike) -> dict[str, Any]:
    """Return the wire dictionary for a message."""
    return _unwrap(message).model_dump(mode="json", by_alias=True, exclude_unset=True)


def encode(message: MessageLike | Sequence[MessageLike]) -> bytes:
    """Encode a message, or a sequence of messages as a batch, to one line of JSON."""
    if isinstance(message, Sequence):
        payload: Any = [to_jsonable(item) for item in message]
    else:
        payload = to_jsonable(message)
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
