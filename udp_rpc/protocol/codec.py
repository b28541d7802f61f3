"""
Envelope codec

Serializes request/response envelopes to compact UTF-8 JSON and back.

Wire schema:
    Request:  {request_id: str, method: str, params: object, timestamp?: int, trace_context?: object}
    Response: {request_id: str, status: "OK"|"ERROR"|"DUPLICATE", result?: any, error?: str}

Unknown fields are ignored on decode so newer peers can add fields freely.
"""

import json
from typing import Any, Dict

from google.protobuf import json_format
from google.protobuf.struct_pb2 import Struct

from udp_rpc.errors import DecodingError, EncodingError, ValidationError
from udp_rpc.protocol.envelope import Request, Response, Status, struct_to_dict

# One request or response must fit a single datagram
MAX_DATAGRAM_SIZE = 1024


def _dumps(obj: Dict[str, Any]) -> bytes:
    try:
        return json.dumps(obj, separators=(",", ":"), allow_nan=False, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(f"failed to encode envelope: {e}") from e


def _loads(data: bytes) -> Dict[str, Any]:
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodingError(f"failed to parse JSON: {e}") from e
    if not isinstance(obj, dict):
        raise DecodingError(f"envelope must be a JSON object, got {type(obj).__name__}")
    return obj


def encode_request(request: Request) -> bytes:
    """Encode a request envelope

    Args:
        request: Request to encode

    Returns:
        bytes: UTF-8 JSON payload

    Raises:
        EncodingError: The request holds an unrepresentable value
    """
    try:
        params = struct_to_dict(request.params)
    except (ValueError, json_format.Error) as e:
        raise EncodingError(f"failed to encode params: {e}") from e

    obj = {
        "request_id": request.correlation_id,
        "method": request.method,
        "params": params,
    }
    if request.issued_at is not None:
        obj["timestamp"] = request.issued_at
    if request.trace_context:
        obj["trace_context"] = request.trace_context
    return _dumps(obj)


def decode_request(data: bytes) -> Request:
    """Decode a request envelope

    Args:
        data: Raw datagram payload

    Returns:
        Request: The decoded request

    Raises:
        DecodingError: Payload is not a JSON object
        ValidationError: A required field is missing or mistyped
    """
    obj = _loads(data)

    correlation_id = obj.get("request_id")
    if not isinstance(correlation_id, str) or not correlation_id:
        raise ValidationError("request_id is required")

    method = obj.get("method")
    if not isinstance(method, str) or not method:
        raise ValidationError("method is required", correlation_id=correlation_id)

    raw_params = obj.get("params")
    params = Struct()
    if raw_params is not None:
        if not isinstance(raw_params, dict):
            raise ValidationError("params must be an object", correlation_id=correlation_id)
        try:
            json_format.ParseDict(raw_params, params)
        except json_format.ParseError as e:
            raise ValidationError(f"invalid params: {e}", correlation_id=correlation_id) from e

    issued_at = obj.get("timestamp")
    if issued_at is not None and (isinstance(issued_at, bool) or not isinstance(issued_at, int)):
        raise ValidationError("timestamp must be an integer", correlation_id=correlation_id)

    trace_context = obj.get("trace_context")
    if not isinstance(trace_context, dict):
        trace_context = None

    return Request(
        correlation_id=correlation_id,
        method=method,
        params=params,
        issued_at=issued_at,
        trace_context=trace_context,
    )


def encode_response(response: Response) -> bytes:
    """Encode a response envelope

    Raises:
        EncodingError: The result has no JSON representation
    """
    obj: Dict[str, Any] = {
        "request_id": response.correlation_id,
        "status": response.status.value,
    }
    if response.status is Status.OK:
        obj["result"] = response.result
    else:
        obj["error"] = response.error_message
    return _dumps(obj)


def decode_response(data: bytes) -> Response:
    """Decode a response envelope

    A missing request_id decodes as an empty string: the server cannot echo an id
    it failed to parse.

    Raises:
        DecodingError: Payload is not a JSON object
        ValidationError: Status is missing or unknown, or an error message is missing
    """
    obj = _loads(data)

    correlation_id = obj.get("request_id")
    if correlation_id is None:
        correlation_id = ""
    elif not isinstance(correlation_id, str):
        raise ValidationError("request_id must be a string")

    try:
        status = Status(obj.get("status"))
    except ValueError:
        raise ValidationError(f"unknown status: {obj.get('status')!r}", correlation_id=correlation_id) from None

    if status is Status.OK:
        return Response.ok(correlation_id, obj.get("result"))

    error_message = obj.get("error")
    if not isinstance(error_message, str):
        raise ValidationError(f"{status.value} response requires an error message", correlation_id=correlation_id)
    return Response(correlation_id, status, error_message=error_message)
