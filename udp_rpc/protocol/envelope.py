"""
Request and response envelopes

Request params are carried as a protobuf Struct: every value is a tagged variant
(null, number, string, bool, struct, list), so handlers extract them with an explicit
type check instead of casting loosely-typed values.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from google.protobuf import json_format
from google.protobuf.struct_pb2 import Struct

from udp_rpc.errors import EncodingError, ValidationError


class Status(str, Enum):
    """Response status; every status is a definitive outcome for the caller"""
    OK = "OK"
    ERROR = "ERROR"
    DUPLICATE = "DUPLICATE"


DUPLICATE_MESSAGE = "request already processed"


def new_correlation_id() -> str:
    """Generate a correlation id unique across the process lifetime.

    Combines a nanosecond clock reading with a random discriminator; ids are
    unique but not monotonic.
    """
    return f"{time.time_ns()}-{uuid.uuid4().hex[:12]}"


def params_to_struct(params: Optional[Mapping[str, Any]]) -> Struct:
    """Convert a plain mapping into a params Struct

    Args:
        params: Mapping of parameter names to JSON-compatible values

    Returns:
        Struct: Tagged-variant view of the params

    Raises:
        EncodingError: A value has no Struct representation
    """
    struct = Struct()
    if not params:
        return struct
    try:
        struct.update(dict(params))
    except (ValueError, TypeError) as e:
        raise EncodingError(f"unrepresentable params: {e}") from e
    return struct


def struct_to_dict(struct: Struct) -> Dict[str, Any]:
    """Convert a params Struct back into a plain dict"""
    return json_format.MessageToDict(struct)


@dataclass
class Request:
    """RPC request envelope"""
    correlation_id: str
    method: str
    params: Struct = field(default_factory=Struct)
    issued_at: Optional[int] = None
    trace_context: Optional[Dict[str, str]] = None

    def __post_init__(self):
        if not isinstance(self.correlation_id, str) or not self.correlation_id:
            raise ValidationError("request_id is required")
        if not isinstance(self.method, str) or not self.method:
            raise ValidationError("method is required", correlation_id=self.correlation_id)

    @classmethod
    def build(cls,
              method: str,
              params: Optional[Mapping[str, Any]] = None,
              correlation_id: Optional[str] = None,
              trace_context: Optional[Dict[str, str]] = None) -> "Request":
        """Build a fresh request stamped with the current time

        Args:
            method: Method name
            params: Plain parameter mapping
            correlation_id: Explicit id, a new one is generated when omitted
            trace_context: W3C trace carrier to propagate

        Returns:
            Request: The new request
        """
        return cls(
            correlation_id=correlation_id or new_correlation_id(),
            method=method,
            params=params_to_struct(params),
            issued_at=int(time.time()),
            trace_context=trace_context,
        )

    def params_dict(self) -> Dict[str, Any]:
        return struct_to_dict(self.params)


@dataclass
class Response:
    """RPC response envelope

    Exactly one of result/error_message is meaningful: result for OK,
    error_message for ERROR and DUPLICATE.
    """
    correlation_id: str
    status: Status
    result: Any = None
    error_message: Optional[str] = None

    def __post_init__(self):
        self.status = Status(self.status)
        if self.status is Status.OK:
            if self.error_message is not None:
                raise ValueError("OK response must not carry an error message")
        else:
            if self.result is not None:
                raise ValueError(f"{self.status.value} response must not carry a result")
            if not isinstance(self.error_message, str):
                raise ValueError(f"{self.status.value} response requires an error message")

    @classmethod
    def ok(cls, correlation_id: str, result: Any) -> "Response":
        return cls(correlation_id, Status.OK, result=result)

    @classmethod
    def error(cls, correlation_id: Optional[str], message: str) -> "Response":
        return cls(correlation_id or "", Status.ERROR, error_message=message)

    @classmethod
    def duplicate(cls, correlation_id: str) -> "Response":
        return cls(correlation_id, Status.DUPLICATE, error_message=DUPLICATE_MESSAGE)

    @property
    def is_ok(self) -> bool:
        return self.status is Status.OK
