"""
Protocol Module

Request/response envelopes and their JSON wire codec:
- envelope: Request, Response, Status and correlation id generation
- codec: encode/decode to one self-describing datagram payload
"""

from .codec import (
    MAX_DATAGRAM_SIZE,
    decode_request,
    decode_response,
    encode_request,
    encode_response,
)
from .envelope import (
    DUPLICATE_MESSAGE,
    Request,
    Response,
    Status,
    new_correlation_id,
    params_to_struct,
    struct_to_dict,
)

__all__ = [
    "MAX_DATAGRAM_SIZE",
    "DUPLICATE_MESSAGE",
    "Request",
    "Response",
    "Status",
    "decode_request",
    "decode_response",
    "encode_request",
    "encode_response",
    "new_correlation_id",
    "params_to_struct",
    "struct_to_dict",
]
