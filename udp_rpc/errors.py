"""
RPC error taxonomy

Every failure surfaced by the codec, the method registry, the server and the client
derives from RPCError so callers can catch the whole family at once.
"""

from typing import Optional


class RPCError(Exception):
    """Base class for all udp_rpc errors."""


class CodecError(RPCError):
    """Raised when an envelope cannot be encoded or decoded."""


class EncodingError(CodecError):
    """Raised when an envelope holds a value with no wire representation."""


class DecodingError(CodecError):
    """Raised when received bytes are not a well-formed envelope."""


class ValidationError(CodecError):
    """Raised when a well-formed envelope lacks a required field.

    Args:
        message: Human readable reason
        correlation_id: The envelope's request_id, if it could be read
    """

    def __init__(self, message: str, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.correlation_id = correlation_id


class MethodError(RPCError):
    """Domain failure raised by a method handler.

    The message is sent back to the caller verbatim in an ERROR response.
    """


class InvalidParams(MethodError):
    """Raised when a handler parameter is missing or of the wrong type."""

    def __init__(self, message: str, param: Optional[str] = None):
        super().__init__(message)
        self.param = param


class MethodNotFound(MethodError):
    """Raised by the registry when no handler is registered under a name."""

    def __init__(self, method: str):
        super().__init__(f"unknown method: {method}")
        self.method = method


class TransportError(RPCError, ConnectionError):
    """Raised when a datagram cannot be sent or received."""


class CallTimeout(RPCError, TimeoutError):
    """Raised when no response arrives within the per-attempt deadline."""


class CallCancelled(RPCError):
    """Raised when a call is cancelled at an attempt boundary."""


class RetriesExhausted(RPCError):
    """Raised when a call used up its attempts without a definitive response.

    Args:
        last_error: Last transport-level error observed
        attempts: Number of attempts made
    """

    def __init__(self, last_error: Optional[Exception], attempts: int):
        super().__init__(f"max retries exceeded after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts
