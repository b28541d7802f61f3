"""
Method registry

Maps method names to handlers. A handler receives the request params as a protobuf
Struct and returns a JSON-compatible result, raising MethodError subclasses for
domain failures.
"""

import logging
from typing import Any, Callable, Dict, List

from google.protobuf.struct_pb2 import Struct

from udp_rpc.errors import InvalidParams, MethodNotFound

logger = logging.getLogger(__name__)

Handler = Callable[[Struct], Any]


def _require(params: Struct, key: str, kind: str, type_name: str):
    if key not in params.fields:
        raise InvalidParams(f"parameter '{key}' is required", param=key)
    value = params.fields[key]
    if value.WhichOneof("kind") != kind:
        raise InvalidParams(f"parameter '{key}' must be {type_name}", param=key)
    return getattr(value, kind)


def get_number(params: Struct, key: str) -> float:
    """Extract a numeric parameter

    Raises:
        InvalidParams: Parameter missing or not a number
    """
    return _require(params, key, "number_value", "a number")


def get_string(params: Struct, key: str) -> str:
    """Extract a string parameter

    Raises:
        InvalidParams: Parameter missing or not a string
    """
    return _require(params, key, "string_value", "a string")


def get_bool(params: Struct, key: str) -> bool:
    """Extract a boolean parameter

    Raises:
        InvalidParams: Parameter missing or not a boolean
    """
    return _require(params, key, "bool_value", "a boolean")


class MethodRegistry:
    """
    Name -> handler table consumed by the request dispatcher

    Usage:
        registry = MethodRegistry()
        registry.register("echo", lambda params: struct_to_dict(params))
        handler = registry.lookup("echo")
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        """Register a method handler

        Args:
            name: Method name, part of the wire contract
            handler: Callable receiving the params Struct
        """
        if not name:
            raise ValueError("method name must be non-empty")
        self._handlers[name] = handler
        logger.debug(f"Registered RPC method: {name}")

    def lookup(self, name: str) -> Handler:
        """Find the handler for a method

        Raises:
            MethodNotFound: No handler registered under name
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise MethodNotFound(name)
        return handler

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
