"""
Built-in method catalog

add, subtract, multiply, divide, get_time, reverse_string, echo.
The names are part of the wire contract.
"""

import time
from typing import Any, Dict

from google.protobuf.struct_pb2 import Struct

from udp_rpc.errors import MethodError
from udp_rpc.methods.registry import MethodRegistry, get_number, get_string
from udp_rpc.protocol.envelope import struct_to_dict


def add(params: Struct) -> float:
    return get_number(params, "a") + get_number(params, "b")


def subtract(params: Struct) -> float:
    return get_number(params, "a") - get_number(params, "b")


def multiply(params: Struct) -> float:
    return get_number(params, "a") * get_number(params, "b")


def divide(params: Struct) -> float:
    a = get_number(params, "a")
    b = get_number(params, "b")
    if b == 0:
        raise MethodError("division by zero")
    return a / b


def get_time(params: Struct) -> int:
    """Current Unix time in whole seconds"""
    return int(time.time())


def reverse_string(params: Struct) -> str:
    """Reverse by code point; the empty string stays empty"""
    return get_string(params, "s")[::-1]


def echo(params: Struct) -> Dict[str, Any]:
    return struct_to_dict(params)


BUILTIN_METHODS = {
    "add": add,
    "subtract": subtract,
    "multiply": multiply,
    "divide": divide,
    "get_time": get_time,
    "reverse_string": reverse_string,
    "echo": echo,
}


def default_registry() -> MethodRegistry:
    """Create a registry holding the whole built-in catalog"""
    registry = MethodRegistry()
    for name, handler in BUILTIN_METHODS.items():
        registry.register(name, handler)
    return registry
