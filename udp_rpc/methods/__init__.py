"""
Methods Module

- registry: name -> handler table and typed parameter extraction
- builtin: the arithmetic, string, clock and echo catalog
"""

from .builtin import BUILTIN_METHODS, default_registry
from .registry import Handler, MethodRegistry, get_bool, get_number, get_string

__all__ = [
    "BUILTIN_METHODS",
    "Handler",
    "MethodRegistry",
    "default_registry",
    "get_bool",
    "get_number",
    "get_string",
]
