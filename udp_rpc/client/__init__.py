"""
Client Module

- backoff: linear retry delay schedule
- session: one call's retry-with-timeout state machine
- client: shared UDP socket with response routing by correlation id
"""

from .backoff import BackoffTimer
from .client import RpcClient
from .session import CallSession, CallState, CallTransport, PendingCall

__all__ = [
    "BackoffTimer",
    "CallSession",
    "CallState",
    "CallTransport",
    "PendingCall",
    "RpcClient",
]
