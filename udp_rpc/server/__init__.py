"""
Server Module

- ledger: time-bounded dedup ledger (at-most-once within the retention window)
- dispatcher: per-datagram decode/dedup/dispatch/reply state machine
- server: UDP socket loop with a worker pool
"""

from .dispatcher import FaultInjector, RequestDispatcher
from .ledger import DedupLedger, LedgerVerdict
from .server import RpcServer

__all__ = [
    "DedupLedger",
    "FaultInjector",
    "LedgerVerdict",
    "RequestDispatcher",
    "RpcServer",
]
