#!/usr/bin/env python
"""
UDP Server Example

Demonstrates how to run RpcServer with the built-in catalog plus a custom method,
with artificial delays switched on so client retries and duplicate suppression show
up in the logs.
"""

import sys
import os
import signal
import logging
from typing import Any, Dict

# Add project root directory to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from google.protobuf.struct_pb2 import Struct

from udp_rpc.config import ServerConfig
from udp_rpc.errors import MethodError
from udp_rpc.methods.registry import get_number
from udp_rpc.server.server import RpcServer
from udp_rpc.telemetry.metrics import increment_counter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

_balance = {"value": 0.0}


def deposit(params: Struct) -> Dict[str, Any]:
    """
    Non-idempotent method: executing a retried request twice would double the deposit

    Args:
        params: Request parameters containing amount

    Returns:
        New balance
    """
    amount = get_number(params, "amount")
    if amount <= 0:
        raise MethodError("amount must be positive")
    _balance["value"] += amount
    increment_counter("example.deposits", 1)
    logger.info(f"Deposited {amount}, balance is now {_balance['value']}")
    return {"balance": _balance["value"]}


def main():
    """Start UDP server example"""
    config = ServerConfig(
        host="127.0.0.1",
        port=5000,
        fault_delay_probability=0.2,
        fault_delay_seconds=3.0,
    )
    server = RpcServer(config)
    server.register_method("deposit", deposit)

    def handle_sigint(sig, frame):
        logger.info("Received exit signal, stopping server...")
        server.stop()

    signal.signal(signal.SIGINT, handle_sigint)

    logger.info("Starting UDP RPC server...")
    try:
        server.start(threaded=False)
    finally:
        server.stop()

    logger.info(f"Server stopped, ledger stats: {server.ledger.get_stats()}")


if __name__ == "__main__":
    main()
