#!/usr/bin/env python
"""
UDP Client Example

Demonstrates RpcClient calls against udp_server_example.py, including concurrent
calls sharing one socket and a deposit whose retries must not be executed twice.
"""

import sys
import os
import logging
from concurrent import futures

# Add project root directory to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from udp_rpc.client.client import RpcClient
from udp_rpc.config import ClientConfig
from udp_rpc.errors import RetriesExhausted
from udp_rpc.protocol.envelope import Status

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    """Run UDP client example"""
    # Short timeout so the server's simulated delays force retries
    config = ClientConfig(host="127.0.0.1", port=5000, timeout_ms=1000, max_retries=3, backoff_base_ms=500)

    with RpcClient(config) as client:
        try:
            response = client.call("deposit", {"amount": 10})
        except RetriesExhausted as e:
            logger.error(f"Deposit failed: {e}")
        else:
            if response.status is Status.DUPLICATE:
                # The first attempt was executed; its reply was lost or late
                logger.info("Deposit applied by an earlier attempt")
            else:
                logger.info(f"Deposit response: {response.status.value} {response.result or response.error_message}")

        # Concurrent calls share the socket; replies are routed by request_id
        calls = [("add", {"a": i, "b": i}) for i in range(5)] + [("reverse_string", {"s": "concurrent"})]
        with futures.ThreadPoolExecutor(max_workers=len(calls)) as pool:
            results = pool.map(lambda c: (c, client.call(*c)), calls)
            for (method, params), response in results:
                logger.info(f"{method}({params}) -> {response.status.value} {response.result}")

    logger.info("Client exited")


if __name__ == "__main__":
    main()
