"""
UDP RPC Client

Owns one unconnected UDP socket shared by every call. A receiver thread decodes
inbound datagrams and routes each response to the call waiting on its correlation
id, so concurrent calls never steal each other's replies.
"""

import logging
import socket
import threading
from typing import Any, Dict, Mapping, Optional, Tuple

from udp_rpc.client.backoff import BackoffTimer
from udp_rpc.client.session import CallSession, CallTransport, PendingCall
from udp_rpc.config import ClientConfig
from udp_rpc.errors import CodecError, TransportError
from udp_rpc.protocol.codec import decode_response
from udp_rpc.protocol.envelope import Response
from udp_rpc.telemetry.metrics import increment_counter

logger = logging.getLogger(__name__)

# Receive timeout so the receiver notices close() promptly
POLL_INTERVAL_SECONDS = 0.2


class RpcClient(CallTransport):
    """
    UDP RPC client

    Usage:
        with RpcClient(ClientConfig(host="127.0.0.1", port=5000)) as client:
            response = client.call("add", {"a": 5, "b": 7})
            print(response.status, response.result)
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        """Create the socket and start the receiver thread

        Args:
            config: Client configuration

        Raises:
            TransportError: The server address cannot be resolved or the socket cannot be bound
        """
        self.config = config or ClientConfig()
        self.server_address = self._resolve(self.config.host, self.config.port)

        self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self._socket.bind(("0.0.0.0", 0))
        except OSError as e:
            self._socket.close()
            raise TransportError(f"failed to bind client socket: {e}") from e
        self._socket.settimeout(POLL_INTERVAL_SECONDS)

        self._pending: Dict[str, PendingCall] = {}
        self._pending_lock = threading.Lock()

        self.running = True
        self._receiver = threading.Thread(
            target=self._receive_loop,
            daemon=True,
            name="rpc-client-receiver",
        )
        self._receiver.start()
        logger.info(f"RPC client targeting {self.server_address[0]}:{self.server_address[1]}")

    @staticmethod
    def _resolve(host: str, port: int) -> Tuple[str, int]:
        try:
            infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_DGRAM)
        except socket.gaierror as e:
            raise TransportError(f"cannot resolve {host}:{port}: {e}") from e
        ip, resolved_port = infos[0][4][:2]
        return ip, resolved_port

    def send(self, payload: bytes) -> None:
        if not self.running:
            raise TransportError("client is closed")
        try:
            self._socket.sendto(payload, self.server_address)
        except OSError as e:
            raise TransportError(f"send failed: {e}") from e

    def register(self, correlation_id: str) -> PendingCall:
        waiter = PendingCall(correlation_id)
        with self._pending_lock:
            self._pending[correlation_id] = waiter
        return waiter

    def unregister(self, correlation_id: str) -> None:
        with self._pending_lock:
            self._pending.pop(correlation_id, None)

    def session(self,
                method: str,
                params: Optional[Mapping[str, Any]] = None,
                cancel_event: Optional[threading.Event] = None) -> CallSession:
        """Create a call session configured from this client's settings"""
        return CallSession(
            transport=self,
            method=method,
            params=params,
            max_attempts=self.config.max_attempts,
            timeout_seconds=self.config.timeout_seconds,
            backoff=BackoffTimer(self.config.backoff_base_ms, self.config.backoff_max_ms),
            cancel_event=cancel_event,
        )

    def call(self,
             method: str,
             params: Optional[Mapping[str, Any]] = None,
             cancel_event: Optional[threading.Event] = None) -> Response:
        """Call a remote method with retries

        Args:
            method: Method name
            params: Method params
            cancel_event: Cancels the call at the next attempt boundary when set

        Returns:
            Response: Definitive response (OK, ERROR or DUPLICATE)

        Raises:
            RetriesExhausted: No response after all attempts
            CallCancelled: cancel_event was set
        """
        return self.session(method, params, cancel_event).run()

    def _receive_loop(self) -> None:
        while self.running:
            try:
                data, addr = self._socket.recvfrom(self.config.buffer_size)
            except socket.timeout:
                continue
            except OSError as e:
                if not self.running:
                    break
                logger.error(f"Error reading from UDP: {e}")
                self._fail_pending(TransportError(f"receive failed: {e}"))
                continue
            self._route(data, addr)

    def _route(self, data: bytes, addr: Tuple[Any, ...]) -> None:
        if tuple(addr[:2]) != self.server_address:
            logger.warning(f"Discarding datagram from unexpected address {addr}")
            increment_counter("rpc.client.discarded", 1, {"reason": "foreign_address"})
            return

        try:
            response = decode_response(data)
        except CodecError as e:
            logger.warning(f"Discarding undecodable response: {e}")
            increment_counter("rpc.client.discarded", 1, {"reason": "malformed"})
            return

        with self._pending_lock:
            waiter = self._pending.get(response.correlation_id)
        if waiter is None:
            # Late reply to a finished call, or a reply with no id at all
            logger.warning(f"Discarding response for unknown request {response.correlation_id!r} "
                           f"({response.status.value})")
            increment_counter("rpc.client.discarded", 1, {"reason": "unmatched"})
            return
        waiter.deliver(response)

    def _fail_pending(self, error: TransportError) -> None:
        with self._pending_lock:
            waiters = list(self._pending.values())
        for waiter in waiters:
            waiter.deliver(error)

    def close(self) -> None:
        """Stop the receiver thread and close the socket"""
        if not self.running:
            return
        self.running = False
        if self._receiver is not threading.current_thread():
            self._receiver.join(timeout=POLL_INTERVAL_SECONDS * 5)
        self._socket.close()
        logger.debug("RPC client closed")

    def __enter__(self) -> "RpcClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
