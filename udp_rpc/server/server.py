"""
UDP RPC Server

Binds one UDP socket and hands every inbound datagram to a worker pool, where the
request dispatcher decodes, deduplicates, executes and replies.
"""

import logging
import socket
import threading
import weakref
from concurrent import futures
from typing import Any, Dict, Iterator, Optional, Tuple

from udp_rpc.config import ServerConfig
from udp_rpc.methods.builtin import default_registry
from udp_rpc.methods.registry import Handler, MethodRegistry
from udp_rpc.server.dispatcher import Address, FaultInjector, RequestDispatcher
from udp_rpc.server.ledger import DedupLedger
from udp_rpc.telemetry.metrics import add_gauge_callback, increment_counter

logger = logging.getLogger(__name__)

# Receive timeout so the loop notices stop() promptly
POLL_INTERVAL_SECONDS = 0.5

LEDGER_SIZE_GAUGE = "rpc.server.ledger.size"

# Running servers, observed by the one process-wide ledger size gauge
_running_servers: "weakref.WeakSet[RpcServer]" = weakref.WeakSet()
_gauge_lock = threading.Lock()
_ledger_gauge = None


def ledger_size_observations() -> Iterator[Tuple[int, Dict[str, Any]]]:
    """Yield (ledger size, attributes) for every running server"""
    for server in list(_running_servers):
        host, port = server.address
        yield len(server.ledger), {"server": f"{host}:{port}"}


def _register_ledger_gauge() -> None:
    global _ledger_gauge
    with _gauge_lock:
        if _ledger_gauge is None:
            _ledger_gauge = add_gauge_callback(
                LEDGER_SIZE_GAUGE,
                ledger_size_observations,
                description="Correlation ids held by each server's dedup ledger",
            )


class RpcServer:
    """
    UDP RPC server

    Usage:
        server = RpcServer(ServerConfig(port=5000))
        server.register_method("ping", lambda params: "pong")
        server.start()
        ...
        server.stop()
    """

    def __init__(self,
                 config: Optional[ServerConfig] = None,
                 registry: Optional[MethodRegistry] = None,
                 ledger: Optional[DedupLedger] = None,
                 dispatcher: Optional[RequestDispatcher] = None):
        """Initialize the server

        Args:
            config: Server configuration
            registry: Method registry, the built-in catalog if omitted
            ledger: Dedup ledger, a fresh one per server if omitted
            dispatcher: Fully custom dispatcher, overrides registry and ledger
        """
        self.config = config or ServerConfig()

        if dispatcher is None:
            fault_injector = None
            if self.config.fault_delay_probability > 0:
                fault_injector = FaultInjector(
                    probability=self.config.fault_delay_probability,
                    delay_seconds=self.config.fault_delay_seconds,
                )
            dispatcher = RequestDispatcher(
                registry=registry if registry is not None else default_registry(),
                ledger=ledger if ledger is not None else DedupLedger(
                    ttl_seconds=self.config.dedup_ttl_seconds,
                    sweep_interval_seconds=self.config.sweep_interval_seconds,
                ),
                fault_injector=fault_injector,
            )
        self.dispatcher = dispatcher

        self.running = False
        self._socket: Optional[socket.socket] = None
        self._bound_address: Optional[Tuple[str, int]] = None
        self._executor: Optional[futures.ThreadPoolExecutor] = None
        self._server_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def registry(self) -> MethodRegistry:
        return self.dispatcher.registry

    @property
    def ledger(self) -> DedupLedger:
        return self.dispatcher.ledger

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); resolves an ephemeral port after start()"""
        if self._bound_address is None:
            return self.config.host, self.config.port
        return self._bound_address

    def register_method(self, name: str, handler: Handler) -> None:
        """Register an RPC method handler

        Args:
            name: Method name
            handler: Handler function, receives the params Struct and returns the result
        """
        self.registry.register(name, handler)

    def start(self, threaded: bool = True) -> None:
        """Bind the socket and start serving

        Args:
            threaded: Serve from a background thread instead of blocking
        """
        with self._lock:
            if self.running:
                return

            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.bind((self.config.host, self.config.port))
            except OSError:
                sock.close()
                raise
            sock.settimeout(POLL_INTERVAL_SECONDS)
            self._socket = sock
            self._bound_address = tuple(sock.getsockname()[:2])

            self._executor = futures.ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="rpc-worker",
            )
            self.ledger.start()
            self.running = True
            _running_servers.add(self)

        _register_ledger_gauge()

        increment_counter("rpc.server.started", 1)
        host, port = self.address
        logger.info(f"RPC server listening on {host}:{port}")
        logger.info(f"Available methods: {', '.join(self.registry.names())}")

        if threaded:
            self._server_thread = threading.Thread(
                target=self._serve_loop,
                daemon=True,
                name="rpc-server",
            )
            self._server_thread.start()
        else:
            self._serve_loop()

    def stop(self) -> None:
        """Stop serving and release the socket, the pool and the ledger sweeper"""
        with self._lock:
            if not self.running:
                return
            self.running = False
            _running_servers.discard(self)

        if self._server_thread is not None and self._server_thread is not threading.current_thread():
            self._server_thread.join(timeout=POLL_INTERVAL_SECONDS * 4)
            self._server_thread = None

        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

        self.ledger.stop()

        if self._socket is not None:
            self._socket.close()
            self._socket = None
        self._bound_address = None

        logger.info("RPC server stopped")

    def _serve_loop(self) -> None:
        """Receive loop: one worker task per datagram"""
        sock = self._socket
        executor = self._executor
        while self.running:
            try:
                data, addr = sock.recvfrom(self.config.buffer_size)
            except socket.timeout:
                continue
            except OSError as e:
                if not self.running:
                    break
                logger.error(f"Error reading from UDP: {e}")
                increment_counter("rpc.server.errors", 1, {"type": "receive_error"})
                continue

            logger.debug(f"Received {len(data)} bytes from {addr}")
            try:
                executor.submit(self._handle, data, addr)
            except RuntimeError:
                # Pool already shut down by stop()
                break

    def _handle(self, data: bytes, addr: Address) -> None:
        try:
            self.dispatcher.handle_datagram(data, addr, self._send)
        except Exception:
            logger.exception(f"Unhandled error while handling datagram from {addr}")
            increment_counter("rpc.server.errors", 1, {"type": "internal_error"})

    def _send(self, payload: bytes, addr: Address) -> None:
        sock = self._socket
        if sock is None:
            raise OSError("server socket is closed")
        sock.sendto(payload, addr)

    def __enter__(self) -> "RpcServer":
        self.start(threaded=True)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
