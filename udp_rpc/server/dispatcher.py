"""
Request Dispatcher

Server-side handling of a single inbound datagram:
decode -> dedup check -> method lookup -> invoke -> encode -> send.
Every step is an exit point producing exactly one response; nothing escapes to the
receive loop.
"""

import logging
import random
import time
from typing import Any, Callable, Optional, Tuple

from opentelemetry import trace

from udp_rpc.errors import DecodingError, EncodingError, MethodError, MethodNotFound, ValidationError
from udp_rpc.methods.registry import MethodRegistry
from udp_rpc.protocol.codec import MAX_DATAGRAM_SIZE, decode_request, encode_response
from udp_rpc.protocol.envelope import Request, Response
from udp_rpc.server.ledger import DedupLedger, LedgerVerdict
from udp_rpc.telemetry.metrics import increment_counter, record_latency
from udp_rpc.telemetry.tracer import create_span, extract_trace_context, with_trace_context

logger = logging.getLogger(__name__)

Address = Tuple[Any, ...]
SendFunc = Callable[[bytes, Address], Any]


class FaultInjector:
    """Randomly delays dispatch to simulate slow processing

    Args:
        probability: Chance in [0, 1] that a request is delayed, 0 disables
        delay_seconds: Length of the delay
        rng: Random source
        sleep: Sleep function
    """

    def __init__(self,
                 probability: float = 0.0,
                 delay_seconds: float = 3.0,
                 rng: Optional[random.Random] = None,
                 sleep: Callable[[float], None] = time.sleep):
        if not 0.0 <= probability <= 1.0:
            raise ValueError("probability must be within [0, 1]")
        self.probability = probability
        self.delay_seconds = delay_seconds
        self._rng = rng or random.Random()
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return self.probability > 0 and self.delay_seconds > 0

    def maybe_delay(self, correlation_id: str) -> bool:
        """Sleep if the dice say so; returns whether a delay was injected"""
        if not self.enabled or self._rng.random() >= self.probability:
            return False
        logger.info(f"Simulating delay of {self.delay_seconds}s for request {correlation_id}")
        self._sleep(self.delay_seconds)
        return True


class RequestDispatcher:
    """
    Turns raw request datagrams into responses.

    The ledger is the only shared mutable state; dispatch is safe to call from
    many worker threads at once.
    """

    def __init__(self,
                 registry: MethodRegistry,
                 ledger: DedupLedger,
                 fault_injector: Optional[FaultInjector] = None):
        """Initialize the dispatcher

        Args:
            registry: Method registry to dispatch into
            ledger: Dedup ledger owned by this dispatcher
            fault_injector: Optional pre-dispatch delay hook
        """
        self.registry = registry
        self.ledger = ledger
        self.fault_injector = fault_injector

    def dispatch(self, data: bytes) -> Response:
        """Decode a datagram and produce its response

        Args:
            data: Raw datagram payload

        Returns:
            Response: Response to send back, never None
        """
        increment_counter("rpc.server.requests.received", 1)

        try:
            request = decode_request(data)
        except ValidationError as e:
            logger.warning(f"Rejected invalid request: {e}")
            increment_counter("rpc.server.errors", 1, {"type": "invalid_request"})
            return Response.error(e.correlation_id, f"error parsing inputs: {e}")
        except DecodingError as e:
            logger.warning(f"Rejected malformed datagram: {e}")
            increment_counter("rpc.server.errors", 1, {"type": "parse_error"})
            return Response.error(None, f"error parsing inputs: {e}")

        return self.execute(request)

    def execute(self, request: Request) -> Response:
        """Run a decoded request through dedup, lookup and invocation"""
        if self.ledger.check_and_record(request.correlation_id) is LedgerVerdict.ALREADY_SEEN:
            logger.info(f"Duplicate request {request.correlation_id} ({request.method}), skipping execution")
            increment_counter("rpc.server.duplicates", 1, {"method": request.method})
            return Response.duplicate(request.correlation_id)

        if self.fault_injector is not None:
            self.fault_injector.maybe_delay(request.correlation_id)

        try:
            handler = self.registry.lookup(request.method)
        except MethodNotFound as e:
            logger.warning(f"Unknown method requested: {request.method}")
            increment_counter("rpc.server.errors", 1, {"type": "method_not_found"})
            return Response.error(request.correlation_id, str(e))

        trace_context = extract_trace_context(request.trace_context)
        with with_trace_context(trace_context):
            with create_span("rpc.server.execute",
                             {"rpc.method": request.method, "rpc.request_id": request.correlation_id},
                             kind=trace.SpanKind.SERVER):
                increment_counter("rpc.server.method.calls", 1, {"method": request.method})
                try:
                    result = handler(request.params)
                except MethodError as e:
                    logger.info(f"Method {request.method} failed for {request.correlation_id}: {e}")
                    increment_counter("rpc.server.method.errors", 1, {"method": request.method})
                    return Response.error(request.correlation_id, str(e))
                except Exception as e:
                    logger.exception(f"Unexpected error while executing method {request.method}")
                    increment_counter("rpc.server.method.errors", 1, {"method": request.method})
                    return Response.error(request.correlation_id, f"internal error: {e}")

        return Response.ok(request.correlation_id, result)

    def handle_datagram(self, data: bytes, addr: Address, send: SendFunc) -> Response:
        """Dispatch one datagram and send its response to addr

        A send failure is logged and dropped; the client's retry loop is the only
        recovery for lost responses.

        Args:
            data: Raw datagram payload
            addr: Sender address
            send: Callable writing one datagram, e.g. socket.sendto

        Returns:
            Response: The response that was (or failed to be) sent
        """
        start_time = time.time()
        response = self.dispatch(data)

        try:
            payload = encode_response(response)
        except EncodingError as e:
            logger.error(f"Error marshaling response for {response.correlation_id}: {e}")
            increment_counter("rpc.server.errors", 1, {"type": "encode_error"})
            response = Response.error(response.correlation_id, f"error marshaling response: {e}")
            payload = encode_response(response)

        if len(payload) > MAX_DATAGRAM_SIZE:
            logger.warning(f"Response for {response.correlation_id} is {len(payload)} bytes, "
                           f"larger than {MAX_DATAGRAM_SIZE}")

        try:
            send(payload, addr)
        except OSError as e:
            logger.error(f"Error sending response for {response.correlation_id} to {addr}: {e}")
            increment_counter("rpc.server.errors", 1, {"type": "send_error"})
            return response

        latency_ms = (time.time() - start_time) * 1000
        record_latency("rpc.server.request.latency", latency_ms, {"status": response.status.value})
        logger.debug(f"Sent {response.status.value} response for {response.correlation_id} to {addr}, "
                     f"took {latency_ms:.2f}ms")
        return response
