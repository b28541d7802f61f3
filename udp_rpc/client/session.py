"""
Call Session

Client-side state machine for one logical call over an unreliable transport: build
and encode the request once, re-send the identical bytes on every attempt, wait up
to a per-attempt deadline, back off linearly between attempts and surface either
the first decoded response or RetriesExhausted.
"""

import abc
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from opentelemetry import trace

from udp_rpc.client.backoff import BackoffTimer
from udp_rpc.errors import CallCancelled, CallTimeout, RetriesExhausted, TransportError
from udp_rpc.protocol.codec import encode_request
from udp_rpc.protocol.envelope import Request, Response, new_correlation_id
from udp_rpc.telemetry.metrics import increment_counter, record_latency
from udp_rpc.telemetry.tracer import create_span, inject_trace_context

logger = logging.getLogger(__name__)


class PendingCall:
    """Mailbox the transport fills with responses routed by correlation id"""

    def __init__(self, correlation_id: str):
        self.correlation_id = correlation_id
        self._queue: "queue.Queue[Union[Response, TransportError]]" = queue.Queue()

    def deliver(self, item: Union[Response, TransportError]) -> None:
        self._queue.put_nowait(item)

    def wait(self, timeout: float) -> Response:
        """Block until a response or a transport error arrives

        Raises:
            CallTimeout: Nothing arrived within timeout seconds
            TransportError: The receive side failed
        """
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise CallTimeout(f"timeout after {timeout:.3f}s") from None
        if isinstance(item, TransportError):
            raise item
        return item

    def poll(self) -> Optional[Response]:
        """Return a response that already arrived, dropping stale transport errors"""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return None
            if isinstance(item, Response):
                return item


class CallTransport(abc.ABC):
    """Datagram transport a call session sends through and receives from"""

    @abc.abstractmethod
    def send(self, payload: bytes) -> None:
        """Send one datagram to the server

        Raises:
            TransportError: The datagram could not be sent
        """

    @abc.abstractmethod
    def register(self, correlation_id: str) -> PendingCall:
        """Start routing responses for correlation_id to a new mailbox"""

    @abc.abstractmethod
    def unregister(self, correlation_id: str) -> None:
        """Stop routing responses for correlation_id"""


@dataclass
class CallState:
    """Ephemeral per-call attempt state"""
    correlation_id: str
    max_attempts: int
    deadline_per_attempt: float
    attempt_count: int = 0
    last_error: Optional[Exception] = None


class CallSession:
    """
    One logical call with retries

    Usage:
        session = CallSession(client, "add", {"a": 5, "b": 7}, max_attempts=4, timeout_seconds=2.0)
        response = session.run()

    OK, ERROR and DUPLICATE responses are all terminal; a DUPLICATE means an
    earlier attempt of this same call was executed. Only timeouts and transport
    errors are retried.
    """

    def __init__(self,
                 transport: CallTransport,
                 method: str,
                 params: Optional[Mapping[str, Any]] = None,
                 max_attempts: int = 4,
                 timeout_seconds: float = 2.0,
                 backoff: Optional[BackoffTimer] = None,
                 cancel_event: Optional[threading.Event] = None,
                 correlation_id: Optional[str] = None):
        """Initialize the session

        Args:
            transport: Transport to send through
            method: Method name
            params: Method params
            max_attempts: Initial attempt plus retries
            timeout_seconds: Per-attempt response deadline
            backoff: Delay schedule between attempts
            cancel_event: Checked before each attempt and during backoff waits
            correlation_id: Explicit id, generated if omitted
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

        self.transport = transport
        self.method = method
        self.params = dict(params or {})
        self.backoff = backoff or BackoffTimer()
        self.cancel_event = cancel_event
        self.state = CallState(
            correlation_id=correlation_id or new_correlation_id(),
            max_attempts=max_attempts,
            deadline_per_attempt=timeout_seconds,
        )
        self._used = False

    @property
    def correlation_id(self) -> str:
        return self.state.correlation_id

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _wait_backoff(self, delay: float) -> None:
        if self.cancel_event is None:
            time.sleep(delay)
        elif self.cancel_event.wait(delay):
            raise CallCancelled(f"call {self.correlation_id} cancelled during backoff")

    def run(self) -> Response:
        """Execute the call

        Returns:
            Response: First decoded response for this call, whatever its status

        Raises:
            EncodingError: Params cannot be encoded
            CallCancelled: The cancel event was set at an attempt boundary
            RetriesExhausted: Every attempt timed out or hit a transport error
        """
        if self._used:
            raise RuntimeError("a CallSession runs only once")
        self._used = True

        state = self.state
        with create_span("rpc.client.call",
                         {"rpc.method": self.method, "rpc.request_id": state.correlation_id},
                         kind=trace.SpanKind.CLIENT):
            request = Request.build(
                self.method,
                self.params,
                correlation_id=state.correlation_id,
                trace_context=inject_trace_context(),
            )
            # Encoded once: every retry re-sends these exact bytes
            payload = encode_request(request)

            waiter = self.transport.register(state.correlation_id)
            start_time = time.time()
            increment_counter("rpc.client.requests", 1, {"method": self.method})
            try:
                return self._attempt_loop(payload, waiter, start_time)
            finally:
                self.transport.unregister(state.correlation_id)

    def _attempt_loop(self, payload: bytes, waiter: PendingCall, start_time: float) -> Response:
        state = self.state
        for attempt in range(1, state.max_attempts + 1):
            if self._cancelled():
                raise CallCancelled(f"call {state.correlation_id} cancelled before attempt {attempt}")

            state.attempt_count = attempt
            if attempt > 1:
                # A late reply to an earlier attempt answers this call too
                response = waiter.poll()
                if response is not None:
                    return self._finish(response, start_time)
                logger.info(f"Retry {attempt - 1} for request {state.correlation_id}")
                increment_counter("rpc.client.retries", 1, {"method": self.method})

            try:
                self.transport.send(payload)
                response = waiter.wait(state.deadline_per_attempt)
            except CallTimeout as e:
                state.last_error = e
                logger.warning(f"Request {state.correlation_id} attempt {attempt}/{state.max_attempts}: {e}")
                increment_counter("rpc.client.errors", 1, {"type": "timeout", "method": self.method})
            except TransportError as e:
                state.last_error = e
                logger.warning(f"Request {state.correlation_id} attempt {attempt}/{state.max_attempts} "
                               f"transport error: {e}")
                increment_counter("rpc.client.errors", 1, {"type": "transport", "method": self.method})
            else:
                return self._finish(response, start_time)

            if attempt < state.max_attempts:
                self._wait_backoff(self.backoff.delay_for(attempt))

        increment_counter("rpc.client.errors", 1, {"type": "retries_exhausted", "method": self.method})
        logger.error(f"Request {state.correlation_id} ({self.method}) failed after {state.attempt_count} attempts: "
                     f"{state.last_error}")
        raise RetriesExhausted(state.last_error, state.attempt_count)

    def _finish(self, response: Response, start_time: float) -> Response:
        latency_ms = (time.time() - start_time) * 1000
        record_latency("rpc.client.latency", latency_ms, {"method": self.method})
        logger.debug(f"Received {response.status.value} for {self.correlation_id} after "
                     f"{self.state.attempt_count} attempt(s), {latency_ms:.2f}ms")
        return response
