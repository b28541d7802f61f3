"""
Call session tests

Exercise the retry state machine against an in-memory transport.
"""

import threading
import time

import pytest

from udp_rpc.client.backoff import BackoffTimer
from udp_rpc.client.session import CallSession, CallTransport, PendingCall
from udp_rpc.errors import CallCancelled, CallTimeout, EncodingError, RetriesExhausted, TransportError
from udp_rpc.protocol.codec import decode_request
from udp_rpc.protocol.envelope import Response, Status


class FakeTransport(CallTransport):
    """In-memory transport that records sends and answers from a script

    replies maps a 1-based send number to a callable building the response for the
    decoded request, or to an exception to raise from send.
    """

    def __init__(self, replies=None):
        self.replies = replies or {}
        self.sent = []
        self.waiters = {}

    def send(self, payload):
        self.sent.append(payload)
        reply = self.replies.get(len(self.sent))
        if isinstance(reply, Exception):
            raise reply
        if reply is not None:
            request = decode_request(payload)
            self.waiters[request.correlation_id].deliver(reply(request))

    def register(self, correlation_id):
        waiter = PendingCall(correlation_id)
        self.waiters[correlation_id] = waiter
        return waiter

    def unregister(self, correlation_id):
        self.waiters.pop(correlation_id, None)


def ok(result):
    return lambda request: Response.ok(request.correlation_id, result)


def session(transport, **kwargs):
    kwargs.setdefault("max_attempts", 4)
    kwargs.setdefault("timeout_seconds", 0.02)
    kwargs.setdefault("backoff", BackoffTimer(base_ms=1))
    return CallSession(transport, "add", {"a": 5, "b": 7}, **kwargs)


class TestSuccess:

    def test_first_attempt(self):
        transport = FakeTransport({1: ok(12)})
        response = session(transport).run()
        assert response.status is Status.OK
        assert response.result == 12
        assert len(transport.sent) == 1

    def test_unregisters_after_call(self):
        transport = FakeTransport({1: ok(12)})
        call = session(transport)
        call.run()
        assert call.correlation_id not in transport.waiters

    def test_single_use(self):
        transport = FakeTransport({1: ok(12)})
        call = session(transport)
        call.run()
        with pytest.raises(RuntimeError):
            call.run()


class TestRetries:

    def test_retry_resends_identical_bytes(self):
        """Test every attempt carries the same correlation id and payload"""
        transport = FakeTransport({3: ok(12)})
        call = session(transport)

        response = call.run()

        assert response.result == 12
        assert len(transport.sent) == 3
        assert len(set(transport.sent)) == 1
        assert decode_request(transport.sent[0]).correlation_id == call.correlation_id
        assert call.state.attempt_count == 3

    def test_send_failure_is_retried(self):
        transport = FakeTransport({1: TransportError("network unreachable"), 2: ok(12)})
        assert session(transport).run().result == 12
        assert len(transport.sent) == 2

    def test_exhausted(self):
        """Test max_attempts silent attempts raise RetriesExhausted with the last timeout"""
        transport = FakeTransport()
        with pytest.raises(RetriesExhausted) as exc_info:
            session(transport, max_attempts=3).run()
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, CallTimeout)
        assert len(transport.sent) == 3

    def test_exhausted_by_transport_errors(self):
        error = TransportError("network unreachable")
        transport = FakeTransport({1: error, 2: error})
        with pytest.raises(RetriesExhausted) as exc_info:
            session(transport, max_attempts=2).run()
        assert exc_info.value.last_error is error

    def test_zero_retries_single_attempt(self):
        transport = FakeTransport()
        with pytest.raises(RetriesExhausted):
            session(transport, max_attempts=1).run()
        assert len(transport.sent) == 1

    def test_backoff_is_linear(self):
        """Test the elapsed time covers the per-attempt timeouts plus the growing waits"""
        transport = FakeTransport()
        call = session(transport, max_attempts=3, timeout_seconds=0.05, backoff=BackoffTimer(base_ms=50))
        start = time.monotonic()
        with pytest.raises(RetriesExhausted):
            call.run()
        elapsed = time.monotonic() - start
        # 3 * 0.05 timeouts + 0.05 + 0.10 backoff
        assert elapsed >= 0.3
        assert elapsed < 1.0


class TestTerminalResponses:

    @pytest.mark.parametrize("reply", [
        lambda request: Response.error(request.correlation_id, "division by zero"),
        lambda request: Response.duplicate(request.correlation_id),
    ])
    def test_error_and_duplicate_are_not_retried(self, reply):
        transport = FakeTransport({1: reply})
        response = session(transport).run()
        assert response.status in (Status.ERROR, Status.DUPLICATE)
        assert len(transport.sent) == 1

    def test_duplicate_after_lost_reply(self):
        """Test a DUPLICATE answering a retry ends the call; the first attempt did execute"""
        transport = FakeTransport({2: lambda request: Response.duplicate(request.correlation_id)})
        response = session(transport).run()
        assert response.status is Status.DUPLICATE
        assert response.error_message == "request already processed"

    def test_late_reply_during_backoff_is_used(self):
        """Test a reply arriving after the deadline but before the re-send is taken"""
        transport = FakeTransport()
        call = session(transport, max_attempts=3, timeout_seconds=0.05, backoff=BackoffTimer(base_ms=300))

        def late_reply():
            transport.waiters[call.correlation_id].deliver(Response.ok(call.correlation_id, 12))

        timer = threading.Timer(0.1, late_reply)
        timer.start()
        try:
            response = call.run()
        finally:
            timer.cancel()

        assert response.result == 12
        assert len(transport.sent) == 1


class TestCancellation:

    def test_cancelled_before_first_attempt(self):
        cancel = threading.Event()
        cancel.set()
        transport = FakeTransport({1: ok(12)})
        with pytest.raises(CallCancelled):
            session(transport, cancel_event=cancel).run()
        assert transport.sent == []

    def test_cancelled_during_backoff(self):
        cancel = threading.Event()
        transport = FakeTransport()
        call = session(transport, timeout_seconds=0.02, backoff=BackoffTimer(base_ms=2000), cancel_event=cancel)

        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        start = time.monotonic()
        try:
            with pytest.raises(CallCancelled):
                call.run()
        finally:
            timer.cancel()

        assert time.monotonic() - start < 1.0
        assert len(transport.sent) == 1


class TestSessionArguments:

    def test_unencodable_params(self):
        transport = FakeTransport()
        call = CallSession(transport, "echo", {"bad": object()})
        with pytest.raises(EncodingError):
            call.run()
        assert transport.sent == []

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"timeout_seconds": 0}])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            CallSession(FakeTransport(), "add", **kwargs)
