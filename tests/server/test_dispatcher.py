"""
Tests for the request dispatcher
"""
import json
import random
from unittest.mock import MagicMock

import pytest

from udp_rpc.errors import InvalidParams
from udp_rpc.methods.builtin import default_registry
from udp_rpc.protocol.codec import decode_response, encode_request
from udp_rpc.protocol.envelope import Request, Status
from udp_rpc.server.dispatcher import FaultInjector, RequestDispatcher
from udp_rpc.server.ledger import DedupLedger


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def dispatcher(registry):
    return RequestDispatcher(registry, DedupLedger(ttl_seconds=300))


def request_bytes(method, params=None, correlation_id=None):
    return encode_request(Request.build(method, params, correlation_id=correlation_id))


class TestDispatch:

    @pytest.mark.parametrize("method,params,expected", [
        ("add", {"a": 5, "b": 7}, 12),
        ("subtract", {"a": 10, "b": 3}, 7),
        ("multiply", {"a": 4, "b": 6}, 24),
        ("divide", {"a": 15, "b": 3}, 5),
        ("reverse_string", {"s": "hello"}, "olleh"),
        ("reverse_string", {"s": ""}, ""),
        ("echo", {"test": "data"}, {"test": "data"}),
    ])
    def test_ok(self, dispatcher, method, params, expected):
        response = dispatcher.dispatch(request_bytes(method, params, correlation_id="c1"))
        assert response.status is Status.OK
        assert response.correlation_id == "c1"
        assert response.result == expected

    def test_divide_by_zero(self, dispatcher):
        response = dispatcher.dispatch(request_bytes("divide", {"a": 5, "b": 0}))
        assert response.status is Status.ERROR
        assert response.error_message == "division by zero"

    def test_invalid_param_type(self, dispatcher):
        response = dispatcher.dispatch(request_bytes("add", {"a": "x", "b": 1}))
        assert response.status is Status.ERROR
        assert "'a'" in response.error_message

    def test_unknown_method(self, dispatcher):
        response = dispatcher.dispatch(request_bytes("nonexistent", {}, correlation_id="c7"))
        assert response.status is Status.ERROR
        assert response.error_message == "unknown method: nonexistent"
        assert response.correlation_id == "c7"

    def test_malformed_datagram(self, dispatcher):
        """Test undecodable bytes still get an ERROR reply"""
        response = dispatcher.dispatch(b"\x00garbage")
        assert response.status is Status.ERROR
        assert response.correlation_id == ""
        assert response.error_message.startswith("error parsing inputs")

    def test_missing_method_rejected_before_dispatch(self, registry):
        """Test a request without method never reaches the registry or the ledger"""
        handler = MagicMock(return_value="never")
        registry.register("echo", handler)
        ledger = DedupLedger()
        dispatcher = RequestDispatcher(registry, ledger)

        response = dispatcher.dispatch(json.dumps({"request_id": "c2", "params": {}}).encode())

        assert response.status is Status.ERROR
        assert response.correlation_id == "c2"
        assert "method is required" in response.error_message
        handler.assert_not_called()
        assert len(ledger) == 0


class TestDeduplication:

    def test_duplicate_not_executed(self, registry):
        """Test N copies of one request give one execution and N-1 DUPLICATE replies"""
        handler = MagicMock(return_value="done")
        registry.register("deposit", handler)
        dispatcher = RequestDispatcher(registry, DedupLedger())
        payload = request_bytes("deposit", {"amount": 10}, correlation_id="dep-1")

        responses = [dispatcher.dispatch(payload) for _ in range(4)]

        assert [r.status for r in responses] == [Status.OK] + [Status.DUPLICATE] * 3
        assert all(r.error_message == "request already processed" for r in responses[1:])
        assert all(r.correlation_id == "dep-1" for r in responses)
        handler.assert_called_once()

    def test_failed_request_is_still_recorded(self, dispatcher):
        """Test an ERROR outcome is also a definitive execution"""
        payload = request_bytes("divide", {"a": 1, "b": 0}, correlation_id="d0")
        assert dispatcher.dispatch(payload).status is Status.ERROR
        assert dispatcher.dispatch(payload).status is Status.DUPLICATE


class TestHandlerIsolation:

    def test_unexpected_exception_becomes_error(self, registry):
        """Test a crashing handler yields ERROR and later requests still work"""
        registry.register("crash", MagicMock(side_effect=RuntimeError("boom")))
        dispatcher = RequestDispatcher(registry, DedupLedger())

        response = dispatcher.dispatch(request_bytes("crash"))
        assert response.status is Status.ERROR
        assert response.error_message == "internal error: boom"

        assert dispatcher.dispatch(request_bytes("add", {"a": 1, "b": 1})).result == 2

    def test_method_error_message_passed_through(self, registry):
        registry.register("strict", MagicMock(side_effect=InvalidParams("parameter 'x' must be a number", "x")))
        dispatcher = RequestDispatcher(registry, DedupLedger())
        response = dispatcher.dispatch(request_bytes("strict"))
        assert response.error_message == "parameter 'x' must be a number"


class TestHandleDatagram:

    def test_sends_one_encoded_reply(self, dispatcher):
        send = MagicMock()
        addr = ("127.0.0.1", 40000)
        dispatcher.handle_datagram(request_bytes("add", {"a": 2, "b": 3}, correlation_id="h1"), addr, send)

        send.assert_called_once()
        payload, sent_addr = send.call_args[0]
        assert sent_addr == addr
        response = decode_response(payload)
        assert response.correlation_id == "h1"
        assert response.result == 5

    def test_send_failure_is_dropped(self, dispatcher):
        """Test a failing send is logged, not raised"""
        send = MagicMock(side_effect=OSError("network unreachable"))
        response = dispatcher.handle_datagram(request_bytes("add", {"a": 2, "b": 3}), ("127.0.0.1", 1), send)
        assert response.status is Status.OK
        send.assert_called_once()

    def test_unencodable_result_becomes_error(self, registry):
        registry.register("weird", lambda params: object())
        dispatcher = RequestDispatcher(registry, DedupLedger())
        send = MagicMock()

        dispatcher.handle_datagram(request_bytes("weird", correlation_id="w1"), ("127.0.0.1", 1), send)

        response = decode_response(send.call_args[0][0])
        assert response.status is Status.ERROR
        assert response.correlation_id == "w1"
        assert response.error_message.startswith("error marshaling response")

    def test_malformed_datagram_gets_reply(self, dispatcher):
        send = MagicMock()
        dispatcher.handle_datagram(b"{not json", ("127.0.0.1", 1), send)
        assert decode_response(send.call_args[0][0]).status is Status.ERROR


class TestFaultInjector:

    def test_disabled_by_default(self):
        sleep = MagicMock()
        injector = FaultInjector(sleep=sleep)
        assert not injector.enabled
        assert injector.maybe_delay("c1") is False
        sleep.assert_not_called()

    def test_always_delays(self):
        sleep = MagicMock()
        injector = FaultInjector(probability=1.0, delay_seconds=3.0, sleep=sleep)
        assert injector.maybe_delay("c1") is True
        sleep.assert_called_once_with(3.0)

    def test_delay_runs_after_dedup_record(self, registry):
        """Test the delayed request is already recorded, so racing copies are duplicates"""
        ledger = DedupLedger()
        seen_during_delay = []
        injector = FaultInjector(
            probability=1.0,
            delay_seconds=1.0,
            rng=random.Random(1),
            sleep=lambda _: seen_during_delay.append("slow-1" in ledger),
        )
        dispatcher = RequestDispatcher(registry, ledger, fault_injector=injector)

        response = dispatcher.dispatch(request_bytes("add", {"a": 1, "b": 2}, correlation_id="slow-1"))

        assert response.result == 3
        assert seen_during_delay == [True]

    def test_invalid_probability(self):
        with pytest.raises(ValueError):
            FaultInjector(probability=1.5)
