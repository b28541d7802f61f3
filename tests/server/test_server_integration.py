"""
UDP server integration tests

Drive a real server over loopback with raw datagrams.
"""

import socket
import threading
import time
from concurrent import futures

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from udp_rpc.config import ServerConfig
from udp_rpc.protocol.codec import decode_response, encode_request
from udp_rpc.protocol.envelope import Request, Status
from udp_rpc.server.server import LEDGER_SIZE_GAUGE, RpcServer, ledger_size_observations
from udp_rpc.telemetry.metrics import add_gauge_callback


class CountingHandler:
    """Non-idempotent handler that records every execution"""

    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, params):
        with self._lock:
            self.calls += 1
            return self.calls


@pytest.fixture
def counter():
    return CountingHandler()


@pytest.fixture
def server(counter):
    """Create and start test server on an ephemeral port"""
    server = RpcServer(ServerConfig(host="127.0.0.1", port=0))
    server.register_method("count", counter)
    server.start(threaded=True)

    yield server

    server.stop()


def roundtrip(address, payload, timeout=2.0):
    """Send one datagram from a fresh socket and return the decoded reply"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(timeout)
    try:
        sock.sendto(payload, address)
        data, _ = sock.recvfrom(4096)
        return decode_response(data)
    finally:
        sock.close()


def test_arithmetic_over_udp(server):
    payload = encode_request(Request.build("add", {"a": 5, "b": 7}, correlation_id="sum-1"))
    response = roundtrip(server.address, payload)
    assert response.status is Status.OK
    assert response.correlation_id == "sum-1"
    assert response.result == 12


def test_unknown_method_over_udp(server):
    payload = encode_request(Request.build("nonexistent", {}))
    response = roundtrip(server.address, payload)
    assert response.status is Status.ERROR
    assert response.error_message == "unknown method: nonexistent"


def test_malformed_datagram_gets_error_reply(server):
    response = roundtrip(server.address, b"not json at all")
    assert response.status is Status.ERROR
    assert response.correlation_id == ""


def test_identical_datagrams_execute_once(server, counter):
    """Test concurrent copies of one request produce one OK and the rest DUPLICATE"""
    copies = 5
    payload = encode_request(Request.build("count", {"amount": 10}, correlation_id="deposit-1"))

    with futures.ThreadPoolExecutor(max_workers=copies) as pool:
        responses = list(pool.map(lambda _: roundtrip(server.address, payload), range(copies)))

    statuses = [r.status for r in responses]
    assert statuses.count(Status.OK) == 1
    assert statuses.count(Status.DUPLICATE) == copies - 1
    assert all(r.correlation_id == "deposit-1" for r in responses)
    assert counter.calls == 1
    assert server.ledger.get_stats()["hits"] == copies - 1


def test_server_survives_crashing_handler(server):
    def crash(params):
        raise RuntimeError("boom")

    server.register_method("crash", crash)
    response = roundtrip(server.address, encode_request(Request.build("crash")))
    assert response.status is Status.ERROR
    assert response.error_message == "internal error: boom"

    response = roundtrip(server.address, encode_request(Request.build("multiply", {"a": 4, "b": 6})))
    assert response.result == 24


def test_concurrent_requests_are_not_serialized():
    """Test a slow request does not block a fast one"""
    server = RpcServer(ServerConfig(host="127.0.0.1", port=0, max_workers=4))
    server.register_method("slow", lambda params: time.sleep(0.5) or "slow")
    with server:
        slow = futures.ThreadPoolExecutor(max_workers=1)
        try:
            pending = slow.submit(roundtrip, server.address, encode_request(Request.build("slow")))
            time.sleep(0.05)

            start = time.monotonic()
            fast = roundtrip(server.address, encode_request(Request.build("add", {"a": 1, "b": 2})))
            assert fast.result == 3
            assert time.monotonic() - start < 0.4

            assert pending.result(timeout=2).result == "slow"
        finally:
            slow.shutdown(wait=True)


def test_stop_releases_port():
    server = RpcServer(ServerConfig(host="127.0.0.1", port=0))
    server.start(threaded=True)
    address = server.address
    server.stop()

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind(address)
    finally:
        sock.close()


def collect_gauge(reader, name):
    """Map each server attribute to its gauge value from one collection"""
    points = {}
    for resource_metrics in reader.get_metrics_data().resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                if metric.name == name:
                    for point in metric.data.data_points:
                        points[point.attributes["server"]] = point.value
    return points


def test_ledger_gauge_reports_every_running_server():
    """Test each running server reports its own ledger, and stopped servers drop out"""
    reader = InMemoryMetricReader()
    meter = MeterProvider(metric_readers=[reader]).get_meter("test")
    add_gauge_callback(LEDGER_SIZE_GAUGE, ledger_size_observations, meter=meter)

    stopped = RpcServer(ServerConfig(host="127.0.0.1", port=0))
    stopped.start(threaded=True)
    for n in range(9):
        stopped.ledger.check_and_record(f"stopped-{n}")
    stopped.stop()

    first = RpcServer(ServerConfig(host="127.0.0.1", port=0))
    second = RpcServer(ServerConfig(host="127.0.0.1", port=0))
    with first, second:
        for n in range(5):
            first.ledger.check_and_record(f"first-{n}")
        for n in range(2):
            second.ledger.check_and_record(f"second-{n}")

        first_address = "{}:{}".format(*first.address)
        second_address = "{}:{}".format(*second.address)
        points = collect_gauge(reader, LEDGER_SIZE_GAUGE)

    assert points[first_address] == 5
    assert points[second_address] == 2
    assert sorted(points.values()) == [2, 5]


def test_serve_loop_survives_stop_after_receive():
    """Test stop() landing between a receive and the pool submit ends the loop quietly"""
    server = RpcServer(ServerConfig(host="127.0.0.1", port=0))
    executor = futures.ThreadPoolExecutor(max_workers=1)
    payload = encode_request(Request.build("add", {"a": 1, "b": 2}))

    class InterruptedSocket:
        def recvfrom(self, size):
            # What stop() does from a signal handler on the serving thread
            server.running = False
            server._executor = None
            executor.shutdown(wait=True)
            return payload, ("127.0.0.1", 9)

    server._socket = InterruptedSocket()
    server._executor = executor
    server.running = True

    server._serve_loop()

    assert server._executor is None
