"""
Tests for trace context propagation helpers
"""
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from udp_rpc.telemetry.tracer import extract_trace_context, inject_trace_context, with_trace_context


def test_no_active_span_injects_nothing():
    assert inject_trace_context() is None


def test_context_survives_the_envelope():
    """Test a carrier injected on one side restores the same trace on the other"""
    tracer = TracerProvider().get_tracer("test")

    with tracer.start_as_current_span("client-call") as span:
        carrier = inject_trace_context()
        sent_trace_id = span.get_span_context().trace_id

    assert "traceparent" in carrier
    assert not trace.get_current_span().get_span_context().is_valid

    with with_trace_context(extract_trace_context(carrier)):
        assert trace.get_current_span().get_span_context().trace_id == sent_trace_id

    assert not trace.get_current_span().get_span_context().is_valid


def test_empty_carrier():
    assert extract_trace_context(None) is None
    assert extract_trace_context({}) is None
    with with_trace_context(None):
        pass
