"""
OpenTelemetry Trace Context Management

Injects the active span's W3C trace context into request envelopes and restores it on
the server so a call and its dispatch land in one trace.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import context as otel_context
from opentelemetry import propagate, trace
from opentelemetry.context import Context
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ALWAYS_ON
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

logger = logging.getLogger(__name__)

TRACER_NAME = "udp_rpc"


def setup_tracer(service_name: str, otlp_endpoint: str = "localhost:4317"):
    """Configure OpenTelemetry tracer

    Args:
        service_name: Service name
        otlp_endpoint: OTLP receiver address

    Returns:
        Tracer: Tracer for the service
    """
    provider = TracerProvider(
        sampler=ALWAYS_ON,
        resource=Resource.create({"service.name": service_name}),
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)))
    trace.set_tracer_provider(provider)

    tracer = trace.get_tracer(service_name)

    logger.info(f"OpenTelemetry trace configured, service name: {service_name}, OTLP endpoint: {otlp_endpoint}")

    return tracer


def inject_trace_context() -> Optional[Dict[str, str]]:
    """Serialize the current span context into a transportable carrier

    Returns:
        Dict[str, str]: W3C carrier (traceparent, tracestate), None if no span is active
    """
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None

    carrier: Dict[str, str] = {}
    propagate.inject(carrier)
    return carrier or None


def extract_trace_context(carrier: Optional[Dict[str, Any]]) -> Optional[Context]:
    """Rebuild an OpenTelemetry context from a received carrier

    Args:
        carrier: Dictionary produced by inject_trace_context on the peer

    Returns:
        Context: Extracted context, None if carrier is empty
    """
    if not carrier:
        return None
    return propagate.extract({str(k): str(v) for k, v in carrier.items()})


@contextmanager
def with_trace_context(ctx: Optional[Context]) -> Iterator[None]:
    """Run the body with ctx attached as the current context"""
    if ctx is None:
        yield
        return

    token = otel_context.attach(ctx)
    try:
        yield
    finally:
        otel_context.detach(token)


def create_span(name: str,
                attributes: Dict[str, Any] = None,
                kind: trace.SpanKind = trace.SpanKind.INTERNAL):
    """Start a new span as the current span

    Args:
        name: Span name
        attributes: Span attributes
        kind: Span kind

    Returns:
        Context manager yielding the Span
    """
    tracer = trace.get_tracer(TRACER_NAME)
    return tracer.start_as_current_span(
        name,
        attributes=attributes or {},
        kind=kind,
    )
