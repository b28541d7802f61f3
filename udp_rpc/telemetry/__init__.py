"""
OpenTelemetry Integration Module

Provides distributed tracing and metrics collection capabilities:
- tracer: Trace context management (injection, extraction, propagation)
- metrics: Counters and latency histograms
"""

from .metrics import (
    setup_metrics,
    increment_counter,
    record_latency,
    add_gauge_callback
)
from .tracer import (
    setup_tracer,
    inject_trace_context,
    extract_trace_context,
    with_trace_context,
    create_span
)

__all__ = [
    "setup_metrics",
    "increment_counter",
    "record_latency",
    "add_gauge_callback",
    "setup_tracer",
    "inject_trace_context",
    "extract_trace_context",
    "with_trace_context",
    "create_span"
]
