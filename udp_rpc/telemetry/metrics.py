"""
OpenTelemetry Metrics Collection

Counters and latency histograms for the RPC server and client. Until setup_metrics
is called the global no-op MeterProvider absorbs every measurement, so library code
records unconditionally.
"""

import logging
import threading
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader
)
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

logger = logging.getLogger(__name__)

METER_NAME = "udp_rpc"

# Instrument caches, keyed by metric name
_counters = {}
_histograms = {}
_instrument_lock = threading.Lock()


def setup_metrics(service_name: str,
                  otlp_endpoint: str = "localhost:4317",
                  export_interval_ms: int = 5000,
                  console: bool = False):
    """Configure OpenTelemetry metrics collection

    Args:
        service_name: Service name
        otlp_endpoint: OTLP receiver address
        export_interval_ms: Metrics export interval in milliseconds
        console: Also print metrics to stdout (development)

    Returns:
        Meter: Meter for the service
    """
    readers = [
        PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
            export_interval_millis=export_interval_ms
        )
    ]
    if console:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))

    provider = MeterProvider(metric_readers=readers)
    metrics.set_meter_provider(provider)

    meter = metrics.get_meter(service_name)

    logger.info(f"OpenTelemetry metrics configured, service name: {service_name}, OTLP endpoint: {otlp_endpoint}")

    return meter


def get_counter(name: str, description: str, unit: str = "1"):
    """Get or create counter

    Args:
        name: Counter name
        description: Counter description
        unit: Counter unit (default "1", representing count)

    Returns:
        Counter: Counter object
    """
    with _instrument_lock:
        if name not in _counters:
            meter = metrics.get_meter(METER_NAME)
            _counters[name] = meter.create_counter(
                name=name,
                description=description,
                unit=unit
            )
        return _counters[name]


def get_histogram(name: str, description: str, unit: str = "ms"):
    """Get or create histogram

    Args:
        name: Histogram name
        description: Histogram description
        unit: Histogram unit (default "ms", representing milliseconds)

    Returns:
        Histogram: Histogram object
    """
    with _instrument_lock:
        if name not in _histograms:
            meter = metrics.get_meter(METER_NAME)
            _histograms[name] = meter.create_histogram(
                name=name,
                description=description,
                unit=unit
            )
        return _histograms[name]


def increment_counter(name: str, amount: int = 1, attributes: Dict[str, Any] = None):
    """Increment counter value

    Args:
        name: Counter name
        amount: Amount to increment
        attributes: Attribute labels
    """
    counter = get_counter(name, f"Counter for {name}")
    counter.add(amount, attributes or {})


def record_latency(name: str, value_ms: float, attributes: Dict[str, Any] = None):
    """Record latency histogram

    Args:
        name: Histogram name
        value_ms: Latency value in milliseconds
        attributes: Attribute labels
    """
    histogram = get_histogram(name, f"Latency histogram for {name}")
    histogram.record(value_ms, attributes or {})


def add_gauge_callback(name: str,
                       callback: Callable[[], Iterable[Tuple[float, Dict[str, Any]]]],
                       description: Optional[str] = None,
                       unit: str = "1",
                       meter: Optional[metrics.Meter] = None):
    """Register an observable gauge fed by a zero-argument callback

    Register once per process: the SDK keeps the first callback for a name.

    Args:
        name: Gauge name
        callback: Yields (value, attributes) pairs, one per observed series
        description: Gauge description
        unit: Gauge unit
        meter: Meter to create the gauge on, the package meter if omitted
    """
    if meter is None:
        meter = metrics.get_meter(METER_NAME)
    if description is None:
        description = f"Gauge for {name}"

    def observe(_options):
        return [metrics.Observation(value, attributes) for value, attributes in callback()]

    return meter.create_observable_gauge(
        name=name,
        description=description,
        unit=unit,
        callbacks=[observe]
    )
