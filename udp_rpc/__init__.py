"""
UDP RPC

Minimal request/response RPC over an unreliable datagram transport:

1. Message Format: self-describing JSON envelopes correlated by request_id
2. Server: per-datagram dispatch with a time-bounded dedup ledger (at-most-once within the window)
3. Client: retry-with-timeout call sessions re-sending identical request bytes

All components record OpenTelemetry metrics and propagate trace context inside the request envelope.
"""

__version__ = "0.1.0"
