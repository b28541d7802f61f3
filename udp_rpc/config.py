"""
Configuration settings for the RPC server and client
"""
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServerConfig:
    """Configuration for the UDP RPC server"""
    host: str = "0.0.0.0"
    port: int = 5000
    buffer_size: int = 1024
    dedup_ttl_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0
    max_workers: int = 32
    # Fault injection: random delay before dispatch, off by default
    fault_delay_probability: float = 0.0
    fault_delay_seconds: float = 3.0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ValueError on out-of-range settings"""
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        if self.dedup_ttl_seconds <= 0:
            raise ValueError("dedup_ttl_seconds must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")
        if not 0.0 <= self.fault_delay_probability <= 1.0:
            raise ValueError("fault_delay_probability must be within [0, 1]")
        if self.fault_delay_seconds < 0:
            raise ValueError("fault_delay_seconds must not be negative")

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Create config from environment variables"""
        return cls(
            host=os.getenv("RPC_SERVER_HOST", "0.0.0.0"),
            port=int(os.getenv("RPC_SERVER_PORT", "5000")),
            buffer_size=int(os.getenv("RPC_BUFFER_SIZE", "1024")),
            dedup_ttl_seconds=float(os.getenv("RPC_DEDUP_TTL", "300")),
            sweep_interval_seconds=float(os.getenv("RPC_SWEEP_INTERVAL", "60")),
            max_workers=int(os.getenv("RPC_MAX_WORKERS", "32")),
            fault_delay_probability=float(os.getenv("RPC_FAULT_DELAY_PROBABILITY", "0")),
            fault_delay_seconds=float(os.getenv("RPC_FAULT_DELAY_SECONDS", "3")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ClientConfig:
    """Configuration for the UDP RPC client

    max_retries counts re-sends after the initial attempt.
    """
    host: str = "127.0.0.1"
    port: int = 5000
    timeout_ms: int = 2000
    max_retries: int = 3
    backoff_base_ms: int = 500
    backoff_max_ms: Optional[int] = None
    buffer_size: int = 1024

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ValueError on out-of-range settings"""
        if not 0 < self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.backoff_base_ms < 0:
            raise ValueError("backoff_base_ms must not be negative")
        if self.backoff_max_ms is not None and self.backoff_max_ms < self.backoff_base_ms:
            raise ValueError("backoff_max_ms must be at least backoff_base_ms")
        if self.buffer_size <= 0:
            raise ValueError("buffer_size must be positive")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Create config from environment variables"""
        backoff_max = os.getenv("RPC_BACKOFF_MAX_MS")
        return cls(
            host=os.getenv("RPC_HOST", "127.0.0.1"),
            port=int(os.getenv("RPC_PORT", "5000")),
            timeout_ms=int(os.getenv("RPC_TIMEOUT_MS", "2000")),
            max_retries=int(os.getenv("RPC_MAX_RETRIES", "3")),
            backoff_base_ms=int(os.getenv("RPC_BACKOFF_MS", "500")),
            backoff_max_ms=int(backoff_max) if backoff_max else None,
            buffer_size=int(os.getenv("RPC_BUFFER_SIZE", "1024")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TelemetryConfig:
    """Tracing and metrics export settings"""
    enable_tracing: bool = False
    enable_metrics: bool = False
    otlp_endpoint: str = "localhost:4317"
    service_name: str = "udp-rpc"
    export_interval_ms: int = 5000

    @classmethod
    def from_env(cls) -> "TelemetryConfig":
        """Create config from environment variables"""
        return cls(
            enable_tracing=_env_bool("RPC_ENABLE_TRACING", False),
            enable_metrics=_env_bool("RPC_ENABLE_METRICS", False),
            otlp_endpoint=os.getenv("RPC_OTLP_ENDPOINT", "localhost:4317"),
            service_name=os.getenv("RPC_SERVICE_NAME", "udp-rpc"),
            export_interval_ms=int(os.getenv("RPC_METRICS_INTERVAL_MS", "5000")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
