"""
Command line entry point

    udp-rpc server [--host H] [--port P] [--dedup-ttl S] ...
    udp-rpc client [--host H] [--port P] [--timeout-ms T] [--retries N] call METHOD [--params JSON]
    udp-rpc client ... batch [FILE]
    udp-rpc client ... smoke

Exit codes: 0 when every call came back OK or DUPLICATE, 1 when any call came back
ERROR, 2 on exhausted retries or bad input.
"""

import argparse
import json
import logging
import signal
import sys
from typing import Any, Dict, Iterable, List, Optional, TextIO, Tuple

from udp_rpc.client.client import RpcClient
from udp_rpc.config import ClientConfig, ServerConfig, TelemetryConfig
from udp_rpc.errors import CallCancelled, EncodingError, RetriesExhausted, TransportError
from udp_rpc.protocol.envelope import Response, Status
from udp_rpc.server.server import RpcServer
from udp_rpc.telemetry.metrics import setup_metrics
from udp_rpc.telemetry.tracer import setup_tracer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CALL_ERROR = 1
EXIT_FAILURE = 2

Call = Tuple[str, Dict[str, Any]]

# Every built-in method, one domain error and one unknown method, with the status each must return
SMOKE_CALLS: List[Tuple[str, Dict[str, Any], Status]] = [
    ("add", {"a": 5, "b": 7}, Status.OK),
    ("subtract", {"a": 10, "b": 3}, Status.OK),
    ("multiply", {"a": 4, "b": 6}, Status.OK),
    ("divide", {"a": 15, "b": 3}, Status.OK),
    ("get_time", {}, Status.OK),
    ("reverse_string", {"s": "hello"}, Status.OK),
    ("echo", {"test": "data", "number": 42}, Status.OK),
    ("divide", {"a": 5, "b": 0}, Status.ERROR),
    ("nonexistent", {}, Status.ERROR),
]


def parse_params(text: Optional[str]) -> Dict[str, Any]:
    """Parse a JSON object of params

    Raises:
        ValueError: Text is not a JSON object
    """
    if not text:
        return {}
    params = json.loads(text)
    if not isinstance(params, dict):
        raise ValueError("params must be a JSON object")
    return params


def parse_call_line(line: str) -> Optional[Call]:
    """Parse one batch line: METHOD [JSON]; blank lines and # comments yield None

    Raises:
        ValueError: The params part is not a JSON object
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    parts = line.split(None, 1)
    return parts[0], parse_params(parts[1] if len(parts) > 1 else None)


def read_batch(stream: TextIO) -> List[Call]:
    calls = []
    for number, line in enumerate(stream, start=1):
        try:
            call = parse_call_line(line)
        except ValueError as e:
            raise ValueError(f"line {number}: {e}") from e
        if call is not None:
            calls.append(call)
    return calls


def format_response(response: Response) -> str:
    if response.status is Status.OK:
        return f"Status={response.status.value}, Result={json.dumps(response.result)}"
    return f"Status={response.status.value}, Error={response.error_message}"


def run_calls(client: RpcClient, calls: Iterable[Call], out: Optional[TextIO] = None) -> List[Optional[Response]]:
    """Run calls in order, printing each outcome

    Returns:
        One entry per call: its response, or None if the call exhausted retries
    """
    out = out or sys.stdout
    responses: List[Optional[Response]] = []
    for method, params in calls:
        print(f"\nCalling {method} with params {json.dumps(params)}", file=out)
        try:
            response = client.call(method, params)
        except (RetriesExhausted, CallCancelled, EncodingError) as e:
            print(f"Error: {e}", file=out)
            responses.append(None)
            continue
        print(f"Response: {format_response(response)}", file=out)
        responses.append(response)
    return responses


def check_smoke(responses: List[Optional[Response]], out: Optional[TextIO] = None) -> bool:
    """Compare smoke responses against the status each call must return"""
    out = out or sys.stdout
    passed = True
    for (method, params, expected), response in zip(SMOKE_CALLS, responses):
        if response is not None and response.status is not expected:
            print(f"Unexpected {response.status.value} from {method} {json.dumps(params)}, "
                  f"expected {expected.value}", file=out)
            passed = False
    return passed


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def setup_telemetry(config: TelemetryConfig) -> None:
    if config.enable_tracing:
        setup_tracer(config.service_name, config.otlp_endpoint)
    if config.enable_metrics:
        setup_metrics(config.service_name, config.otlp_endpoint, config.export_interval_ms)


def build_parser() -> argparse.ArgumentParser:
    server_env = ServerConfig.from_env()
    client_env = ClientConfig.from_env()

    parser = argparse.ArgumentParser(prog="udp-rpc", description="RPC over UDP with retries and deduplication")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")
    parser.add_argument("--otlp-endpoint", help="Export traces and metrics to this OTLP endpoint")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server = subparsers.add_parser("server", help="Start the RPC server")
    server.add_argument("--host", default=server_env.host, help="Bind address")
    server.add_argument("--port", type=int, default=server_env.port, help="Bind port")
    server.add_argument("--dedup-ttl", type=float, default=server_env.dedup_ttl_seconds,
                        help="Seconds a request id is remembered")
    server.add_argument("--sweep-interval", type=float, default=server_env.sweep_interval_seconds,
                        help="Seconds between ledger sweeps")
    server.add_argument("--max-workers", type=int, default=server_env.max_workers,
                        help="Concurrent dispatch workers")
    server.add_argument("--fault-delay-probability", type=float, default=server_env.fault_delay_probability,
                        help="Chance of an artificial delay before dispatch (0 disables)")
    server.add_argument("--fault-delay-seconds", type=float, default=server_env.fault_delay_seconds,
                        help="Length of the artificial delay")

    client = subparsers.add_parser("client", help="Call a running RPC server")
    client.add_argument("--host", default=client_env.host, help="Server address")
    client.add_argument("--port", type=int, default=client_env.port, help="Server port")
    client.add_argument("--timeout-ms", type=int, default=client_env.timeout_ms, help="Per-attempt timeout")
    client.add_argument("--retries", type=int, default=client_env.max_retries,
                        help="Retries after the initial attempt")
    client.add_argument("--backoff-ms", type=int, default=client_env.backoff_base_ms,
                        help="Backoff base; the wait after attempt n is n times this")
    actions = client.add_subparsers(dest="action", required=True)

    call = actions.add_parser("call", help="Call one method")
    call.add_argument("method", help="Method name")
    call.add_argument("--params", help="Params as a JSON object")

    batch = actions.add_parser("batch", help="Call methods listed one per line as METHOD [JSON]")
    batch.add_argument("file", nargs="?", default="-", help="Batch file, '-' for stdin")

    actions.add_parser("smoke", help="Exercise every built-in method plus two failing calls")

    return parser


def run_server(args: argparse.Namespace) -> int:
    config = ServerConfig(
        host=args.host,
        port=args.port,
        dedup_ttl_seconds=args.dedup_ttl,
        sweep_interval_seconds=args.sweep_interval,
        max_workers=args.max_workers,
        fault_delay_probability=args.fault_delay_probability,
        fault_delay_seconds=args.fault_delay_seconds,
    )
    server = RpcServer(config)

    def handle_signal(sig, frame):
        logger.info("Received exit signal, stopping server...")
        server.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        server.start(threaded=False)
    except OSError as e:
        logger.error(f"Cannot listen on {config.host}:{config.port}: {e}")
        return EXIT_FAILURE
    finally:
        server.stop()
    return EXIT_OK


def run_client(args: argparse.Namespace, out: Optional[TextIO] = None) -> int:
    out = out or sys.stdout
    config = ClientConfig(
        host=args.host,
        port=args.port,
        timeout_ms=args.timeout_ms,
        max_retries=args.retries,
        backoff_base_ms=args.backoff_ms,
    )

    try:
        if args.action == "call":
            calls = [(args.method, parse_params(args.params))]
        elif args.action == "batch":
            if args.file == "-":
                calls = read_batch(sys.stdin)
            else:
                with open(args.file, encoding="utf-8") as f:
                    calls = read_batch(f)
        else:
            calls = [(method, params) for method, params, _ in SMOKE_CALLS]
    except (OSError, ValueError) as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        client = RpcClient(config)
    except TransportError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    with client:
        responses = run_calls(client, calls, out)

    if any(response is None for response in responses):
        return EXIT_FAILURE
    if args.action == "smoke":
        return EXIT_OK if check_smoke(responses, out) else EXIT_CALL_ERROR
    if any(response.status is Status.ERROR for response in responses):
        return EXIT_CALL_ERROR
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    telemetry = TelemetryConfig.from_env()
    if args.otlp_endpoint:
        telemetry.otlp_endpoint = args.otlp_endpoint
        telemetry.enable_tracing = telemetry.enable_metrics = True
    telemetry.service_name = f"{telemetry.service_name}-{args.command}"
    setup_telemetry(telemetry)

    try:
        if args.command == "server":
            return run_server(args)
        return run_client(args)
    except ValueError as e:
        # Out-of-range configuration
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
