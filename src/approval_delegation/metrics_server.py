"""
Prometheus metrics server for the approval delegation engine.

Exposes all metrics at /metrics. With --db and --sweep-interval it also
acts as the scheduler for the expiry sweep, so lapsed grants are retired
and the grants_by_status gauge stays current.

Usage:
    python -m approval_delegation.metrics_server --port 9090
    python -m approval_delegation.metrics_server --db delegations.db --sweep-interval 300
"""

import argparse
import time

from approval_delegation.engine import DelegationEngine
from approval_delegation.kernel.logging import configure_logging, get_logger
from approval_delegation.kernel.metrics import start_metrics_server

logger = get_logger(__name__)


def run_sweep_loop(engine: DelegationEngine, interval_seconds: int) -> None:
    """Sweep every `interval_seconds` until interrupted"""
    while True:
        result = engine.sweep_expirations()
        logger.info(
            "Scheduled sweep finished",
            expired_count=result.expired_count,
            failed_count=result.failed_count,
        )
        time.sleep(interval_seconds)


def main() -> None:
    """
    Start the Prometheus metrics server.

    The server exposes all metrics at http://0.0.0.0:<port>/metrics
    in Prometheus text format.
    """
    parser = argparse.ArgumentParser(description="Approval Delegation Metrics Server")
    parser.add_argument(
        "--port",
        type=int,
        default=9090,
        help="Port to listen on (default: 9090)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Delegation database to sweep (optional)",
    )
    parser.add_argument(
        "--sweep-interval",
        type=int,
        default=300,
        help="Seconds between expiry sweeps when --db is given (default: 300)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format (default: False)",
    )

    args = parser.parse_args()

    configure_logging(json_output=args.json_logs, log_level=args.log_level)

    logger.info(
        "Starting Prometheus metrics server",
        port=args.port,
        endpoint=f"http://0.0.0.0:{args.port}/metrics",
    )
    start_metrics_server(port=args.port)

    try:
        if args.db:
            run_sweep_loop(DelegationEngine(args.db), args.sweep_interval)
        else:
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down metrics server")


if __name__ == "__main__":
    main()
