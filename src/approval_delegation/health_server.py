"""
Health check HTTP server for Kubernetes liveness and readiness checks.

Exposes the state of the delegation event store and, when an engine is
attached, the grant counts per derived status.
"""

import argparse
import sqlite3
from pathlib import Path
from typing import Any

from flask import Flask, jsonify

from approval_delegation import __version__
from approval_delegation.engine import DelegationEngine
from approval_delegation.kernel.event_store import SQLiteEventStore
from approval_delegation.kernel.logging import configure_logging, get_logger

logger = get_logger(__name__)

SERVICE_NAME = "approval-delegation"

app = Flask(__name__)

# Global state - will be set by initialize_health_server()
_db_path: Path | None = None
_engine: DelegationEngine | None = None


def initialize_health_server(db_path: str | Path, engine: DelegationEngine | None = None) -> None:
    """
    Initialize the health server with database path and engine.

    Args:
        db_path: Path to SQLite database
        engine: Optional engine for grant counts in the detailed check
    """
    global _db_path, _engine
    _db_path = Path(db_path)
    _engine = engine
    logger.info("Health server initialized", db_path=str(_db_path))


def _not_ready(reason: str, **details: Any) -> tuple[Any, int]:
    return jsonify({"status": "not_ready", "reason": reason, **details}), 503


@app.route("/health/live", methods=["GET"])
def liveness() -> tuple[Any, int]:
    """Liveness check - the process is up"""
    return jsonify({"status": "alive", "service": SERVICE_NAME}), 200


@app.route("/health/ready", methods=["GET"])
def readiness() -> tuple[Any, int]:
    """
    Readiness check - the event store can be queried.

    Returns:
        200 with the event count if ready, 503 otherwise
    """
    if _db_path is None:
        logger.error("Readiness check failed: DB path not initialized")
        return _not_ready("database_path_not_initialized")

    if not _db_path.exists():
        logger.error("Readiness check failed: DB file does not exist", db_path=str(_db_path))
        return _not_ready("database_file_not_found", db_path=str(_db_path))

    try:
        event_count = SQLiteEventStore(_db_path).count_events()
    except sqlite3.OperationalError as e:
        logger.error("Readiness check failed: DB operational error", error=str(e))
        return _not_ready("database_operational_error", error=str(e))

    logger.debug("Readiness check passed", event_count=event_count)
    return jsonify({"status": "ready", "database": "accessible", "event_count": event_count}), 200


@app.route("/health", methods=["GET"])
def detailed_health() -> tuple[Any, int]:
    """
    Detailed health check - store statistics plus grant counts.

    Returns:
        200 when healthy, 503 when degraded
    """
    health_data: dict[str, Any] = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
    }

    if _db_path and _db_path.exists():
        try:
            store = SQLiteEventStore(_db_path)
            health_data["database"] = {
                "status": "healthy",
                "path": str(_db_path),
                "event_count": store.count_events(),
                "stream_count": store.count_streams(),
                "size_mb": round(_db_path.stat().st_size / (1024 * 1024), 2),
            }
        except sqlite3.Error as e:
            logger.error("Database health check failed", error=str(e))
            health_data["database"] = {"status": "unhealthy", "error": str(e)}
            health_data["status"] = "degraded"
    else:
        health_data["database"] = {"status": "not_initialized"}
        health_data["status"] = "degraded"

    if _engine is not None:
        health_data["delegations"] = _engine.grant_counts()

    status_code = 200 if health_data["status"] == "healthy" else 503
    return jsonify(health_data), status_code


def run_health_server(port: int = 8080, debug: bool = False) -> None:
    """
    Run the health check server.

    Args:
        port: Port to listen on (default: 8080)
        debug: Enable Flask debug mode (default: False)
    """
    logger.info("Starting health check server", port=port)
    app.run(host="0.0.0.0", port=port, debug=debug)


def main() -> None:
    """
    Start the health server against a delegation database.

    Usage:
        python -m approval_delegation.health_server --db delegations.db --port 8080
    """
    parser = argparse.ArgumentParser(description="Approval Delegation Health Server")
    parser.add_argument("--db", type=str, required=True, help="Path to SQLite database")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on (default: 8080)")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--json-logs", action="store_true", help="Output logs in JSON format")

    args = parser.parse_args()
    configure_logging(json_output=args.json_logs, log_level=args.log_level)

    initialize_health_server(args.db, DelegationEngine(args.db))
    run_health_server(port=args.port)


if __name__ == "__main__":
    main()
