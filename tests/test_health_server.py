"""
Tests for health server

Tests Flask-based health check endpoints for Kubernetes liveness and readiness checks
against a real delegation database.

Fun fact: Kubernetes restarts a pod that fails liveness but only stops routing
traffic to one that fails readiness, which is why the two endpoints check different things.
"""

import sqlite3

import pytest

from approval_delegation import __version__, health_server
from approval_delegation.delegation.models import Party
from approval_delegation.engine import DelegationEngine
from approval_delegation.health_server import app, initialize_health_server
from approval_delegation.kernel.event_store import SQLiteEventStore


@pytest.fixture
def client():
    """Flask test client"""
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client
    # Reset global state after test
    health_server._db_path = None
    health_server._engine = None


@pytest.fixture
def populated_engine(engine: DelegationEngine, sarah: Party, james: Party, maria: Party):
    """Engine with one active and one scheduled grant"""
    engine.create_grant(sarah, james, "full", "2024-01-08", "2024-01-12")
    engine.create_grant(maria, james, "full", "2024-02-01", "2024-02-03")
    return engine


# =============================================================================
# Initialization Tests
# =============================================================================


def test_initialize_health_server_accepts_string_path(client, temp_db):
    initialize_health_server(str(temp_db))

    assert health_server._db_path == temp_db
    assert health_server._engine is None


def test_initialize_health_server_stores_engine(client, temp_db, engine):
    initialize_health_server(temp_db, engine)

    assert health_server._engine is engine


# =============================================================================
# Liveness Endpoint Tests
# =============================================================================


def test_liveness_works_without_initialization(client):
    response = client.get("/health/live")

    assert response.status_code == 200
    assert response.get_json() == {"status": "alive", "service": "approval-delegation"}


# =============================================================================
# Readiness Endpoint Tests
# =============================================================================


def test_readiness_returns_event_count(client, temp_db, populated_engine):
    initialize_health_server(temp_db)

    response = client.get("/health/ready")

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ready"
    assert data["database"] == "accessible"
    assert data["event_count"] == 2


def test_readiness_returns_503_when_not_initialized(client):
    response = client.get("/health/ready")

    assert response.status_code == 503
    data = response.get_json()
    assert data["status"] == "not_ready"
    assert data["reason"] == "database_path_not_initialized"


def test_readiness_returns_503_when_db_file_missing(client, tmp_path):
    missing = tmp_path / "nope.db"
    initialize_health_server(missing)

    response = client.get("/health/ready")

    assert response.status_code == 503
    data = response.get_json()
    assert data["reason"] == "database_file_not_found"
    assert data["db_path"] == str(missing)


def test_readiness_returns_503_on_database_error(client, temp_db, engine, monkeypatch):
    initialize_health_server(temp_db)

    def locked(self):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(SQLiteEventStore, "count_events", locked)

    response = client.get("/health/ready")

    assert response.status_code == 503
    data = response.get_json()
    assert data["reason"] == "database_operational_error"
    assert data["error"] == "database is locked"


# =============================================================================
# Detailed Health Endpoint Tests
# =============================================================================


def test_detailed_health_includes_database_metrics(client, temp_db, populated_engine):
    initialize_health_server(temp_db)

    response = client.get("/health")

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "healthy"
    assert data["service"] == "approval-delegation"
    assert data["version"] == __version__
    assert data["database"]["status"] == "healthy"
    assert data["database"]["event_count"] == 2
    assert data["database"]["stream_count"] == 2
    assert "size_mb" in data["database"]
    assert "delegations" not in data


def test_detailed_health_includes_grant_counts(client, temp_db, populated_engine):
    initialize_health_server(temp_db, populated_engine)

    data = client.get("/health").get_json()

    assert data["delegations"]["active"] == 1
    assert data["delegations"]["scheduled"] == 1
    assert data["delegations"]["expired"] == 0


def test_detailed_health_degraded_when_db_not_initialized(client):
    response = client.get("/health")

    assert response.status_code == 503
    data = response.get_json()
    assert data["status"] == "degraded"
    assert data["database"]["status"] == "not_initialized"


def test_detailed_health_degraded_on_database_error(client, temp_db, engine, monkeypatch):
    initialize_health_server(temp_db)

    def broken(self):
        raise sqlite3.DatabaseError("file is not a database")

    monkeypatch.setattr(SQLiteEventStore, "count_streams", broken)

    response = client.get("/health")

    assert response.status_code == 503
    data = response.get_json()
    assert data["status"] == "degraded"
    assert data["database"]["status"] == "unhealthy"
    assert "error" in data["database"]
