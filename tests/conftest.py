"""
Pytest configuration and shared fixtures

Fun fact: The name "conftest" comes from pytest's configuration testing
framework. Files named conftest.py are automatically discovered and their
fixtures are available to all tests in the same directory and subdirectories!
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from approval_delegation.delegation.handlers import DelegationCommandHandlers
from approval_delegation.delegation.models import Party
from approval_delegation.engine import DelegationEngine
from approval_delegation.kernel.event_store import SQLiteEventStore
from approval_delegation.kernel.policy import DelegationPolicy
from approval_delegation.kernel.time import TestTimeProvider


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup (WAL side files included)
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.unlink()


@pytest.fixture
def event_store(temp_db: Path) -> SQLiteEventStore:
    """Provide a fresh event store for each test"""
    return SQLiteEventStore(temp_db)


@pytest.fixture
def test_time() -> TestTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2024-01-09 16:00:00 UTC, the afternoon before Sarah's
    three-day trip starts.
    """
    return TestTimeProvider(datetime(2024, 1, 9, 16, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def delegation_policy() -> DelegationPolicy:
    """Provide default delegation policy for tests"""
    return DelegationPolicy()


@pytest.fixture
def handlers(
    test_time: TestTimeProvider, delegation_policy: DelegationPolicy
) -> DelegationCommandHandlers:
    """
    Provide delegation command handlers for testing

    Handlers are stateless - they take projections as parameters.
    """
    return DelegationCommandHandlers(test_time, delegation_policy)


@pytest.fixture
def engine(temp_db: Path, test_time: TestTimeProvider) -> DelegationEngine:
    """Engine over a fresh database with a frozen clock"""
    return DelegationEngine(temp_db, time_provider=test_time)


# =============================================================================
# Parties
# =============================================================================


@pytest.fixture
def sarah() -> Party:
    return Party(user_id="user-sw-001", name="Sarah Williams", role="Finance Director")


@pytest.fixture
def james() -> Party:
    return Party(user_id="user-jw-001", name="James Wilson", role="Finance Manager")


@pytest.fixture
def maria() -> Party:
    return Party(user_id="user-mg-001", name="Maria Garcia", role="Controller")
