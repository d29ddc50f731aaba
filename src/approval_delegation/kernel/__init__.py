"""
Kernel - Core event sourcing infrastructure

The kernel provides the event store, clock, ids, policy and observability
machinery the delegation module builds upon. It enforces determinism,
idempotency, and append-only semantics.

Fun fact: Event sourcing was inspired by accountants - they never erase ledger
entries, they add correcting entries. A proxy approval ledger is exactly that.
"""

from approval_delegation.kernel.errors import (
    CommandIdempotencyViolation,
    DelegationError,
    EventStoreError,
    StreamVersionConflict,
)
from approval_delegation.kernel.events import Event
from approval_delegation.kernel.ids import generate_id
from approval_delegation.kernel.policy import DelegationPolicy
from approval_delegation.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    # IDs
    "generate_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    # Events & policy
    "Event",
    "DelegationPolicy",
    # Errors
    "DelegationError",
    "CommandIdempotencyViolation",
    "EventStoreError",
    "StreamVersionConflict",
]
