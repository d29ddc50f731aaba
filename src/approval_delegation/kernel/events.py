"""
Base Event model for event sourcing

Every lifecycle change of a grant and every proxy approval is an immutable
event. The grant's own event stream doubles as its audit trail, and the
ledger streams are never touched once written.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class Event(BaseModel):
    """
    Base event class - all domain events are stored in this envelope

    Events are:
    - Immutable (never modified after creation)
    - Append-only (only a hard grant delete removes a grant's own stream)
    - Timestamped (preserve temporal ordering)
    - Versioned (stream version is the per-grant concurrency token)

    The combination of stream_id + version provides optimistic locking,
    while command_id ensures idempotency.
    """

    event_id: str = Field(
        ...,
        description="Unique event identifier (UUIDv7 for time-ordering)",
    )

    stream_id: str = Field(
        ...,
        description="Aggregate identifier: a grant id or a ledger record id",
    )

    stream_type: str = Field(
        ...,
        description="Type of aggregate: 'delegation', 'proxy_approval', 'tombstone'",
    )

    event_type: str = Field(
        ...,
        description="Specific event type: 'DelegationCreated', 'DelegationRevoked', etc.",
    )

    occurred_at: datetime = Field(
        ...,
        description="UTC timestamp when event occurred",
    )

    actor_id: str | None = Field(
        default=None,
        description="ID of actor who triggered this event (None for system events)",
    )

    command_id: str = Field(
        ...,
        description="ID of command that caused this event (idempotency key)",
    )

    payload: dict = Field(
        default_factory=dict,
        description="Event-specific data (must be JSON-serializable)",
    )

    version: int = Field(
        ...,
        description="Stream version after this event (monotonically increasing)",
        ge=1,
    )

    position: int | None = Field(
        default=None,
        description="Global append position assigned by the store",
    )

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "examples": [
                {
                    "event_id": "01908e9a-3b87-7000-8000-123456789abc",
                    "stream_id": "del-01908e9a-3b87-7000-8000-123456789abc",
                    "stream_type": "delegation",
                    "event_type": "DelegationCreated",
                    "occurred_at": "2024-01-09T16:00:00Z",
                    "actor_id": "user-sw-001",
                    "command_id": "cmd-123",
                    "payload": {"start_date": "2024-01-10", "end_date": "2024-01-12"},
                    "version": 1,
                }
            ]
        },
    }


def create_event(
    *,
    event_id: str,
    stream_id: str,
    stream_type: str,
    event_type: str,
    occurred_at: datetime,
    command_id: str,
    version: int,
    actor_id: str | None = None,
    payload: dict | None = None,
) -> Event:
    """
    Factory function for creating events with all required fields
    """
    return Event(
        event_id=event_id,
        stream_id=stream_id,
        stream_type=stream_type,
        event_type=event_type,
        occurred_at=occurred_at,
        actor_id=actor_id,
        command_id=command_id,
        payload=payload or {},
        version=version,
    )
