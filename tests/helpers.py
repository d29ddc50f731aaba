"""
Test Helper Functions - Builders for grants and ledger records

Builders keep tests focused on the rule under test instead of on the
dozen fields a grant carries.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from approval_delegation.delegation.models import (
    DelegationGrant,
    DelegationKind,
    DelegationLimits,
    Party,
    ProxyAction,
    ProxyApprovalRecord,
    WorkflowCategory,
)
from approval_delegation.kernel.events import Event, create_event
from approval_delegation.kernel.ids import generate_id


def make_party(user_id: str, name: str | None = None) -> Party:
    return Party(user_id=user_id, name=name or f"User {user_id}")


def make_grant(
    delegator_id: str,
    delegate_id: str,
    start_date: date = date(2024, 1, 10),
    end_date: date = date(2024, 1, 12),
    *,
    grant_id: str | None = None,
    limits: DelegationLimits | None = None,
    revoked_at: datetime | None = None,
    created_at: datetime | None = None,
    kind: DelegationKind = DelegationKind.FULL,
    **overrides: Any,
) -> DelegationGrant:
    """
    Builder for grants that never touched the store

    Args:
        delegator_id: Delegator user id (name derived from it)
        delegate_id: Delegate user id (name derived from it)
        start_date: First day (inclusive)
        end_date: Last day (inclusive)
        grant_id: Defaults to a fresh id
        limits: Optional limits
        revoked_at: Set to make the grant Revoked
        created_at: Defaults to 2024-01-09 09:00 UTC
        kind: Delegation kind
    """
    delegator = make_party(delegator_id)
    return DelegationGrant(
        grant_id=grant_id or generate_id("del"),
        delegator=delegator,
        delegate=make_party(delegate_id),
        delegation_kind=kind,
        start_date=start_date,
        end_date=end_date,
        limits=limits,
        revoked_at=revoked_at,
        created_at=created_at or datetime(2024, 1, 9, 9, 0, tzinfo=timezone.utc),
        created_by=delegator.name,
        **overrides,
    )


def make_record(
    grant_id: str,
    amount: Decimal | None = None,
    action: ProxyAction = ProxyAction.APPROVED,
    action_at: datetime | None = None,
    proxy_id: str = "user-jw-001",
) -> ProxyApprovalRecord:
    """Builder for ledger records"""
    return ProxyApprovalRecord(
        record_id=generate_id("proxy"),
        approval_id=generate_id(),
        approval_reference="PR-2024-0901",
        category=WorkflowCategory.PURCHASE,
        original_approver=make_party("user-sw-001", "Sarah Williams"),
        proxy_approver=make_party(proxy_id),
        grant_id=grant_id,
        delegation_kind=DelegationKind.FULL,
        action=action,
        action_at=action_at or datetime(2024, 1, 11, 10, 0, tzinfo=timezone.utc),
        amount=amount,
    )


def record_event(record: ProxyApprovalRecord) -> Event:
    """Wrap a ledger record in the event that the ledger projection consumes"""
    return create_event(
        event_id=generate_id(),
        stream_id=record.record_id,
        stream_type="proxy_approval",
        event_type="ProxyApprovalRecorded",
        occurred_at=record.action_at,
        command_id=generate_id(),
        actor_id=record.proxy_approver.user_id,
        payload=record.model_dump(mode="json"),
        version=1,
    )


def build_event(stream_id: str, version: int = 1, **fields: Any) -> Event:
    """Minimal event for event store tests"""
    return create_event(
        event_id=fields.pop("event_id", generate_id()),
        stream_id=stream_id,
        stream_type=fields.pop("stream_type", "test"),
        event_type=fields.pop("event_type", "TestEvent"),
        occurred_at=fields.pop("occurred_at", datetime(2024, 1, 9, tzinfo=timezone.utc)),
        command_id=fields.pop("command_id", generate_id()),
        version=version,
        **fields,
    )
