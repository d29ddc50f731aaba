"""
Delegation Events - Domain events for grants and the proxy ledger

Events are immutable facts about what happened. A grant's own stream is
its audit trail; every proxy approval gets a one-event ledger stream.

Fun fact: In event sourcing, events are named in past tense because
they represent facts that already happened, not intentions!
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from approval_delegation.delegation.models import (
    DelegationKind,
    DelegationLimits,
    Party,
    ProxyAction,
    WorkflowCategory,
)

GRANT_STREAM = "delegation"
LEDGER_STREAM = "proxy_approval"
TOMBSTONE_STREAM = "tombstone"


# Grant lifecycle events


class DelegationCreated(BaseModel):
    """Authority was handed off from a delegator to a delegate"""

    grant_id: str
    delegator: Party
    delegate: Party
    delegation_kind: DelegationKind
    workflow_ids: list[str]
    workflow_categories: list[WorkflowCategory]
    start_date: date
    end_date: date
    limits: DelegationLimits | None
    reason: str | None
    created_at: datetime
    created_by: str


class DelegationModified(BaseModel):
    """
    A live grant's window, scope or limits changed

    `changes` holds only the fields that were supplied, in JSON form.
    """

    grant_id: str
    changes: dict[str, Any]
    changed_fields: list[str]
    modified_at: datetime
    modified_by: str


class DelegationRevoked(BaseModel):
    """A grant was explicitly ended before its window closed"""

    grant_id: str
    revoked_at: datetime
    revoked_by: str
    reason: str | None


class DelegationExpired(BaseModel):
    """The sweep observed that a grant's window had elapsed"""

    grant_id: str
    expired_at: datetime
    end_date: date


class DelegationApprovalUsed(BaseModel):
    """A delegate acted under the grant (audit side of a ledger record)"""

    grant_id: str
    record_id: str
    approval_id: str
    approval_reference: str
    action: ProxyAction
    proxy_approver: Party
    original_approver_name: str
    used_at: datetime


class DelegationDeleted(BaseModel):
    """A grant and its audit trail were removed; ledger records remain"""

    grant_id: str
    deleted_at: datetime
    deleted_by: str | None


# Ledger events


class ProxyApprovalRecorded(BaseModel):
    """Immutable ledger fact: a delegate took an action on an item"""

    record_id: str
    approval_id: str
    approval_reference: str
    category: WorkflowCategory
    original_approver: Party
    proxy_approver: Party
    grant_id: str
    delegation_kind: DelegationKind
    action: ProxyAction
    action_at: datetime
    comment: str | None
    amount: Decimal | None
    metadata: dict[str, Any]
