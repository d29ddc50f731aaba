"""
Delegation Commands - Intentions to change delegation state

Commands represent what callers want to do. They are validated
against invariants and converted to events by handlers.

Fun fact: Commands can fail (bad window, terminal grant), but events
never fail - they're facts that already happened!
"""

from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from approval_delegation.delegation.models import (
    DelegationKind,
    DelegationLimits,
    Party,
    ProxyAction,
    WorkflowCategory,
)


# Grant Commands


class CreateGrant(BaseModel):
    """
    Hand off approval authority from delegator to delegate

    Subject to:
    - start_date <= end_date
    - delegator and delegate are different people
    - optional policy maximum on window length
    Overlapping grants from the same delegator are reported, not refused,
    unless the policy opts into blocking.
    """

    delegator: Party
    delegate: Party
    delegation_kind: DelegationKind
    start_date: date
    end_date: date
    workflow_ids: frozenset[str] = Field(default_factory=frozenset)
    workflow_categories: frozenset[WorkflowCategory] = Field(default_factory=frozenset)
    limits: DelegationLimits | None = None
    reason: str | None = None


class UpdateGrant(BaseModel):
    """
    Modify a live grant in place

    Only the fields explicitly set are changed; the audit detail lists
    them in declaration order.
    """

    grant_id: str
    delegation_kind: DelegationKind | None = None
    start_date: date | None = None
    end_date: date | None = None
    workflow_ids: frozenset[str] | None = None
    workflow_categories: frozenset[WorkflowCategory] | None = None
    limits: DelegationLimits | None = None
    reason: str | None = None

    def changed_fields(self) -> list[str]:
        """Names of the fields the caller actually supplied"""
        return [
            name
            for name in type(self).model_fields
            if name in self.model_fields_set and name != "grant_id"
        ]


class RevokeGrant(BaseModel):
    """End a Scheduled or Active grant immediately"""

    grant_id: str
    revoked_by: str = Field(..., min_length=1)
    reason: str | None = None


# Ledger Commands


class RecordProxyApproval(BaseModel):
    """
    Record that a delegate acted on an item under a grant

    No limits validation happens here; callers validate first and the
    ledger records what they did.
    """

    approval_id: str = Field(..., min_length=1)
    approval_reference: str = Field(..., min_length=1)
    category: WorkflowCategory
    original_approver: Party
    proxy_approver: Party
    grant_id: str
    delegation_kind: DelegationKind
    action: ProxyAction
    comment: str | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
