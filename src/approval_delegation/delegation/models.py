"""
Delegation Domain Models - Grants, limits, ledger records and read models

These models represent the building blocks of approval delegation.
They use Pydantic for validation and SQLModel for the read-side
directory of candidate delegates.

Fun fact: A grant's status is never stored as truth. It is recomputed from
four fields every time it is read, which is why a grant can silently become
Active at midnight without anyone writing to the database.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from sqlmodel import SQLModel

from approval_delegation.kernel.errors import LimitsValidationFailed
from approval_delegation.kernel.time import local_date


class DelegationKind(str, Enum):
    """
    Breadth of the authority being handed off

    FULL hands off everything the delegator could approve, SPECIFIC only
    the listed workflows or categories, TEMPORARY is a short-term handoff
    that relies on auto-expiry.
    """

    FULL = "full"
    SPECIFIC = "specific"
    TEMPORARY = "temporary"


class DelegationStatus(str, Enum):
    """
    Derived lifecycle state of a grant

    SCHEDULED → ACTIVE → EXPIRED on the happy path; REVOKED from
    SCHEDULED or ACTIVE. EXPIRED and REVOKED are terminal.
    """

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @property
    def is_terminal(self) -> bool:
        return self in (DelegationStatus.EXPIRED, DelegationStatus.REVOKED)


class WorkflowCategory(str, Enum):
    """Kinds of approvable items produced by the business domains"""

    PURCHASE = "purchase"
    TIME_OFF = "time_off"
    PERMIT = "permit"
    EXPENSE = "expense"
    CONTRACT = "contract"
    CUSTOM = "custom"


CATEGORY_LABELS: dict[WorkflowCategory, str] = {
    WorkflowCategory.PURCHASE: "Purchase Orders",
    WorkflowCategory.TIME_OFF: "Time Off",
    WorkflowCategory.PERMIT: "Permits",
    WorkflowCategory.EXPENSE: "Expenses",
    WorkflowCategory.CONTRACT: "Contracts",
    WorkflowCategory.CUSTOM: "Custom",
}


class ProxyAction(str, Enum):
    """Decision a delegate took on behalf of the original approver"""

    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"


class AuditAction(str, Enum):
    """Lifecycle events recorded in a grant's audit trail"""

    CREATED = "created"
    MODIFIED = "modified"
    REVOKED = "revoked"
    EXPIRED = "expired"
    APPROVAL_USED = "approval_used"


class Party(BaseModel):
    """
    A person on either side of a grant

    Identity is opaque data supplied by the caller; the engine never
    authenticates it.
    """

    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    role: str | None = None
    email: str | None = None

    model_config = {"frozen": True}


class DelegationLimits(BaseModel):
    """
    Quantitative and categorical restrictions on a grant

    Only limits that are set (non-null and non-zero) are evaluated.
    allow_re_delegation defaults to True; only an explicit False blocks
    re-delegation.
    """

    max_approval_amount: Decimal | None = Field(default=None, ge=0)
    max_approvals_per_day: int | None = Field(default=None, ge=0)
    max_tier_level: int | None = Field(default=None, ge=0)
    exclude_categories: frozenset[WorkflowCategory] = Field(default_factory=frozenset)
    exclude_high_priority: bool = False
    allow_re_delegation: bool = True
    restrict_to_same_department: bool = False
    require_justification_above: Decimal | None = Field(default=None, ge=0)

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "examples": [
                {
                    "max_approval_amount": "5000",
                    "max_tier_level": 2,
                    "exclude_categories": ["contract"],
                    "allow_re_delegation": False,
                    "require_justification_above": "2500",
                }
            ]
        },
    }


def compute_status(
    revoked_at: datetime | None,
    start_date: date,
    end_date: date,
    now: datetime,
    tz_name: str = "UTC",
) -> DelegationStatus:
    """
    Derive a grant's status from its dates and revocation state

    Revocation always wins. Otherwise the calendar date of `now` in the
    business timezone is compared with the inclusive [start, end] window,
    which treats end_date as end-of-day.
    """
    if revoked_at is not None:
        return DelegationStatus.REVOKED

    today = local_date(now, tz_name)
    if today < start_date:
        return DelegationStatus.SCHEDULED
    if today > end_date:
        return DelegationStatus.EXPIRED
    return DelegationStatus.ACTIVE


class DelegationGrant(BaseModel):
    """
    Time-bounded transfer of approval authority

    A grant is a frozen snapshot: every event replaces it wholesale, so a
    reader never sees half of an update.

    Attributes:
        grant_id: Unique identifier
        delegator: Original approver handing off authority
        delegate: Party receiving authority
        delegation_kind: FULL, SPECIFIC or TEMPORARY
        workflow_ids: Explicit approvable item ids in scope
        workflow_categories: Categories in scope
        start_date: First day of validity (inclusive)
        end_date: Last day of validity (inclusive)
        limits: Optional restrictions on what the delegate may approve
        reason: Free-text reason (e.g. "Annual leave")
        revoked_at: When revoked (None unless revoked)
        revoked_by: Who revoked it
        revoke_reason: Why it was revoked
        created_at: When the grant was created
        created_by: Display name of the creator
        updated_at: Last modification time
        version: Stream version, the optimistic concurrency token
        status_marker: Terminal status last persisted (sweep bookkeeping only)
    """

    grant_id: str
    delegator: Party
    delegate: Party
    delegation_kind: DelegationKind
    workflow_ids: frozenset[str] = Field(default_factory=frozenset)
    workflow_categories: frozenset[WorkflowCategory] = Field(default_factory=frozenset)
    start_date: date
    end_date: date
    limits: DelegationLimits | None = None
    reason: str | None = None
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    revoke_reason: str | None = None
    created_at: datetime
    created_by: str
    updated_at: datetime | None = None
    version: int = Field(default=1, ge=1)
    status_marker: DelegationStatus | None = None

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "examples": [
                {
                    "grant_id": "del-001",
                    "delegator": {"user_id": "user-sw-001", "name": "Sarah Williams"},
                    "delegate": {"user_id": "user-jw-001", "name": "James Wilson"},
                    "delegation_kind": "specific",
                    "workflow_categories": ["purchase", "time_off"],
                    "start_date": "2024-01-20",
                    "end_date": "2024-01-27",
                    "reason": "Attending finance conference",
                    "created_at": "2024-01-18T09:00:00Z",
                    "created_by": "Sarah Williams",
                }
            ]
        },
    }

    def status(self, now: datetime, tz_name: str = "UTC") -> DelegationStatus:
        """Current status relative to the caller's clock"""
        return compute_status(self.revoked_at, self.start_date, self.end_date, now, tz_name)

    def is_active(self, now: datetime, tz_name: str = "UTC") -> bool:
        """Check if the delegate may currently act under this grant"""
        return self.status(now, tz_name) == DelegationStatus.ACTIVE

    @property
    def is_unscoped(self) -> bool:
        """Grants with no workflow ids and no categories apply to everything"""
        return not self.workflow_ids and not self.workflow_categories

    def covers(
        self,
        category: WorkflowCategory | None = None,
        workflow_id: str | None = None,
    ) -> bool:
        """Check whether an approvable item falls inside the grant's scope"""
        if self.is_unscoped:
            return True
        if workflow_id is not None and workflow_id in self.workflow_ids:
            return True
        return category is not None and category in self.workflow_categories

    def overlaps(self, start: date, end: date) -> bool:
        """Closed-interval intersection with [start, end]"""
        return start <= self.end_date and end >= self.start_date


class ProxyApprovalRecord(BaseModel):
    """
    Immutable fact: a delegate acted on an item under a grant

    Records outlive the grant that authorized them; deleting or revoking
    the grant never touches the ledger.
    """

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
    comment: str | None = None
    amount: Decimal | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class DelegationAuditEntry(BaseModel):
    """One lifecycle event of a grant, derived from its event stream"""

    entry_id: str
    grant_id: str
    action: AuditAction
    actor_name: str
    actor_id: str | None = None
    occurred_at: datetime
    detail: str
    approval_id: str | None = None
    approval_reference: str | None = None
    record_id: str | None = None

    model_config = {"frozen": True}


class DelegationHistoryEntry(BaseModel):
    """
    Summary of an ended grant, computed on read

    approvals_processed and total_approval_amount are aggregated from the
    proxy ledger at query time, so they always agree with it.
    """

    grant_id: str
    delegator: Party
    delegate: Party
    delegation_kind: DelegationKind
    start_date: date
    end_date: date
    actual_end_date: date
    ended_at: datetime
    status: DelegationStatus
    reason: str | None = None
    revoke_reason: str | None = None
    approvals_processed: int = 0
    total_approval_amount: Decimal = Decimal("0")
    created_at: datetime

    model_config = {"frozen": True}


class DelegationEdge(BaseModel):
    """
    Single active edge delegator → delegate

    Used for the re-delegation query; built from one snapshot of the
    grant set.
    """

    grant_id: str
    delegator_id: str
    delegate_id: str
    allow_re_delegation: bool
    created_at: datetime

    model_config = {"frozen": True}


class EligibilityResult(BaseModel):
    """Outcome of a re-delegation check for a candidate delegate"""

    can_receive: bool
    has_active_delegation: bool
    existing_grant: DelegationGrant | None = None
    reason: str | None = None


class ValidationResult(BaseModel):
    """
    Outcome of validating a proposed action against a grant's limits

    Warnings never block; is_valid is True exactly when errors is empty.
    """

    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def raise_for_errors(self) -> None:
        """Treat errors as blocking (opt-in for callers that want exceptions)"""
        if self.errors:
            raise LimitsValidationFailed(self.errors, self.warnings)


class ActiveGrants(BaseModel):
    """A user's currently Active grants on each side"""

    delegated_from: list[DelegationGrant] = Field(default_factory=list)
    delegated_to: list[DelegationGrant] = Field(default_factory=list)


class OutOfOfficeStatus(BaseModel):
    """Whether a user has currently handed their authority to someone else"""

    is_out_of_office: bool
    active_grant: DelegationGrant | None = None


class PartyCount(BaseModel):
    """Leaderboard row for delegation statistics"""

    user_id: str
    name: str
    count: int


class DelegationStats(BaseModel):
    """Dashboard counters over the whole grant set"""

    total: int = 0
    active: int = 0
    scheduled: int = 0
    expired: int = 0
    approvals_via_delegation: int = 0
    top_delegators: list[PartyCount] = Field(default_factory=list)
    top_delegates: list[PartyCount] = Field(default_factory=list)


class ProxyApproverTotal(BaseModel):
    """Leaderboard row for proxy approval statistics"""

    user_id: str
    name: str
    count: int
    amount: Decimal


class ProxyApprovalStats(BaseModel):
    """Counters over the whole proxy ledger"""

    total: int = 0
    approved: int = 0
    rejected: int = 0
    returned: int = 0
    total_amount: Decimal = Decimal("0")
    by_category: dict[str, int] = Field(default_factory=dict)
    top_proxy_approvers: list[ProxyApproverTotal] = Field(default_factory=list)


# Projection models (for read-side queries)

class CandidateUser(SQLModel):
    """
    Read model for people who may be chosen as delegates

    Supplied by the external user directory; the engine only filters it.
    """

    user_id: str
    name: str
    email: str
    role: str
    department: str | None = None
    can_receive_delegation: bool = True
