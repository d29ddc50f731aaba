"""
Delegation module - who may approve on someone else's behalf

Grants, limits, conflict and eligibility checks, the proxy ledger and
history derivation.
"""

from approval_delegation.delegation.models import (
    CATEGORY_LABELS,
    AuditAction,
    CandidateUser,
    DelegationAuditEntry,
    DelegationGrant,
    DelegationHistoryEntry,
    DelegationKind,
    DelegationLimits,
    DelegationStatus,
    EligibilityResult,
    Party,
    ProxyAction,
    ProxyApprovalRecord,
    ValidationResult,
    WorkflowCategory,
    compute_status,
)

__all__ = [
    "CATEGORY_LABELS",
    "AuditAction",
    "CandidateUser",
    "DelegationAuditEntry",
    "DelegationGrant",
    "DelegationHistoryEntry",
    "DelegationKind",
    "DelegationLimits",
    "DelegationStatus",
    "EligibilityResult",
    "Party",
    "ProxyAction",
    "ProxyApprovalRecord",
    "ValidationResult",
    "WorkflowCategory",
    "compute_status",
]
