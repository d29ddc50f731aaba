"""
Delegation Invariants - Rules that decide who may act, and how far

Everything here is a pure function over a snapshot of grants: status,
overlap detection, the re-delegation edge query and the limits validator.
No function reads the clock or the store.

Fun fact: The re-delegation check is a two-hop walk over a directed graph.
Chain-of-custody rules in evidence handling follow the same idea - authority
may pass on, but only through links that allow it.
"""

from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal

from approval_delegation.delegation.models import (
    CATEGORY_LABELS,
    DelegationEdge,
    DelegationGrant,
    DelegationLimits,
    DelegationStatus,
    EligibilityResult,
    ValidationResult,
    WorkflowCategory,
)
from approval_delegation.kernel.errors import (
    GrantAlreadyTerminal,
    InvalidDelegationWindow,
)
from approval_delegation.kernel.policy import DelegationPolicy


def format_amount(amount: Decimal | int) -> str:
    """Thousands-separated amount, without a trailing .00 for whole values"""
    value = Decimal(amount)
    if value == value.to_integral_value():
        return f"{int(value):,}"
    return f"{value:,}"


# Window Invariants


def validate_window(
    start_date: date,
    end_date: date,
    delegator_id: str,
    delegate_id: str,
    policy: DelegationPolicy,
) -> None:
    """
    Enforce a well-formed validity window and distinct parties

    Args:
        start_date: First day of validity (inclusive)
        end_date: Last day of validity (inclusive)
        delegator_id: Who hands off authority
        delegate_id: Who receives it
        policy: Current delegation policy

    Raises:
        InvalidDelegationWindow: start after end, self-delegation, or a
            window longer than policy.max_grant_days
    """
    if start_date > end_date:
        raise InvalidDelegationWindow(
            f"Start date {start_date} is after end date {end_date}",
            start_date=start_date,
            end_date=end_date,
        )

    if delegator_id == delegate_id:
        raise InvalidDelegationWindow(
            f"User {delegator_id} cannot delegate to themselves",
            start_date=start_date,
            end_date=end_date,
        )

    if policy.max_grant_days is not None:
        days = (end_date - start_date).days + 1
        if days > policy.max_grant_days:
            raise InvalidDelegationWindow(
                f"Delegation window of {days} days exceeds the maximum of "
                f"{policy.max_grant_days} days",
                start_date=start_date,
                end_date=end_date,
            )


def ensure_not_terminal(grant: DelegationGrant, now: datetime, tz_name: str = "UTC") -> None:
    """
    Refuse changes to grants that have already ended

    Raises:
        GrantAlreadyTerminal: If the grant is Revoked or Expired at `now`,
            or the sweep already marked it so
    """
    if grant.status_marker is not None and grant.status_marker.is_terminal:
        raise GrantAlreadyTerminal(grant.grant_id, grant.status_marker.value)

    status = grant.status(now, tz_name)
    if status.is_terminal:
        raise GrantAlreadyTerminal(grant.grant_id, status.value)


# Conflict Detection


def find_conflicts(
    grants: Iterable[DelegationGrant],
    delegator_id: str,
    start_date: date,
    end_date: date,
    now: datetime,
    exclude_grant_id: str | None = None,
    tz_name: str = "UTC",
) -> list[DelegationGrant]:
    """
    Find live grants from the same delegator whose window overlaps

    Overlap is closed-interval intersection:
    start <= existing.end and end >= existing.start.
    Revoked and Expired grants never conflict. The result is advisory.

    Args:
        grants: Snapshot of all grants
        delegator_id: Delegator of the candidate window
        start_date: Candidate start (inclusive)
        end_date: Candidate end (inclusive)
        now: Caller's clock for status derivation
        exclude_grant_id: Grant to ignore (editing a grant against itself)
        tz_name: Business timezone

    Returns:
        Overlapping grants, in snapshot order
    """
    conflicts = []
    for grant in grants:
        if grant.grant_id == exclude_grant_id:
            continue
        if grant.delegator.user_id != delegator_id:
            continue
        if grant.status(now, tz_name).is_terminal:
            continue
        if grant.overlaps(start_date, end_date):
            conflicts.append(grant)
    return conflicts


# Re-delegation Eligibility


def active_edges(
    grants: Iterable[DelegationGrant],
    now: datetime,
    tz_name: str = "UTC",
) -> list[DelegationEdge]:
    """
    Project Active grants onto delegator → delegate edges

    Edges are ordered newest grant first so lookups are deterministic.
    """
    edges = [
        DelegationEdge(
            grant_id=grant.grant_id,
            delegator_id=grant.delegator.user_id,
            delegate_id=grant.delegate.user_id,
            allow_re_delegation=grant.limits is None or grant.limits.allow_re_delegation,
            created_at=grant.created_at,
        )
        for grant in grants
        if grant.status(now, tz_name) == DelegationStatus.ACTIVE
    ]
    edges.sort(key=lambda edge: edge.created_at, reverse=True)
    return edges


def check_re_delegation(
    candidate_id: str,
    grants: list[DelegationGrant],
    now: datetime,
    tz_name: str = "UTC",
) -> EligibilityResult:
    """
    Decide whether a candidate may receive a new grant

    Algorithm over Active edges:
    1. Inbound edge X → candidate exists, the candidate also has an
       outgoing edge candidate → Y, and the inbound grant forbids
       re-delegation: refuse.
    2. Otherwise, an outgoing edge candidate → Y means the candidate is
       away: allow with a warning.
    3. Otherwise allow.

    Args:
        candidate_id: Proposed delegate
        grants: One consistent snapshot of all grants
        now: Caller's clock
        tz_name: Business timezone

    Returns:
        EligibilityResult with the grant that drove the decision, if any
    """
    by_id = {grant.grant_id: grant for grant in grants}
    edges = active_edges(grants, now, tz_name)

    inbound = next((e for e in edges if e.delegate_id == candidate_id), None)
    outbound = next((e for e in edges if e.delegator_id == candidate_id), None)

    if inbound is not None and outbound is not None and not inbound.allow_re_delegation:
        existing = by_id[inbound.grant_id]
        return EligibilityResult(
            can_receive=False,
            has_active_delegation=True,
            existing_grant=existing,
            reason=(
                f"{existing.delegate.name} already has an active delegation from "
                f"{existing.delegator.name} that does not allow re-delegation"
            ),
        )

    if outbound is not None:
        existing = by_id[outbound.grant_id]
        return EligibilityResult(
            can_receive=True,
            has_active_delegation=True,
            existing_grant=existing,
            reason=(
                f"Warning: {existing.delegator.name} currently has their own "
                f"delegation active to {existing.delegate.name}"
            ),
        )

    return EligibilityResult(can_receive=True, has_active_delegation=False)


# Limits Validation


def validate_limits(
    limits: DelegationLimits | None,
    amount: Decimal | None = None,
    category: WorkflowCategory | None = None,
    tier_level: int | None = None,
    near_limit_ratio: float = 0.9,
) -> ValidationResult:
    """
    Check a proposed action against a grant's limits

    Each rule is evaluated independently and several may fire. Unset
    (None or zero) limits are skipped. Errors block, warnings never do.

    Args:
        limits: The grant's limits (None means always valid)
        amount: Monetary amount of the item, if any
        category: Category of the item, if known
        tier_level: Approval tier of the item, if known
        near_limit_ratio: Fraction of the maximum that triggers a warning

    Returns:
        ValidationResult with is_valid == (errors is empty)

    Example:
        >>> validate_limits(DelegationLimits(max_approval_amount=Decimal("5000")),
        ...                 amount=Decimal("4600")).warnings
        ['Amount is approaching the delegation limit of 5,000']
    """
    if limits is None:
        return ValidationResult(is_valid=True)

    errors: list[str] = []
    warnings: list[str] = []

    if limits.max_approval_amount and amount is not None:
        maximum = limits.max_approval_amount
        if amount > maximum:
            errors.append(
                f"Amount {format_amount(amount)} exceeds delegation limit of "
                f"{format_amount(maximum)}"
            )
        elif amount > maximum * Decimal(str(near_limit_ratio)):
            warnings.append(
                f"Amount is approaching the delegation limit of {format_amount(maximum)}"
            )

    if limits.require_justification_above and amount is not None:
        if amount > limits.require_justification_above:
            warnings.append(
                f"Amounts over {format_amount(limits.require_justification_above)} "
                f"require justification"
            )

    if limits.exclude_categories and category is not None:
        if category in limits.exclude_categories:
            errors.append(
                f'Category "{CATEGORY_LABELS[category]}" is excluded from this delegation'
            )

    if limits.max_tier_level and tier_level is not None:
        if tier_level > limits.max_tier_level:
            errors.append(
                f"Tier {tier_level} exceeds the maximum allowed tier level "
                f"({limits.max_tier_level})"
            )

    if limits.exclude_high_priority:
        warnings.append(
            "High priority requests require direct approval from the original approver"
        )

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def limits_summary(limits: DelegationLimits | None) -> list[str]:
    """Human-readable list of the restrictions that are set"""
    if limits is None:
        return []

    summary = []
    if limits.max_approval_amount:
        summary.append(f"Max amount: {format_amount(limits.max_approval_amount)}")
    if limits.max_approvals_per_day:
        summary.append(f"Max {limits.max_approvals_per_day} approvals/day")
    if limits.max_tier_level:
        summary.append(f"Max tier level: {limits.max_tier_level}")
    if limits.exclude_categories:
        ordered = [c for c in WorkflowCategory if c in limits.exclude_categories]
        summary.append("Excludes: " + ", ".join(CATEGORY_LABELS[c] for c in ordered))
    if limits.exclude_high_priority:
        summary.append("Excludes high priority")
    if not limits.allow_re_delegation:
        summary.append("No re-delegation")
    if limits.restrict_to_same_department:
        summary.append("Same department only")
    if limits.require_justification_above:
        summary.append(
            "Justification required above "
            f"{format_amount(limits.require_justification_above)}"
        )
    return summary
