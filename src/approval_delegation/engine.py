"""
DelegationEngine - Main façade class

This is the primary interface of the approval delegation engine. It provides
a clean, high-level API that hides event sourcing, projections, and command
handling from the approval workflows that call it.

Example:
    >>> from approval_delegation import DelegationEngine
    >>> engine = DelegationEngine("delegations.db")
    >>> grant = engine.create_grant(
    ...     delegator=Party(user_id="user-sw-001", name="Sarah Williams"),
    ...     delegate=Party(user_id="user-jw-001", name="James Wilson"),
    ...     delegation_kind="temporary",
    ...     start_date="2024-01-10",
    ...     end_date="2024-01-12",
    ...     limits=DelegationLimits(max_approval_amount=Decimal("1000")),
    ... )
    >>> engine.validate_limits(grant, amount=800).is_valid
    True
    >>> engine.sweep_expirations()  # From a scheduler
"""

import threading
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

from approval_delegation.delegation.commands import (
    CreateGrant,
    RecordProxyApproval,
    RevokeGrant,
    UpdateGrant,
)
from approval_delegation.delegation.directory import (
    CandidateDirectory,
    InMemoryCandidateDirectory,
    filter_candidates,
)
from approval_delegation.delegation.events import LEDGER_STREAM
from approval_delegation.delegation.handlers import DelegationCommandHandlers
from approval_delegation.delegation.invariants import (
    check_re_delegation,
    find_conflicts,
    limits_summary,
    validate_limits,
)
from approval_delegation.delegation.models import (
    ActiveGrants,
    AuditAction,
    CandidateUser,
    DelegationAuditEntry,
    DelegationGrant,
    DelegationHistoryEntry,
    DelegationKind,
    DelegationLimits,
    DelegationStats,
    DelegationStatus,
    EligibilityResult,
    OutOfOfficeStatus,
    Party,
    ProxyAction,
    ProxyApprovalRecord,
    ProxyApprovalStats,
    ValidationResult,
    WorkflowCategory,
)
from approval_delegation.delegation.projections import (
    GRANT_EVENT_TYPES,
    DelegationAuditLog,
    GrantRegistry,
    ProxyApprovalLedger,
    build_history,
)
from approval_delegation.kernel.errors import (
    GrantAlreadyTerminal,
    GrantNotFound,
    StreamVersionConflict,
)
from approval_delegation.kernel.event_store import EventStore, SQLiteEventStore
from approval_delegation.kernel.events import Event
from approval_delegation.kernel.ids import generate_id
from approval_delegation.kernel.logging import LogOperation, get_logger
from approval_delegation.kernel.metrics import (
    conflicts_detected_total,
    limits_validations_total,
    projection_rebuild_duration_seconds,
    proxy_approvals_total,
    track_command_duration,
    update_grant_status_metrics,
)
from approval_delegation.kernel.policy import DelegationPolicy
from approval_delegation.kernel.retry import retry_on_version_conflict, retry_projection_rebuild
from approval_delegation.kernel.sweep import ExpirySweeper, SweepResult
from approval_delegation.kernel.time import RealTimeProvider, TimeProvider, local_date

logger = get_logger(__name__)


def _as_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _as_decimal(value: Decimal | int | float | str | None) -> Decimal | None:
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class DelegationEngine:
    """
    Approval delegation engine façade

    Provides a unified API for:
    - Grant lifecycle (create, update, revoke, delete)
    - Conflict and re-delegation checks
    - Limits validation
    - Proxy approval ledger and audit trail
    - History, statistics and the expiry sweep

    All projection reads and writes happen under one re-entrant lock;
    grants are frozen models, so anything returned to callers is a
    consistent snapshot.
    """

    def __init__(
        self,
        sqlite_path: str | Path | None = None,
        policy: DelegationPolicy | None = None,
        time_provider: TimeProvider | None = None,
        directory: CandidateDirectory | None = None,
        event_store: EventStore | None = None,
    ) -> None:
        """
        Initialize the engine

        Args:
            sqlite_path: Path to SQLite database (ignored if event_store given)
            policy: Delegation policy (uses defaults if None)
            time_provider: Time provider (uses real time if None)
            directory: Source of candidate delegates (empty if None)
            event_store: Alternative EventStore implementation
        """
        if event_store is None and sqlite_path is None:
            raise ValueError("Either sqlite_path or event_store is required")

        self.sqlite_path = Path(sqlite_path) if sqlite_path is not None else None
        self.policy = policy or DelegationPolicy()
        self.time_provider = time_provider or RealTimeProvider()
        self.directory: CandidateDirectory = directory or InMemoryCandidateDirectory()

        # Initialize infrastructure
        self.event_store: EventStore = event_store or SQLiteEventStore(self.sqlite_path)
        self.handlers = DelegationCommandHandlers(self.time_provider, self.policy)
        self.sweeper = ExpirySweeper(self.event_store, self.handlers)

        self._lock = threading.RLock()
        self._position = 0
        self._applied_ahead: set[str] = set()

        # Initialize projections
        self.grant_registry = GrantRegistry()
        self.audit_log = DelegationAuditLog()
        self.proxy_ledger = ProxyApprovalLedger()

        # Rebuild projections from event store
        self._rebuild_projections()

    @property
    def _tz(self) -> str:
        return self.policy.business_timezone

    # Projection maintenance

    @retry_projection_rebuild()
    def _rebuild_projections(self) -> None:
        """Rebuild all projections from event store"""
        started = time.perf_counter()
        with self._lock:
            self.grant_registry = GrantRegistry()
            self.audit_log = DelegationAuditLog()
            self.proxy_ledger = ProxyApprovalLedger()
            self._position = 0
            self._applied_ahead = set()

            events = self.event_store.load_all_events()
            for event in events:
                self._apply(event)
                self._position = event.position or self._position

        projection_rebuild_duration_seconds.labels(projection_name="all").observe(
            time.perf_counter() - started
        )
        logger.info("Projections rebuilt", event_count=len(events), position=self._position)

    def _apply(self, event: Event) -> None:
        """Route an event to the projections that care about it"""
        if event.event_type in GRANT_EVENT_TYPES:
            self.grant_registry.apply_event(event)
            self.audit_log.apply_event(event)
        elif event.stream_type == LEDGER_STREAM:
            self.proxy_ledger.apply_event(event)

    def _integrate(self, events: list[Event]) -> None:
        """Apply events this instance appended (or was handed back by the store)"""
        for event in sorted(events, key=lambda e: e.position or 0):
            if event.position is not None and event.position <= self._position:
                continue
            if event.event_id in self._applied_ahead:
                continue
            self._apply(event)
            if event.position == self._position + 1:
                self._position = event.position
            else:
                self._applied_ahead.add(event.event_id)

    def refresh(self) -> int:
        """
        Catch up with events written by other engine instances

        Returns:
            Number of events applied
        """
        with self._lock:
            applied = 0
            for event in self.event_store.load_all_events(after_position=self._position):
                if event.event_id in self._applied_ahead:
                    self._applied_ahead.discard(event.event_id)
                else:
                    self._apply(event)
                    applied += 1
                self._position = event.position or self._position
            if applied:
                logger.debug("Projections caught up", applied=applied, position=self._position)
            return applied

    def _require_grant(self, grant_id: str) -> DelegationGrant:
        grant = self.grant_registry.get(grant_id)
        if grant is None:
            raise GrantNotFound(grant_id)
        return grant

    def _append_grant_events(self, grant_id: str, events: list[Event]) -> None:
        """
        Append events to an existing grant's stream and apply them

        A lost race is reported as GrantAlreadyTerminal when the winner ended
        the grant, otherwise the version conflict propagates.
        """
        expected_version = events[0].version - 1
        try:
            stored = self.event_store.append(grant_id, expected_version, events)
        except StreamVersionConflict:
            self.refresh()
            grant = self._require_grant(grant_id)
            status = grant.status(self.time_provider.now(), self._tz)
            if status.is_terminal:
                raise GrantAlreadyTerminal(grant_id, status.value) from None
            raise
        self._integrate(stored)

    # Queries

    def list_grants(
        self,
        status: DelegationStatus | str | None = None,
        delegator_id: str | None = None,
        delegate_id: str | None = None,
        kind: DelegationKind | str | None = None,
    ) -> list[DelegationGrant]:
        """
        List grants, newest first by created_at

        Args:
            status: Derived status filter (scheduled, active, expired, revoked)
            delegator_id: Only grants from this user
            delegate_id: Only grants to this user
            kind: Delegation kind filter
        """
        now = self.time_provider.now()
        status = DelegationStatus(status) if status else None
        kind = DelegationKind(kind) if kind else None

        with self._lock:
            result = self.grant_registry.snapshot()

        if status:
            result = [g for g in result if g.status(now, self._tz) == status]
        if delegator_id:
            result = [g for g in result if g.delegator.user_id == delegator_id]
        if delegate_id:
            result = [g for g in result if g.delegate.user_id == delegate_id]
        if kind:
            result = [g for g in result if g.delegation_kind == kind]
        return result

    def get_grant(self, grant_id: str) -> DelegationGrant | None:
        """Get grant by ID (None if unknown)"""
        with self._lock:
            return self.grant_registry.get(grant_id)

    def active_grants_for(self, user_id: str) -> ActiveGrants:
        """Active grants the user issued (delegated_from) and received (delegated_to)"""
        active = self.list_grants(status=DelegationStatus.ACTIVE)
        return ActiveGrants(
            delegated_from=[g for g in active if g.delegator.user_id == user_id],
            delegated_to=[g for g in active if g.delegate.user_id == user_id],
        )

    def grants_for_item(
        self,
        delegate_id: str,
        category: WorkflowCategory | str | None = None,
        workflow_id: str | None = None,
    ) -> list[DelegationGrant]:
        """
        Active grants under which the user may act on an item

        Unscoped grants cover every item; scoped ones must list the
        item's workflow id or category.
        """
        category = WorkflowCategory(category) if category else None
        return [
            g
            for g in self.active_grants_for(delegate_id).delegated_to
            if g.covers(category=category, workflow_id=workflow_id)
        ]

    def eligible_delegates(
        self,
        exclude_user_id: str | None = None,
        search: str | None = None,
    ) -> list[CandidateUser]:
        """Candidates from the directory who may be chosen as delegate"""
        return filter_candidates(self.directory.list_candidates(), exclude_user_id, search)

    def stats(self) -> DelegationStats:
        """Grant counters, proxy approvals used, and the top delegators/delegates"""
        now = self.time_provider.now()
        with self._lock:
            update_grant_status_metrics(self.grant_registry.count_by_status(now, self._tz))
            return self.grant_registry.stats(
                now,
                approvals_via_delegation=self.audit_log.count_action(AuditAction.APPROVAL_USED),
                top_n=self.policy.top_parties_limit,
                tz_name=self._tz,
            )

    def grant_counts(self) -> dict[str, int]:
        """Grant count per derived status"""
        with self._lock:
            return self.grant_registry.count_by_status(self.time_provider.now(), self._tz)

    def audit_trail(self, grant_id: str) -> list[DelegationAuditEntry]:
        """
        Audit entries of a grant, most recent first

        Raises:
            GrantNotFound: If the grant does not exist
        """
        with self._lock:
            self._require_grant(grant_id)
            return self.audit_log.trail(grant_id)

    def check_conflicts(
        self,
        delegator_id: str,
        start_date: date | str,
        end_date: date | str,
        exclude_grant_id: str | None = None,
    ) -> list[DelegationGrant]:
        """Live grants from the same delegator overlapping [start, end] (advisory)"""
        with self._lock:
            grants = self.grant_registry.snapshot()
        conflicts = find_conflicts(
            grants,
            delegator_id,
            _as_date(start_date),
            _as_date(end_date),
            self.time_provider.now(),
            exclude_grant_id=exclude_grant_id,
            tz_name=self._tz,
        )
        if conflicts:
            conflicts_detected_total.inc(len(conflicts))
        return conflicts

    def check_re_delegation(self, candidate_id: str) -> EligibilityResult:
        """Whether the candidate may receive a new grant right now"""
        with self._lock:
            snapshot = self.grant_registry.snapshot()
        return check_re_delegation(candidate_id, snapshot, self.time_provider.now(), self._tz)

    def validate_limits(
        self,
        grant: DelegationGrant | str,
        amount: Decimal | int | float | str | None = None,
        category: WorkflowCategory | str | None = None,
        tier_level: int | None = None,
    ) -> ValidationResult:
        """
        Check a proposed action against a grant's limits

        Args:
            grant: The grant, or its id
            amount: Monetary amount of the item
            category: Item category
            tier_level: Approval tier of the item

        Returns:
            ValidationResult (never raises for limit violations)
        """
        if isinstance(grant, str):
            with self._lock:
                grant = self._require_grant(grant)

        result = validate_limits(
            grant.limits,
            amount=_as_decimal(amount),
            category=WorkflowCategory(category) if category else None,
            tier_level=tier_level,
            near_limit_ratio=self.policy.near_limit_ratio,
        )
        limits_validations_total.labels(result="valid" if result.is_valid else "invalid").inc()
        return result

    def limits_summary(self, grant: DelegationGrant | DelegationLimits | None) -> list[str]:
        """Readable list of the restrictions set on a grant"""
        if isinstance(grant, DelegationGrant):
            return limits_summary(grant.limits)
        return limits_summary(grant)

    def out_of_office(self, user_id: str) -> OutOfOfficeStatus:
        """Whether the user has currently handed their authority to someone"""
        outgoing = self.active_grants_for(user_id).delegated_from
        return OutOfOfficeStatus(
            is_out_of_office=bool(outgoing),
            active_grant=outgoing[0] if outgoing else None,
        )

    def expiring_grants(self, user_id: str, days: int | None = None) -> list[DelegationGrant]:
        """
        Active grants involving the user that end within `days`

        Args:
            user_id: Delegator or delegate
            days: Look-ahead window (policy expiring_soon_days if None)
        """
        days = self.policy.expiring_soon_days if days is None else days
        today = local_date(self.time_provider.now(), self._tz)
        horizon = today + timedelta(days=days)

        return [
            g
            for g in self.list_grants(status=DelegationStatus.ACTIVE)
            if user_id in (g.delegator.user_id, g.delegate.user_id)
            and today <= g.end_date <= horizon
        ]

    def proxy_approvals(
        self,
        grant_id: str | None = None,
        original_approver_id: str | None = None,
        proxy_approver_id: str | None = None,
        category: WorkflowCategory | str | None = None,
        action: ProxyAction | str | None = None,
        date_from: datetime | None = None,
        date_to: date | str | None = None,
    ) -> list[ProxyApprovalRecord]:
        """Query the proxy ledger, newest first"""
        with self._lock:
            return self.proxy_ledger.query(
                grant_id=grant_id,
                original_approver_id=original_approver_id,
                proxy_approver_id=proxy_approver_id,
                category=WorkflowCategory(category) if category else None,
                action=ProxyAction(action) if action else None,
                date_from=date_from,
                date_to=_as_date(date_to) if date_to else None,
                tz_name=self._tz,
            )

    def proxy_approval_stats(self) -> ProxyApprovalStats:
        """Totals by action and category, and the busiest proxy approvers"""
        with self._lock:
            return self.proxy_ledger.stats(top_n=self.policy.top_parties_limit)

    def history(
        self,
        delegator_id: str | None = None,
        delegate_id: str | None = None,
        status: DelegationStatus | str | None = None,
        kind: DelegationKind | str | None = None,
        created_from: datetime | None = None,
        created_to: date | str | None = None,
    ) -> list[DelegationHistoryEntry]:
        """
        Summaries of Expired and Revoked grants, computed from the ledger

        Args:
            delegator_id: Only grants from this user
            delegate_id: Only grants to this user
            status: expired or revoked
            kind: Delegation kind filter
            created_from: Grants created at or after this instant
            created_to: Grants created on or before this date
        """
        with self._lock:
            return build_history(
                self.grant_registry.snapshot(),
                self.proxy_ledger,
                self.time_provider.now(),
                delegator_id=delegator_id,
                delegate_id=delegate_id,
                status=DelegationStatus(status) if status else None,
                kind=DelegationKind(kind) if kind else None,
                created_from=created_from,
                created_to=_as_date(created_to) if created_to else None,
                tz_name=self._tz,
            )

    # Commands

    @track_command_duration("create_grant")
    def create_grant(
        self,
        delegator: Party,
        delegate: Party,
        delegation_kind: DelegationKind | str,
        start_date: date | str,
        end_date: date | str,
        workflow_ids: list[str] | None = None,
        workflow_categories: list[WorkflowCategory | str] | None = None,
        limits: DelegationLimits | None = None,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> DelegationGrant:
        """
        Hand off approval authority

        Overlapping grants from the same delegator are allowed unless the
        policy blocks them; use check_conflicts() to warn beforehand.

        Returns:
            The new grant

        Raises:
            InvalidDelegationWindow: start after end, self-delegation, or
                window over policy maximum
            ConflictingGrantBlocked: If the policy blocks overlaps
        """
        command = CreateGrant(
            delegator=delegator,
            delegate=delegate,
            delegation_kind=DelegationKind(delegation_kind),
            start_date=_as_date(start_date),
            end_date=_as_date(end_date),
            workflow_ids=frozenset(workflow_ids or ()),
            workflow_categories=frozenset(
                WorkflowCategory(c) for c in (workflow_categories or ())
            ),
            limits=limits,
            reason=reason,
        )

        command_id = generate_id()
        with self._lock, LogOperation(
            logger,
            "create_grant",
            correlation_id=command_id,
            delegator_id=delegator.user_id,
            delegate_id=delegate.user_id,
            delegation_kind=command.delegation_kind.value,
        ):
            self.refresh()
            events = self.handlers.handle_create_grant(
                command, command_id, actor_id, self.grant_registry.snapshot()
            )
            stored = self.event_store.append(events[0].stream_id, 0, events)
            self._integrate(stored)
            return self.grant_registry.get(stored[0].stream_id)

    @track_command_duration("update_grant")
    def update_grant(
        self,
        grant_id: str,
        patch: dict[str, Any],
        updated_by: str,
    ) -> DelegationGrant:
        """
        Modify a live grant

        Args:
            grant_id: Grant to change
            patch: Fields to change (delegation_kind, start_date, end_date,
                workflow_ids, workflow_categories, limits, reason)
            updated_by: Display name of who made the change

        Raises:
            GrantNotFound: If the grant does not exist
            GrantAlreadyTerminal: If the grant is Revoked or Expired
            InvalidDelegationWindow: If the resulting window is malformed
            InvalidGrantUpdate: If the patch would clear a required field
        """
        command = UpdateGrant(grant_id=grant_id, **patch)

        command_id = generate_id()
        with self._lock, LogOperation(
            logger,
            "update_grant",
            correlation_id=command_id,
            grant_id=grant_id,
            fields=command.changed_fields(),
        ):
            self.refresh()
            grant = self._require_grant(grant_id)
            events = self.handlers.handle_update_grant(command, command_id, updated_by, grant)
            self._append_grant_events(grant_id, events)
            return self.grant_registry.get(grant_id)

    @track_command_duration("revoke_grant")
    def revoke_grant(
        self,
        grant_id: str,
        revoked_by: str,
        reason: str | None = None,
    ) -> DelegationGrant:
        """
        End a Scheduled or Active grant now

        Proxy approvals already recorded under the grant stand.

        Raises:
            GrantNotFound: If the grant does not exist
            GrantAlreadyTerminal: If the grant is already Revoked or Expired
        """
        command = RevokeGrant(grant_id=grant_id, revoked_by=revoked_by, reason=reason)

        command_id = generate_id()
        with self._lock, LogOperation(
            logger, "revoke_grant", correlation_id=command_id, grant_id=grant_id
        ):
            self.refresh()
            grant = self._require_grant(grant_id)
            events = self.handlers.handle_revoke_grant(command, command_id, grant)
            self._append_grant_events(grant_id, events)
            return self.grant_registry.get(grant_id)

    @track_command_duration("delete_grant")
    def delete_grant(self, grant_id: str, deleted_by: str | None = None) -> None:
        """
        Hard-delete a grant and its audit trail

        Proxy ledger records made under the grant are kept.

        Raises:
            GrantNotFound: If the grant does not exist
        """
        command_id = generate_id()
        with self._lock, LogOperation(
            logger, "delete_grant", correlation_id=command_id, grant_id=grant_id
        ):
            self.refresh()
            grant = self._require_grant(grant_id)
            events = self.handlers.handle_delete_grant(grant, command_id, deleted_by)
            stored = self.event_store.append(events[0].stream_id, 0, events)
            self.event_store.delete_stream(grant_id)
            self._integrate(stored)

    @track_command_duration("record_proxy_approval")
    def record_proxy_approval(
        self,
        grant_id: str,
        approval_id: str,
        approval_reference: str,
        category: WorkflowCategory | str,
        original_approver: Party,
        proxy_approver: Party,
        action: ProxyAction | str,
        delegation_kind: DelegationKind | str | None = None,
        comment: str | None = None,
        amount: Decimal | int | float | str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProxyApprovalRecord:
        """
        Record that a delegate acted under a grant

        Nothing is validated beyond the grant's existence: run
        validate_limits() first. The record stands even if the grant is
        revoked a moment later.

        Args:
            grant_id: Grant the delegate acted under
            approval_id: Id of the approvable item
            approval_reference: Human reference, e.g. "PR-2024-0901"
            category: Item category
            original_approver: Party the delegate acted for
            proxy_approver: The delegate
            action: approved, rejected or returned
            delegation_kind: Defaults to the grant's kind
            comment: Free-text comment
            amount: Item amount
            metadata: Extra caller data stored with the record

        Raises:
            GrantNotFound: If the grant does not exist
        """
        with self._lock:
            self.refresh()
            grant = self._require_grant(grant_id)

            command = RecordProxyApproval(
                approval_id=approval_id,
                approval_reference=approval_reference,
                category=WorkflowCategory(category),
                original_approver=original_approver,
                proxy_approver=proxy_approver,
                grant_id=grant_id,
                delegation_kind=DelegationKind(delegation_kind or grant.delegation_kind),
                action=ProxyAction(action),
                comment=comment,
                amount=_as_decimal(amount),
                metadata=metadata or {},
            )

            command_id = generate_id()
            with LogOperation(
                logger,
                "record_proxy_approval",
                correlation_id=command_id,
                grant_id=grant_id,
                proxy_approver_id=proxy_approver.user_id,
                action=command.action.value,
                amount=str(command.amount) if command.amount is not None else None,
            ):
                append = retry_on_version_conflict(
                    max_attempts=self.policy.ledger_retry_attempts
                )(self._append_proxy_approval)
                record = append(command, command_id)

            proxy_approvals_total.labels(
                action=record.action.value, category=record.category.value
            ).inc()
            return record

    def _append_proxy_approval(
        self, command: RecordProxyApproval, command_id: str
    ) -> ProxyApprovalRecord:
        """One attempt at writing ledger record + grant audit event atomically"""
        try:
            grant = self._require_grant(command.grant_id)
            ledger_event, audit_event = self.handlers.handle_record_proxy_approval(
                command, command_id, grant.version
            )
            stored = self.event_store.append_many(
                [
                    (ledger_event.stream_id, 0, [ledger_event]),
                    (audit_event.stream_id, grant.version, [audit_event]),
                ]
            )
        except StreamVersionConflict:
            self.refresh()
            raise

        self._integrate(stored)
        record_event = next(e for e in stored if e.stream_type == LEDGER_STREAM)
        return self.proxy_ledger.get(record_event.stream_id)

    @track_command_duration("sweep_expirations")
    def sweep_expirations(self, now: datetime | None = None) -> SweepResult:
        """
        Retire every grant whose window has elapsed

        Safe to run concurrently from several workers; each grant is
        transitioned at most once.

        Args:
            now: Clock reading to evaluate against (defaults to time provider)
        """
        now = now or self.time_provider.now()
        with self._lock:
            self.refresh()
            result = self.sweeper.sweep(self.grant_registry.pending_expiry(), now)
            self._integrate(result.events)
            update_grant_status_metrics(self.grant_registry.count_by_status(now, self._tz))
        return result
