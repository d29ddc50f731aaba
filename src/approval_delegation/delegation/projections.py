"""
Delegation Projections - Read models built from events

Projections are denormalized views optimized for queries.
They are rebuilt from the event log, making them disposable and rebuildable.

Fun fact: History entries are never written anywhere - they are folded
from the grant registry and the proxy ledger every time someone asks, so
they can't drift from the ledger they summarize.
"""

from collections import Counter
from datetime import date, datetime
from decimal import Decimal

from approval_delegation.delegation.models import (
    AuditAction,
    DelegationAuditEntry,
    DelegationGrant,
    DelegationHistoryEntry,
    DelegationKind,
    DelegationStats,
    DelegationStatus,
    PartyCount,
    ProxyAction,
    ProxyApprovalRecord,
    ProxyApprovalStats,
    ProxyApproverTotal,
    WorkflowCategory,
)
from approval_delegation.kernel.events import Event
from approval_delegation.kernel.time import end_of_day, ensure_aware, local_date

GRANT_EVENT_TYPES = frozenset(
    {
        "DelegationCreated",
        "DelegationModified",
        "DelegationRevoked",
        "DelegationExpired",
        "DelegationApprovalUsed",
        "DelegationDeleted",
    }
)


class GrantRegistry:
    """
    Projection: current state of every grant

    Grants are frozen models; each event swaps in a new instance so
    concurrent readers see either the old grant or the new one.
    """

    def __init__(self) -> None:
        self.grants: dict[str, DelegationGrant] = {}

    def apply_event(self, event: Event) -> None:
        """Apply an event to update projection state"""
        if event.event_type == "DelegationCreated":
            payload = event.payload
            self.grants[payload["grant_id"]] = DelegationGrant(
                grant_id=payload["grant_id"],
                delegator=payload["delegator"],
                delegate=payload["delegate"],
                delegation_kind=payload["delegation_kind"],
                workflow_ids=payload.get("workflow_ids", []),
                workflow_categories=payload.get("workflow_categories", []),
                start_date=payload["start_date"],
                end_date=payload["end_date"],
                limits=payload.get("limits"),
                reason=payload.get("reason"),
                created_at=payload["created_at"],
                created_by=payload["created_by"],
                version=event.version,
            )
            return

        if event.event_type == "DelegationDeleted":
            self.grants.pop(event.payload["grant_id"], None)
            return

        grant = self.grants.get(event.stream_id)
        if grant is None:
            return

        if event.event_type == "DelegationModified":
            merged = grant.model_dump(mode="json")
            merged.update(event.payload["changes"])
            merged["updated_at"] = event.payload["modified_at"]
            merged["version"] = event.version
            self.grants[grant.grant_id] = DelegationGrant.model_validate(merged)

        elif event.event_type == "DelegationRevoked":
            self.grants[grant.grant_id] = grant.model_copy(
                update={
                    "revoked_at": datetime.fromisoformat(event.payload["revoked_at"]),
                    "revoked_by": event.payload["revoked_by"],
                    "revoke_reason": event.payload.get("reason"),
                    "status_marker": DelegationStatus.REVOKED,
                    "version": event.version,
                }
            )

        elif event.event_type == "DelegationExpired":
            self.grants[grant.grant_id] = grant.model_copy(
                update={
                    "status_marker": DelegationStatus.EXPIRED,
                    "version": event.version,
                }
            )

        elif event.event_type == "DelegationApprovalUsed":
            self.grants[grant.grant_id] = grant.model_copy(update={"version": event.version})

    def get(self, grant_id: str) -> DelegationGrant | None:
        """Get grant by ID"""
        return self.grants.get(grant_id)

    def snapshot(self) -> list[DelegationGrant]:
        """All grants, newest first by created_at"""
        return sorted(self.grants.values(), key=lambda g: g.created_at, reverse=True)

    def pending_expiry(self) -> list[DelegationGrant]:
        """Grants the sweep still has to look at (no terminal marker yet)"""
        return [
            g
            for g in self.grants.values()
            if g.status_marker is None or not g.status_marker.is_terminal
        ]

    def count_by_status(self, now: datetime, tz_name: str = "UTC") -> dict[str, int]:
        """Grant count for every status value (zeros included)"""
        counts = {status.value: 0 for status in DelegationStatus}
        for grant in self.grants.values():
            counts[grant.status(now, tz_name).value] += 1
        return counts

    def stats(
        self,
        now: datetime,
        approvals_via_delegation: int,
        top_n: int = 5,
        tz_name: str = "UTC",
    ) -> DelegationStats:
        """Dashboard counters and the busiest delegators and delegates"""
        counts = self.count_by_status(now, tz_name)
        grants = sorted(self.grants.values(), key=lambda g: g.created_at)

        def leaderboard(side: str) -> list[PartyCount]:
            rows: dict[str, PartyCount] = {}
            for grant in grants:
                party = getattr(grant, side)
                row = rows.get(party.user_id)
                if row is None:
                    rows[party.user_id] = PartyCount(
                        user_id=party.user_id, name=party.name, count=1
                    )
                else:
                    rows[party.user_id] = row.model_copy(update={"count": row.count + 1})
            return sorted(rows.values(), key=lambda r: r.count, reverse=True)[:top_n]

        return DelegationStats(
            total=len(grants),
            active=counts[DelegationStatus.ACTIVE.value],
            scheduled=counts[DelegationStatus.SCHEDULED.value],
            expired=counts[DelegationStatus.EXPIRED.value],
            approvals_via_delegation=approvals_via_delegation,
            top_delegators=leaderboard("delegator"),
            top_delegates=leaderboard("delegate"),
        )


class DelegationAuditLog:
    """
    Projection: audit trail per grant

    Every grant-stream event becomes one entry. A hard delete drops the
    grant's entries along with it.
    """

    def __init__(self) -> None:
        self.entries: dict[str, list[DelegationAuditEntry]] = {}
        self._versions: dict[str, dict[str, int]] = {}

    def apply_event(self, event: Event) -> None:
        """Apply an event to update projection state"""
        payload = event.payload

        if event.event_type == "DelegationDeleted":
            self.entries.pop(payload["grant_id"], None)
            self._versions.pop(payload["grant_id"], None)
            return

        if event.event_type == "DelegationCreated":
            entry = DelegationAuditEntry(
                entry_id=event.event_id,
                grant_id=event.stream_id,
                action=AuditAction.CREATED,
                actor_name=payload["created_by"],
                actor_id=payload["delegator"]["user_id"],
                occurred_at=event.occurred_at,
                detail=(
                    f"Delegation created from {payload['delegator']['name']} "
                    f"to {payload['delegate']['name']}"
                ),
            )

        elif event.event_type == "DelegationModified":
            entry = DelegationAuditEntry(
                entry_id=event.event_id,
                grant_id=event.stream_id,
                action=AuditAction.MODIFIED,
                actor_name=payload["modified_by"],
                actor_id=event.actor_id,
                occurred_at=event.occurred_at,
                detail=f"Delegation updated: {', '.join(payload['changed_fields'])}",
            )

        elif event.event_type == "DelegationRevoked":
            reason = payload.get("reason")
            entry = DelegationAuditEntry(
                entry_id=event.event_id,
                grant_id=event.stream_id,
                action=AuditAction.REVOKED,
                actor_name=payload["revoked_by"],
                actor_id=event.actor_id,
                occurred_at=event.occurred_at,
                detail=f"Revoked: {reason}" if reason else "Delegation revoked",
            )

        elif event.event_type == "DelegationExpired":
            entry = DelegationAuditEntry(
                entry_id=event.event_id,
                grant_id=event.stream_id,
                action=AuditAction.EXPIRED,
                actor_name="System",
                actor_id=event.actor_id,
                occurred_at=event.occurred_at,
                detail="Delegation auto-expired based on end date",
            )

        elif event.event_type == "DelegationApprovalUsed":
            action = payload["action"]
            entry = DelegationAuditEntry(
                entry_id=event.event_id,
                grant_id=event.stream_id,
                action=AuditAction.APPROVAL_USED,
                actor_name=payload["proxy_approver"]["name"],
                actor_id=payload["proxy_approver"]["user_id"],
                occurred_at=event.occurred_at,
                detail=(
                    f"{action[:1].upper()}{action[1:]} {payload['approval_reference']} "
                    f"on behalf of {payload['original_approver_name']}"
                ),
                approval_id=payload["approval_id"],
                approval_reference=payload["approval_reference"],
                record_id=payload["record_id"],
            )

        else:
            return

        self.entries.setdefault(entry.grant_id, []).append(entry)
        self._versions.setdefault(entry.grant_id, {})[entry.entry_id] = event.version

    def trail(self, grant_id: str) -> list[DelegationAuditEntry]:
        """Entries for a grant, most recent first"""
        versions = self._versions.get(grant_id, {})
        return sorted(
            self.entries.get(grant_id, []),
            key=lambda e: (ensure_aware(e.occurred_at), versions.get(e.entry_id, 0)),
            reverse=True,
        )

    def count_action(self, action: AuditAction) -> int:
        """Total entries of one action across all grants"""
        return sum(
            1 for entries in self.entries.values() for e in entries if e.action == action
        )


class ProxyApprovalLedger:
    """
    Projection: every proxy approval ever recorded

    Append-only. Neither revocation nor hard deletion of a grant removes
    its records.
    """

    def __init__(self) -> None:
        self.records: dict[str, ProxyApprovalRecord] = {}

    def apply_event(self, event: Event) -> None:
        """Apply an event to update projection state"""
        if event.event_type == "ProxyApprovalRecorded":
            record = ProxyApprovalRecord.model_validate(event.payload)
            self.records.setdefault(record.record_id, record)

    def get(self, record_id: str) -> ProxyApprovalRecord | None:
        return self.records.get(record_id)

    def query(
        self,
        *,
        grant_id: str | None = None,
        original_approver_id: str | None = None,
        proxy_approver_id: str | None = None,
        category: WorkflowCategory | None = None,
        action: ProxyAction | None = None,
        date_from: datetime | None = None,
        date_to: date | None = None,
        tz_name: str = "UTC",
    ) -> list[ProxyApprovalRecord]:
        """
        Filter the ledger, newest first

        date_to is a calendar date and includes the whole day.
        """
        result = list(self.records.values())

        if grant_id:
            result = [r for r in result if r.grant_id == grant_id]
        if original_approver_id:
            result = [r for r in result if r.original_approver.user_id == original_approver_id]
        if proxy_approver_id:
            result = [r for r in result if r.proxy_approver.user_id == proxy_approver_id]
        if category:
            result = [r for r in result if r.category == category]
        if action:
            result = [r for r in result if r.action == action]
        if date_from:
            lower = ensure_aware(date_from)
            result = [r for r in result if ensure_aware(r.action_at) >= lower]
        if date_to:
            upper = end_of_day(date_to, tz_name)
            result = [r for r in result if ensure_aware(r.action_at) <= upper]

        result.sort(key=lambda r: ensure_aware(r.action_at), reverse=True)
        return result

    def totals_by_grant(self) -> dict[str, tuple[int, Decimal]]:
        """Count and summed amount (missing amounts count as zero) per grant"""
        totals: dict[str, tuple[int, Decimal]] = {}
        for record in self.records.values():
            count, amount = totals.get(record.grant_id, (0, Decimal("0")))
            totals[record.grant_id] = (count + 1, amount + (record.amount or Decimal("0")))
        return totals

    def stats(self, top_n: int = 5) -> ProxyApprovalStats:
        """Totals by action and category, plus the busiest proxy approvers"""
        records = sorted(self.records.values(), key=lambda r: ensure_aware(r.action_at))
        actions = Counter(r.action for r in records)
        by_category = Counter(r.category.value for r in records)

        by_proxy: dict[str, ProxyApproverTotal] = {}
        for record in records:
            proxy = record.proxy_approver
            row = by_proxy.get(proxy.user_id) or ProxyApproverTotal(
                user_id=proxy.user_id, name=proxy.name, count=0, amount=Decimal("0")
            )
            by_proxy[proxy.user_id] = row.model_copy(
                update={
                    "count": row.count + 1,
                    "amount": row.amount + (record.amount or Decimal("0")),
                }
            )

        return ProxyApprovalStats(
            total=len(records),
            approved=actions[ProxyAction.APPROVED],
            rejected=actions[ProxyAction.REJECTED],
            returned=actions[ProxyAction.RETURNED],
            total_amount=sum((r.amount or Decimal("0") for r in records), Decimal("0")),
            by_category=dict(by_category),
            top_proxy_approvers=sorted(
                by_proxy.values(), key=lambda r: r.count, reverse=True
            )[:top_n],
        )


def build_history(
    grants: list[DelegationGrant],
    ledger: ProxyApprovalLedger,
    now: datetime,
    *,
    delegator_id: str | None = None,
    delegate_id: str | None = None,
    status: DelegationStatus | None = None,
    kind: DelegationKind | None = None,
    created_from: datetime | None = None,
    created_to: date | None = None,
    tz_name: str = "UTC",
) -> list[DelegationHistoryEntry]:
    """
    Derive history entries for every grant that has ended

    Aggregates are folded from the ledger on each call. Newest first by
    created_at; created_to includes the whole day.
    """
    totals = ledger.totals_by_grant()
    entries = []

    for grant in grants:
        grant_status = grant.status(now, tz_name)
        if not grant_status.is_terminal:
            continue

        if grant.revoked_at is not None:
            actual_end_date = local_date(grant.revoked_at, tz_name)
            ended_at = ensure_aware(grant.revoked_at)
        else:
            actual_end_date = grant.end_date
            ended_at = end_of_day(grant.end_date, tz_name).replace(microsecond=0)

        count, amount = totals.get(grant.grant_id, (0, Decimal("0")))
        entries.append(
            DelegationHistoryEntry(
                grant_id=grant.grant_id,
                delegator=grant.delegator,
                delegate=grant.delegate,
                delegation_kind=grant.delegation_kind,
                start_date=grant.start_date,
                end_date=grant.end_date,
                actual_end_date=actual_end_date,
                ended_at=ended_at,
                status=grant_status,
                reason=grant.reason,
                revoke_reason=grant.revoke_reason,
                approvals_processed=count,
                total_approval_amount=amount,
                created_at=grant.created_at,
            )
        )

    if delegator_id:
        entries = [h for h in entries if h.delegator.user_id == delegator_id]
    if delegate_id:
        entries = [h for h in entries if h.delegate.user_id == delegate_id]
    if status:
        entries = [h for h in entries if h.status == status]
    if kind:
        entries = [h for h in entries if h.delegation_kind == kind]
    if created_from:
        lower = ensure_aware(created_from)
        entries = [h for h in entries if ensure_aware(h.created_at) >= lower]
    if created_to:
        upper = end_of_day(created_to, tz_name)
        entries = [h for h in entries if ensure_aware(h.created_at) <= upper]

    entries.sort(key=lambda h: ensure_aware(h.created_at), reverse=True)
    return entries
