"""
Delegation Handlers - Command→Event transformation

Handlers are the decision-making layer. They:
1. Receive current state (grants from projections)
2. Validate invariants
3. Generate events if valid
4. Return events for append to event store

Fun fact: Handlers should be "almost boring" - all the interesting
logic is in invariants (testable) and projections (rebuildable).
Handlers just orchestrate!
"""

from datetime import datetime

from pydantic import ValidationError

from approval_delegation.delegation.commands import (
    CreateGrant,
    RecordProxyApproval,
    RevokeGrant,
    UpdateGrant,
)
from approval_delegation.delegation.events import (
    GRANT_STREAM,
    LEDGER_STREAM,
    TOMBSTONE_STREAM,
    DelegationApprovalUsed,
    DelegationCreated,
    DelegationDeleted,
    DelegationExpired,
    DelegationModified,
    DelegationRevoked,
    ProxyApprovalRecorded,
)
from approval_delegation.delegation.invariants import (
    ensure_not_terminal,
    find_conflicts,
    validate_window,
)
from approval_delegation.delegation.models import DelegationGrant, DelegationStatus
from approval_delegation.kernel.errors import (
    ConflictingGrantBlocked,
    InvalidDelegationWindow,
    InvalidGrantUpdate,
)
from approval_delegation.kernel.events import Event, create_event
from approval_delegation.kernel.ids import generate_id
from approval_delegation.kernel.policy import DelegationPolicy
from approval_delegation.kernel.time import TimeProvider

SYSTEM_ACTOR_ID = "system"
SYSTEM_ACTOR_NAME = "System"


def expiry_command_id(grant_id: str) -> str:
    """Deterministic command id so racing sweepers collapse to one event"""
    return f"sweep-expire-{grant_id}"


def tombstone_stream_id(grant_id: str) -> str:
    return f"tombstone-{grant_id}"


class DelegationCommandHandlers:
    """
    Command handlers for the delegation module

    Handlers convert commands into events, enforcing invariants.
    They receive current state from the caller and never touch the store.
    """

    def __init__(
        self,
        time_provider: TimeProvider,
        policy: DelegationPolicy,
    ) -> None:
        """
        Initialize handlers with dependencies

        Args:
            time_provider: For timestamps (injectable for testing)
            policy: Delegation policy parameters
        """
        self.time_provider = time_provider
        self.policy = policy

    def handle_create_grant(
        self,
        command: CreateGrant,
        command_id: str,
        actor_id: str | None,
        grants: list[DelegationGrant],
    ) -> list[Event]:
        """
        Handle CreateGrant command

        Validates:
        - start_date <= end_date
        - delegator differs from delegate
        - window length within policy maximum (if set)
        - no overlapping live grants (only if policy blocks conflicts)

        Args:
            command: CreateGrant command
            command_id: Idempotency key
            actor_id: Who issued the command
            grants: Current grants (from projection)

        Returns:
            List of events to append

        Raises:
            InvalidDelegationWindow: If window or parties are malformed
            ConflictingGrantBlocked: If policy blocks overlaps and one exists
        """
        now = self.time_provider.now()

        validate_window(
            command.start_date,
            command.end_date,
            command.delegator.user_id,
            command.delegate.user_id,
            self.policy,
        )

        if self.policy.block_conflicting_grants:
            conflicts = find_conflicts(
                grants,
                command.delegator.user_id,
                command.start_date,
                command.end_date,
                now,
                tz_name=self.policy.business_timezone,
            )
            if conflicts:
                raise ConflictingGrantBlocked(
                    command.delegator.user_id, [g.grant_id for g in conflicts]
                )

        grant_id = generate_id("del")

        event_payload = DelegationCreated(
            grant_id=grant_id,
            delegator=command.delegator,
            delegate=command.delegate,
            delegation_kind=command.delegation_kind,
            workflow_ids=sorted(command.workflow_ids),
            workflow_categories=sorted(command.workflow_categories, key=lambda c: c.value),
            start_date=command.start_date,
            end_date=command.end_date,
            limits=command.limits,
            reason=command.reason,
            created_at=now,
            created_by=command.delegator.name,
        ).model_dump(mode="json")

        event = create_event(
            event_id=generate_id(),
            stream_id=grant_id,
            stream_type=GRANT_STREAM,
            event_type="DelegationCreated",
            occurred_at=now,
            command_id=command_id,
            actor_id=actor_id or command.delegator.user_id,
            payload=event_payload,
            version=1,
        )

        return [event]

    def handle_update_grant(
        self,
        command: UpdateGrant,
        command_id: str,
        updated_by: str,
        grant: DelegationGrant,
    ) -> list[Event]:
        """
        Handle UpdateGrant command

        The resulting window is validated as a whole, so moving only the
        end date before the existing start date is refused.

        Raises:
            GrantAlreadyTerminal: If the grant is Revoked or Expired
            InvalidDelegationWindow: If the resulting window is malformed
            InvalidGrantUpdate: If a required field would be cleared
        """
        now = self.time_provider.now()
        tz_name = self.policy.business_timezone

        ensure_not_terminal(grant, now, tz_name)

        changed = command.changed_fields()
        for name in ("start_date", "end_date"):
            if name in changed and getattr(command, name) is None:
                raise InvalidDelegationWindow(
                    f"{name} cannot be cleared",
                    start_date=grant.start_date,
                    end_date=grant.end_date,
                )
        start_date = command.start_date if "start_date" in changed else grant.start_date
        end_date = command.end_date if "end_date" in changed else grant.end_date
        validate_window(
            start_date,
            end_date,
            grant.delegator.user_id,
            grant.delegate.user_id,
            self.policy,
        )

        changes = command.model_dump(mode="json", include=set(changed))
        merged = grant.model_dump(mode="json")
        merged.update(changes)
        try:
            DelegationGrant.model_validate(merged)
        except ValidationError as e:
            failed = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            raise InvalidGrantUpdate(
                grant.grant_id, failed, f"invalid value for {', '.join(failed)}"
            ) from e

        event_payload = DelegationModified(
            grant_id=grant.grant_id,
            changes=changes,
            changed_fields=changed,
            modified_at=now,
            modified_by=updated_by,
        ).model_dump(mode="json")

        event = create_event(
            event_id=generate_id(),
            stream_id=grant.grant_id,
            stream_type=GRANT_STREAM,
            event_type="DelegationModified",
            occurred_at=now,
            command_id=command_id,
            actor_id=grant.delegator.user_id,
            payload=event_payload,
            version=grant.version + 1,
        )

        return [event]

    def handle_revoke_grant(
        self,
        command: RevokeGrant,
        command_id: str,
        grant: DelegationGrant,
    ) -> list[Event]:
        """
        Handle RevokeGrant command

        Raises:
            GrantAlreadyTerminal: If the grant is already Revoked or Expired
        """
        now = self.time_provider.now()

        ensure_not_terminal(grant, now, self.policy.business_timezone)

        event_payload = DelegationRevoked(
            grant_id=grant.grant_id,
            revoked_at=now,
            revoked_by=command.revoked_by,
            reason=command.reason,
        ).model_dump(mode="json")

        event = create_event(
            event_id=generate_id(),
            stream_id=grant.grant_id,
            stream_type=GRANT_STREAM,
            event_type="DelegationRevoked",
            occurred_at=now,
            command_id=command_id,
            actor_id=grant.delegator.user_id,
            payload=event_payload,
            version=grant.version + 1,
        )

        return [event]

    def handle_expire_grant(
        self,
        grant: DelegationGrant,
        now: datetime,
    ) -> list[Event]:
        """
        Build the DelegationExpired event for a lapsed grant

        Returns an empty list when the grant is already marked terminal or
        its derived status is not Expired at `now`.
        """
        if grant.status_marker is not None and grant.status_marker.is_terminal:
            return []
        if grant.status(now, self.policy.business_timezone) != DelegationStatus.EXPIRED:
            return []

        event_payload = DelegationExpired(
            grant_id=grant.grant_id,
            expired_at=now,
            end_date=grant.end_date,
        ).model_dump(mode="json")

        event = create_event(
            event_id=generate_id(),
            stream_id=grant.grant_id,
            stream_type=GRANT_STREAM,
            event_type="DelegationExpired",
            occurred_at=now,
            command_id=expiry_command_id(grant.grant_id),
            actor_id=SYSTEM_ACTOR_ID,
            payload=event_payload,
            version=grant.version + 1,
        )

        return [event]

    def handle_record_proxy_approval(
        self,
        command: RecordProxyApproval,
        command_id: str,
        grant_version: int,
    ) -> tuple[Event, Event]:
        """
        Handle RecordProxyApproval command

        Produces the ledger record (its own stream, version 1) and the
        ApprovalUsed audit event on the grant stream. No limits check: the
        ledger records what the caller already decided.

        Args:
            command: RecordProxyApproval command
            command_id: Idempotency key shared by both events
            grant_version: Current version of the grant stream

        Returns:
            (ledger event, grant audit event)
        """
        now = self.time_provider.now()
        record_id = generate_id("proxy")

        record_payload = ProxyApprovalRecorded(
            record_id=record_id,
            approval_id=command.approval_id,
            approval_reference=command.approval_reference,
            category=command.category,
            original_approver=command.original_approver,
            proxy_approver=command.proxy_approver,
            grant_id=command.grant_id,
            delegation_kind=command.delegation_kind,
            action=command.action,
            action_at=now,
            comment=command.comment,
            amount=command.amount,
            metadata=command.metadata,
        ).model_dump(mode="json")

        ledger_event = create_event(
            event_id=generate_id(),
            stream_id=record_id,
            stream_type=LEDGER_STREAM,
            event_type="ProxyApprovalRecorded",
            occurred_at=now,
            command_id=command_id,
            actor_id=command.proxy_approver.user_id,
            payload=record_payload,
            version=1,
        )

        audit_payload = DelegationApprovalUsed(
            grant_id=command.grant_id,
            record_id=record_id,
            approval_id=command.approval_id,
            approval_reference=command.approval_reference,
            action=command.action,
            proxy_approver=command.proxy_approver,
            original_approver_name=command.original_approver.name,
            used_at=now,
        ).model_dump(mode="json")

        audit_event = create_event(
            event_id=generate_id(),
            stream_id=command.grant_id,
            stream_type=GRANT_STREAM,
            event_type="DelegationApprovalUsed",
            occurred_at=now,
            command_id=command_id,
            actor_id=command.proxy_approver.user_id,
            payload=audit_payload,
            version=grant_version + 1,
        )

        return ledger_event, audit_event

    def handle_delete_grant(
        self,
        grant: DelegationGrant,
        command_id: str,
        deleted_by: str | None,
    ) -> list[Event]:
        """
        Build the tombstone announcing a hard delete to other instances

        The grant's own stream is removed by the caller; the tombstone
        lives in a separate stream so it survives that removal.
        """
        now = self.time_provider.now()

        event_payload = DelegationDeleted(
            grant_id=grant.grant_id,
            deleted_at=now,
            deleted_by=deleted_by,
        ).model_dump(mode="json")

        event = create_event(
            event_id=generate_id(),
            stream_id=tombstone_stream_id(grant.grant_id),
            stream_type=TOMBSTONE_STREAM,
            event_type="DelegationDeleted",
            occurred_at=now,
            command_id=command_id,
            actor_id=deleted_by,
            payload=event_payload,
            version=1,
        )

        return [event]
