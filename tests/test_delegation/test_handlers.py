"""
Tests for delegation command handlers

Handlers turn commands into events and never touch the store, so these
tests work entirely on in-memory grants.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from approval_delegation.delegation.commands import (
    CreateGrant,
    RecordProxyApproval,
    RevokeGrant,
    UpdateGrant,
)
from approval_delegation.delegation.handlers import (
    DelegationCommandHandlers,
    expiry_command_id,
)
from approval_delegation.delegation.models import (
    DelegationKind,
    DelegationLimits,
    DelegationStatus,
    Party,
    ProxyAction,
    WorkflowCategory,
)
from approval_delegation.kernel.errors import (
    ConflictingGrantBlocked,
    GrantAlreadyTerminal,
    InvalidDelegationWindow,
    InvalidGrantUpdate,
)
from approval_delegation.kernel.policy import DelegationPolicy
from approval_delegation.kernel.time import TestTimeProvider
from tests.helpers import make_grant


def create_command(delegator: Party, delegate: Party, **overrides) -> CreateGrant:
    fields = {
        "delegator": delegator,
        "delegate": delegate,
        "delegation_kind": DelegationKind.TEMPORARY,
        "start_date": date(2024, 1, 10),
        "end_date": date(2024, 1, 12),
        "reason": "Business trip",
    }
    fields.update(overrides)
    return CreateGrant(**fields)


def test_create_grant_emits_delegation_created(
    handlers: DelegationCommandHandlers, sarah: Party, james: Party
) -> None:
    events = handlers.handle_create_grant(
        create_command(
            sarah,
            james,
            workflow_categories=frozenset({WorkflowCategory.TIME_OFF, WorkflowCategory.PURCHASE}),
            limits=DelegationLimits(max_approval_amount=Decimal("1000")),
        ),
        "cmd-1",
        None,
        [],
    )

    assert len(events) == 1
    event = events[0]
    assert event.event_type == "DelegationCreated"
    assert event.stream_type == "delegation"
    assert event.stream_id.startswith("del-")
    assert event.version == 1
    assert event.command_id == "cmd-1"
    assert event.actor_id == sarah.user_id

    payload = event.payload
    assert payload["grant_id"] == event.stream_id
    assert payload["created_by"] == "Sarah Williams"
    assert payload["workflow_categories"] == ["purchase", "time_off"]
    assert payload["limits"]["max_approval_amount"] == "1000"
    assert payload["start_date"] == "2024-01-10"


def test_create_grant_rejects_bad_window(
    handlers: DelegationCommandHandlers, sarah: Party, james: Party
) -> None:
    with pytest.raises(InvalidDelegationWindow):
        handlers.handle_create_grant(
            create_command(sarah, james, start_date=date(2024, 1, 12), end_date=date(2024, 1, 10)),
            "cmd-1",
            None,
            [],
        )


def test_create_grant_rejects_self_delegation(
    handlers: DelegationCommandHandlers, sarah: Party
) -> None:
    with pytest.raises(InvalidDelegationWindow):
        handlers.handle_create_grant(create_command(sarah, sarah), "cmd-1", None, [])


def test_overlap_is_allowed_by_default(
    handlers: DelegationCommandHandlers, sarah: Party, james: Party
) -> None:
    existing = make_grant(sarah.user_id, "user-mg-001")

    events = handlers.handle_create_grant(
        create_command(sarah, james), "cmd-1", None, [existing]
    )

    assert len(events) == 1


def test_overlap_blocked_when_policy_says_so(
    test_time: TestTimeProvider, sarah: Party, james: Party
) -> None:
    handlers = DelegationCommandHandlers(
        test_time, DelegationPolicy(block_conflicting_grants=True)
    )
    existing = make_grant(sarah.user_id, "user-mg-001")

    with pytest.raises(ConflictingGrantBlocked) as exc_info:
        handlers.handle_create_grant(create_command(sarah, james), "cmd-1", None, [existing])

    assert exc_info.value.conflicting_ids == [existing.grant_id]


def test_update_lists_changed_fields_in_order(handlers: DelegationCommandHandlers) -> None:
    grant = make_grant("user-sw-001", "user-jw-001")
    command = UpdateGrant(
        grant_id=grant.grant_id, reason="Extended trip", end_date=date(2024, 1, 14)
    )

    events = handlers.handle_update_grant(command, "cmd-2", "Sarah Williams", grant)

    payload = events[0].payload
    assert events[0].event_type == "DelegationModified"
    assert events[0].version == grant.version + 1
    assert payload["changed_fields"] == ["end_date", "reason"]
    assert payload["changes"] == {"end_date": "2024-01-14", "reason": "Extended trip"}
    assert payload["modified_by"] == "Sarah Williams"


def test_update_validates_resulting_window(handlers: DelegationCommandHandlers) -> None:
    grant = make_grant("user-sw-001", "user-jw-001")

    with pytest.raises(InvalidDelegationWindow):
        handlers.handle_update_grant(
            UpdateGrant(grant_id=grant.grant_id, end_date=date(2024, 1, 5)),
            "cmd-2",
            "Sarah Williams",
            grant,
        )


def test_update_refuses_terminal_grant(
    handlers: DelegationCommandHandlers, test_time: TestTimeProvider
) -> None:
    grant = make_grant("user-sw-001", "user-jw-001", revoked_at=test_time.now())

    with pytest.raises(GrantAlreadyTerminal):
        handlers.handle_update_grant(
            UpdateGrant(grant_id=grant.grant_id, reason="x"), "cmd-2", "Sarah", grant
        )


def test_update_refuses_swept_grant_the_clock_calls_active(
    handlers: DelegationCommandHandlers, test_time: TestTimeProvider
) -> None:
    test_time.set_time(datetime(2024, 1, 11, 10, 0, tzinfo=timezone.utc))
    grant = make_grant("user-sw-001", "user-jw-001").model_copy(
        update={"status_marker": DelegationStatus.EXPIRED}
    )

    with pytest.raises(GrantAlreadyTerminal) as exc_info:
        handlers.handle_update_grant(
            UpdateGrant(grant_id=grant.grant_id, end_date=date(2024, 1, 30)),
            "cmd-2",
            "Sarah",
            grant,
        )
    assert exc_info.value.status == "expired"

    with pytest.raises(GrantAlreadyTerminal):
        handlers.handle_revoke_grant(
            RevokeGrant(grant_id=grant.grant_id, revoked_by="Sarah"), "cmd-3", grant
        )


@pytest.mark.parametrize("field", ["start_date", "end_date"])
def test_update_refuses_clearing_window_dates(
    handlers: DelegationCommandHandlers, field: str
) -> None:
    grant = make_grant("user-sw-001", "user-jw-001")

    with pytest.raises(InvalidDelegationWindow, match=f"{field} cannot be cleared"):
        handlers.handle_update_grant(
            UpdateGrant(grant_id=grant.grant_id, **{field: None}), "cmd-2", "Sarah", grant
        )


@pytest.mark.parametrize("field", ["delegation_kind", "workflow_ids", "workflow_categories"])
def test_update_refuses_clearing_required_fields(
    handlers: DelegationCommandHandlers, field: str
) -> None:
    grant = make_grant("user-sw-001", "user-jw-001")

    with pytest.raises(InvalidGrantUpdate) as exc_info:
        handlers.handle_update_grant(
            UpdateGrant(grant_id=grant.grant_id, **{field: None}), "cmd-2", "Sarah", grant
        )

    assert exc_info.value.grant_id == grant.grant_id
    assert exc_info.value.fields == [field]


def test_revoke_emits_delegation_revoked(
    handlers: DelegationCommandHandlers, test_time: TestTimeProvider
) -> None:
    grant = make_grant("user-sw-001", "user-jw-001")

    events = handlers.handle_revoke_grant(
        RevokeGrant(grant_id=grant.grant_id, revoked_by="Sarah Williams", reason="Back early"),
        "cmd-3",
        grant,
    )

    payload = events[0].payload
    assert events[0].event_type == "DelegationRevoked"
    assert payload["revoked_by"] == "Sarah Williams"
    assert payload["reason"] == "Back early"
    assert datetime.fromisoformat(payload["revoked_at"]) == test_time.now()


def test_revoke_refuses_expired_grant(handlers: DelegationCommandHandlers) -> None:
    grant = make_grant("user-sw-001", "user-jw-001", date(2024, 1, 1), date(2024, 1, 3))

    with pytest.raises(GrantAlreadyTerminal) as exc_info:
        handlers.handle_revoke_grant(
            RevokeGrant(grant_id=grant.grant_id, revoked_by="Sarah"), "cmd-3", grant
        )

    assert exc_info.value.status == "expired"


def test_expire_only_lapsed_unmarked_grants(handlers: DelegationCommandHandlers) -> None:
    now = datetime(2024, 1, 13, 0, 0, 1, tzinfo=timezone.utc)
    lapsed = make_grant("user-sw-001", "user-jw-001")
    running = make_grant("user-sw-001", "user-jw-001", date(2024, 1, 10), date(2024, 1, 20))
    marked = lapsed.model_copy(update={"status_marker": DelegationStatus.EXPIRED})

    events = handlers.handle_expire_grant(lapsed, now)

    assert len(events) == 1
    assert events[0].event_type == "DelegationExpired"
    assert events[0].command_id == expiry_command_id(lapsed.grant_id)
    assert events[0].actor_id == "system"
    assert handlers.handle_expire_grant(running, now) == []
    assert handlers.handle_expire_grant(marked, now) == []


def test_record_proxy_approval_emits_ledger_and_audit_events(
    handlers: DelegationCommandHandlers, sarah: Party, james: Party
) -> None:
    command = RecordProxyApproval(
        approval_id="apr-1",
        approval_reference="PR-2024-0901",
        category=WorkflowCategory.PURCHASE,
        original_approver=sarah,
        proxy_approver=james,
        grant_id="del-1",
        delegation_kind=DelegationKind.TEMPORARY,
        action=ProxyAction.APPROVED,
        amount=Decimal("800"),
    )

    ledger_event, audit_event = handlers.handle_record_proxy_approval(command, "cmd-4", 3)

    assert ledger_event.stream_type == "proxy_approval"
    assert ledger_event.version == 1
    assert ledger_event.payload["amount"] == "800"
    assert audit_event.stream_id == "del-1"
    assert audit_event.version == 4
    assert audit_event.payload["record_id"] == ledger_event.stream_id
    assert ledger_event.command_id == audit_event.command_id == "cmd-4"


def test_delete_emits_tombstone(handlers: DelegationCommandHandlers) -> None:
    grant = make_grant("user-sw-001", "user-jw-001")

    events = handlers.handle_delete_grant(grant, "cmd-5", "admin")

    assert events[0].event_type == "DelegationDeleted"
    assert events[0].stream_id == f"tombstone-{grant.grant_id}"
    assert events[0].payload["grant_id"] == grant.grant_id
