"""
Tests for the DelegationEngine façade

Exercises the public query and command surface the approval workflows use.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from approval_delegation import DelegationEngine
from approval_delegation.delegation.directory import InMemoryCandidateDirectory
from approval_delegation.delegation.models import (
    AuditAction,
    CandidateUser,
    DelegationLimits,
    DelegationStatus,
    Party,
    WorkflowCategory,
)
from approval_delegation.kernel.errors import (
    ConflictingGrantBlocked,
    GrantAlreadyTerminal,
    GrantNotFound,
    InvalidDelegationWindow,
    InvalidGrantUpdate,
)
from approval_delegation.kernel.policy import DelegationPolicy
from approval_delegation.kernel.time import TestTimeProvider

MID_TRIP = datetime(2024, 1, 11, 10, 0, tzinfo=timezone.utc)


def test_engine_requires_a_store() -> None:
    with pytest.raises(ValueError):
        DelegationEngine()


def test_create_and_get_grant(engine: DelegationEngine, sarah: Party, james: Party) -> None:
    grant = engine.create_grant(
        sarah,
        james,
        "specific",
        "2024-01-10",
        "2024-01-12",
        workflow_ids=["wf-1"],
        workflow_categories=["purchase", WorkflowCategory.TIME_OFF],
        reason="Conference",
    )

    assert grant.grant_id.startswith("del-")
    assert grant.created_by == "Sarah Williams"
    assert grant.workflow_categories == frozenset(
        {WorkflowCategory.PURCHASE, WorkflowCategory.TIME_OFF}
    )
    assert engine.get_grant(grant.grant_id) == grant
    assert engine.get_grant("del-unknown") is None


def test_create_rejects_malformed_input(engine: DelegationEngine, sarah: Party, james: Party) -> None:
    with pytest.raises(InvalidDelegationWindow):
        engine.create_grant(sarah, james, "full", "2024-01-12", "2024-01-10")
    with pytest.raises(InvalidDelegationWindow):
        engine.create_grant(sarah, sarah, "full", "2024-01-10", "2024-01-12")
    with pytest.raises(ValueError):
        engine.create_grant(sarah, james, "forever", "2024-01-10", "2024-01-12")
    assert engine.list_grants() == []


def test_policy_can_block_overlaps(
    temp_db, test_time: TestTimeProvider, sarah: Party, james: Party, maria: Party
) -> None:
    strict = DelegationEngine(
        temp_db,
        policy=DelegationPolicy(block_conflicting_grants=True),
        time_provider=test_time,
    )
    strict.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")

    with pytest.raises(ConflictingGrantBlocked):
        strict.create_grant(sarah, maria, "full", "2024-01-11", "2024-01-13")

    # A later window is fine
    strict.create_grant(sarah, maria, "full", "2024-01-13", "2024-01-14")


def test_list_grants_filters(
    engine: DelegationEngine, test_time: TestTimeProvider, sarah: Party, james: Party, maria: Party
) -> None:
    current = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")
    test_time.advance_seconds(1)
    future = engine.create_grant(maria, james, "temporary", "2024-02-01", "2024-02-03")
    test_time.set_time(MID_TRIP)

    assert engine.list_grants() == [future, current]
    assert engine.list_grants(status="active") == [current]
    assert engine.list_grants(status=DelegationStatus.SCHEDULED) == [future]
    assert engine.list_grants(delegator_id=maria.user_id) == [future]
    assert engine.list_grants(delegate_id=james.user_id) == [future, current]
    assert engine.list_grants(kind="temporary") == [future]


def test_active_grants_and_out_of_office(
    engine: DelegationEngine, test_time: TestTimeProvider, sarah: Party, james: Party
) -> None:
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")

    assert not engine.out_of_office(sarah.user_id).is_out_of_office

    test_time.set_time(MID_TRIP)
    assert engine.active_grants_for(sarah.user_id).delegated_from == [grant]
    assert engine.active_grants_for(james.user_id).delegated_to == [grant]

    status = engine.out_of_office(sarah.user_id)
    assert status.is_out_of_office
    assert status.active_grant == grant
    assert not engine.out_of_office(james.user_id).is_out_of_office


def test_grants_for_item(
    engine: DelegationEngine, test_time: TestTimeProvider, sarah: Party, james: Party, maria: Party
) -> None:
    everything = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")
    purchases = engine.create_grant(
        maria, james, "specific", "2024-01-10", "2024-01-12", workflow_categories=["purchase"]
    )
    one_workflow = engine.create_grant(
        Party(user_id="user-tb-001", name="Tom Baker"),
        james,
        "specific",
        "2024-01-10",
        "2024-01-12",
        workflow_ids=["wf-travel-7"],
    )

    assert engine.grants_for_item(james.user_id, category="purchase") == []

    def covering(**item) -> set[str]:
        return {g.grant_id for g in engine.grants_for_item(james.user_id, **item)}

    test_time.set_time(MID_TRIP)
    assert covering(category="purchase") == {everything.grant_id, purchases.grant_id}
    assert covering(category=WorkflowCategory.CONTRACT) == {everything.grant_id}
    assert covering(category="contract", workflow_id="wf-travel-7") == {
        everything.grant_id,
        one_workflow.grant_id,
    }
    assert engine.grants_for_item(sarah.user_id, category="purchase") == []


def test_expiring_grants(
    engine: DelegationEngine, test_time: TestTimeProvider, sarah: Party, james: Party, maria: Party
) -> None:
    soon = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")
    later = engine.create_grant(maria, james, "full", "2024-01-10", "2024-01-31")
    test_time.set_time(MID_TRIP)

    assert engine.expiring_grants(james.user_id) == [soon]
    assert later in engine.expiring_grants(james.user_id, days=30)
    assert engine.expiring_grants("user-nobody") == []


def test_update_grant(engine: DelegationEngine, sarah: Party, james: Party) -> None:
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")

    updated = engine.update_grant(
        grant.grant_id,
        {
            "end_date": "2024-01-15",
            "limits": DelegationLimits(max_approval_amount=Decimal("2000")),
        },
        updated_by="Sarah Williams",
    )

    assert updated.end_date == date(2024, 1, 15)
    assert updated.limits.max_approval_amount == Decimal("2000")
    assert updated.version == 2
    modified = engine.audit_trail(grant.grant_id)[0]
    assert modified.detail == "Delegation updated: end_date, limits"
    assert modified.actor_name == "Sarah Williams"
    assert modified.actor_id == sarah.user_id


def test_update_rejects_malformed_values(engine: DelegationEngine, sarah: Party, james: Party) -> None:
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")
    with pytest.raises(ValidationError):
        engine.update_grant(grant.grant_id, {"end_date": "not-a-date"}, updated_by="Sarah")


@pytest.mark.parametrize("field", ["workflow_ids", "delegation_kind"])
def test_refused_patch_leaves_store_readable(
    temp_db, test_time: TestTimeProvider, engine: DelegationEngine, sarah: Party, james: Party, field: str
) -> None:
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")

    with pytest.raises(InvalidGrantUpdate):
        engine.update_grant(grant.grant_id, {field: None}, updated_by="Sarah")

    assert len(engine.event_store.load_stream(grant.grant_id)) == 1
    reopened = DelegationEngine(temp_db, time_provider=test_time)
    assert reopened.get_grant(grant.grant_id) == grant


@pytest.mark.parametrize("field", ["start_date", "end_date"])
def test_update_cannot_clear_window_dates(
    engine: DelegationEngine, sarah: Party, james: Party, field: str
) -> None:
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")

    with pytest.raises(InvalidDelegationWindow):
        engine.update_grant(grant.grant_id, {field: None}, updated_by="Sarah")

    assert engine.get_grant(grant.grant_id).version == 1


def test_swept_grant_cannot_be_extended(
    engine: DelegationEngine, sarah: Party, james: Party
) -> None:
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")
    sweep = engine.sweep_expirations(now=datetime(2024, 1, 20, tzinfo=timezone.utc))
    assert sweep.expired_grant_ids == [grant.grant_id]

    # The clock still reads 2024-01-09; the sweep's marker decides
    with pytest.raises(GrantAlreadyTerminal) as exc_info:
        engine.update_grant(grant.grant_id, {"end_date": "2024-01-30"}, updated_by="Sarah")
    assert exc_info.value.status == "expired"

    actions = [entry.action for entry in engine.audit_trail(grant.grant_id)]
    assert actions.count(AuditAction.EXPIRED) == 1
    assert AuditAction.MODIFIED not in actions


def test_commands_on_unknown_grant_raise_not_found(engine: DelegationEngine, sarah: Party) -> None:
    with pytest.raises(GrantNotFound):
        engine.update_grant("del-missing", {"reason": "x"}, updated_by="Sarah")
    with pytest.raises(GrantNotFound):
        engine.revoke_grant("del-missing", revoked_by="Sarah")
    with pytest.raises(GrantNotFound):
        engine.delete_grant("del-missing")
    with pytest.raises(GrantNotFound):
        engine.audit_trail("del-missing")
    with pytest.raises(GrantNotFound):
        engine.validate_limits("del-missing", amount=1)


def test_revoke_is_terminal(engine: DelegationEngine, sarah: Party, james: Party) -> None:
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")

    revoked = engine.revoke_grant(grant.grant_id, revoked_by="Sarah Williams", reason="Plans changed")

    assert revoked.status(datetime(2024, 1, 11, tzinfo=timezone.utc)) == DelegationStatus.REVOKED
    assert engine.audit_trail(grant.grant_id)[0].detail == "Revoked: Plans changed"
    with pytest.raises(GrantAlreadyTerminal):
        engine.revoke_grant(grant.grant_id, revoked_by="Sarah Williams")
    with pytest.raises(GrantAlreadyTerminal):
        engine.update_grant(grant.grant_id, {"reason": "again"}, updated_by="Sarah Williams")


def test_expired_grant_cannot_be_revoked_even_before_sweep(
    engine: DelegationEngine, test_time: TestTimeProvider, sarah: Party, james: Party
) -> None:
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")
    test_time.set_time(datetime(2024, 1, 20, tzinfo=timezone.utc))

    with pytest.raises(GrantAlreadyTerminal) as exc_info:
        engine.revoke_grant(grant.grant_id, revoked_by="Sarah Williams")
    assert exc_info.value.status == "expired"


def test_validate_limits_by_id_and_summary(engine: DelegationEngine, sarah: Party, james: Party) -> None:
    limits = DelegationLimits(
        max_approval_amount=Decimal("5000"),
        exclude_categories=frozenset({WorkflowCategory.CONTRACT}),
        max_tier_level=2,
    )
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12", limits=limits)

    result = engine.validate_limits(grant.grant_id, amount="4600", category="contract", tier_level=3)

    assert not result.is_valid
    assert len(result.errors) == 2
    assert result.warnings == ["Amount is approaching the delegation limit of 5,000"]
    assert engine.limits_summary(grant) == [
        "Max amount: 5,000",
        "Max tier level: 2",
        "Excludes: Contracts",
    ]
    assert engine.validate_limits(
        engine.create_grant(sarah, james, "full", "2024-03-01", "2024-03-02"), amount=10**9
    ).is_valid


def test_eligible_delegates(temp_db, test_time: TestTimeProvider) -> None:
    directory = InMemoryCandidateDirectory(
        [
            CandidateUser(user_id="u1", name="James Wilson", email="james@acme.test", role="Manager"),
            CandidateUser(user_id="u2", name="Maria Garcia", email="maria@acme.test", role="Controller"),
            CandidateUser(
                user_id="u3",
                name="Tom Intern",
                email="tom@acme.test",
                role="Intern",
                can_receive_delegation=False,
            ),
        ]
    )
    engine = DelegationEngine(temp_db, time_provider=test_time, directory=directory)

    assert [c.user_id for c in engine.eligible_delegates()] == ["u1", "u2"]
    assert [c.user_id for c in engine.eligible_delegates(exclude_user_id="u1")] == ["u2"]
    assert [c.user_id for c in engine.eligible_delegates(search="CONTROL")] == ["u2"]
    assert [c.user_id for c in engine.eligible_delegates(search="acme")] == ["u1", "u2"]


def test_stats(
    engine: DelegationEngine, test_time: TestTimeProvider, sarah: Party, james: Party, maria: Party
) -> None:
    a = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")
    engine.create_grant(sarah, maria, "full", "2024-02-10", "2024-02-12")
    engine.create_grant(maria, james, "full", "2024-01-01", "2024-01-05")
    test_time.set_time(MID_TRIP)
    engine.record_proxy_approval(
        grant_id=a.grant_id,
        approval_id="apr-1",
        approval_reference="TO-2024-0003",
        category="time_off",
        original_approver=sarah,
        proxy_approver=james,
        action="rejected",
        comment="Overlaps quarter close",
    )

    stats = engine.stats()

    assert (stats.total, stats.active, stats.scheduled, stats.expired) == (3, 1, 1, 1)
    assert stats.approvals_via_delegation == 1
    assert stats.top_delegators[0].user_id == sarah.user_id
    assert stats.top_delegators[0].count == 2
    assert engine.grant_counts()["active"] == 1

    ledger = engine.proxy_approval_stats()
    assert ledger.total == 1
    assert ledger.rejected == 1
    assert ledger.by_category == {"time_off": 1}


def test_proxy_approvals_filters(
    engine: DelegationEngine, test_time: TestTimeProvider, sarah: Party, james: Party
) -> None:
    grant = engine.create_grant(sarah, james, "full", "2024-01-10", "2024-01-12")
    test_time.set_time(MID_TRIP)
    first = engine.record_proxy_approval(
        grant_id=grant.grant_id,
        approval_id="apr-1",
        approval_reference="PR-1",
        category="purchase",
        original_approver=sarah,
        proxy_approver=james,
        action="approved",
        amount="120.50",
        metadata={"cost_center": "CC-42"},
    )
    test_time.advance_days(1)
    second = engine.record_proxy_approval(
        grant_id=grant.grant_id,
        approval_id="apr-2",
        approval_reference="EX-2",
        category="expense",
        original_approver=sarah,
        proxy_approver=james,
        action="returned",
    )

    assert engine.proxy_approvals() == [second, first]
    assert engine.proxy_approvals(category="purchase") == [first]
    assert engine.proxy_approvals(action="returned") == [second]
    assert engine.proxy_approvals(proxy_approver_id=james.user_id) == [second, first]
    assert engine.proxy_approvals(original_approver_id="someone-else") == []
    assert engine.proxy_approvals(date_to="2024-01-11") == [first]
    assert first.amount == Decimal("120.50")
    assert first.metadata == {"cost_center": "CC-42"}


def test_record_on_unknown_grant(engine: DelegationEngine, sarah: Party, james: Party) -> None:
    with pytest.raises(GrantNotFound):
        engine.record_proxy_approval(
            grant_id="del-missing",
            approval_id="apr-1",
            approval_reference="PR-1",
            category="purchase",
            original_approver=sarah,
            proxy_approver=james,
            action="approved",
        )


def test_record_after_concurrent_grant_change(
    temp_db, test_time: TestTimeProvider, sarah: Party, james: Party
) -> None:
    """The ledger write uses the grant version another instance produced"""
    engine = DelegationEngine(temp_db, time_provider=test_time)
    other = DelegationEngine(temp_db, time_provider=test_time)
    grant = engine.create_grant(sarah, james, "full", "2024-01-09", "2024-01-12")
    other.refresh()
    other.update_grant(grant.grant_id, {"reason": "Extended"}, updated_by=sarah.name)

    # engine's refresh picks the change up before the first attempt
    rec = engine.record_proxy_approval(
        grant_id=grant.grant_id,
        approval_id="apr-1",
        approval_reference="PR-1",
        category="purchase",
        original_approver=sarah,
        proxy_approver=james,
        action="approved",
    )

    assert engine.get_grant(grant.grant_id).version == 3
    assert engine.proxy_approvals() == [rec]
