"""
Business Trip Example - a delegation from handoff to history

This example demonstrates:
- Handing approval authority to a colleague with an amount limit
- Checking conflicts and re-delegation before creating a grant
- Validating and recording proxy approvals under the grant
- The expiry sweep retiring the grant once the trip is over
- The audit trail and history summary left behind
"""

import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from approval_delegation import DelegationEngine
from approval_delegation.delegation.models import DelegationLimits, Party
from approval_delegation.kernel.time import TestTimeProvider


def example_business_trip():
    print("\n=== Sarah's three-day trip ===\n")

    sarah = Party(user_id="user-sw-001", name="Sarah Williams", role="Finance Director")
    james = Party(user_id="user-jw-001", name="James Wilson", role="Finance Manager")

    clock = TestTimeProvider(datetime(2024, 1, 9, 16, 0, tzinfo=timezone.utc))

    with tempfile.TemporaryDirectory() as tmpdir:
        engine = DelegationEngine(Path(tmpdir) / "trip.db", time_provider=clock)

        # Before handing off: anything overlapping, and may James receive?
        conflicts = engine.check_conflicts(sarah.user_id, "2024-01-10", "2024-01-12")
        eligibility = engine.check_re_delegation(james.user_id)
        print(f"Conflicting grants: {len(conflicts)}")
        print(f"James can receive: {eligibility.can_receive}")

        grant = engine.create_grant(
            delegator=sarah,
            delegate=james,
            delegation_kind="temporary",
            start_date="2024-01-10",
            end_date="2024-01-12",
            limits=DelegationLimits(max_approval_amount=Decimal("1000")),
            reason="Business trip",
        )
        print(f"\n✓ Grant created: {grant.grant_id}")
        print(f"  Status: {grant.status(clock.now()).value}")
        for line in engine.limits_summary(grant):
            print(f"  Limit: {line}")

        # Mid-trip
        clock.set_time(datetime(2024, 1, 11, 10, 0, tzinfo=timezone.utc))
        print(f"\n{clock.now():%Y-%m-%d %H:%M} - James works the approval queue")

        for reference, amount in (("PR-2024-0901", "800"), ("PR-2024-0902", "1200")):
            result = engine.validate_limits(grant, amount=amount)
            if not result.is_valid:
                print(f"  ✗ {reference}: {'; '.join(result.errors)}")
                continue
            engine.record_proxy_approval(
                grant_id=grant.grant_id,
                approval_id=f"apr-{reference}",
                approval_reference=reference,
                category="purchase",
                original_approver=sarah,
                proxy_approver=james,
                action="approved",
                amount=amount,
            )
            print(f"  ✓ {reference}: approved on behalf of {sarah.name}")

        # Trip over, the scheduler runs the sweep
        clock.set_time(datetime(2024, 1, 13, 8, 0, tzinfo=timezone.utc))
        sweep = engine.sweep_expirations()
        print(f"\n{sweep.summary()}")

        print("\nAudit trail (most recent first):")
        for entry in engine.audit_trail(grant.grant_id):
            print(f"  {entry.action.value:<14} {entry.detail} ({entry.actor_name})")

        print("\nHistory:")
        for item in engine.history(delegator_id=sarah.user_id):
            print(
                f"  {item.delegator.name} → {item.delegate.name} [{item.status.value}] "
                f"{item.approvals_processed} approval(s), total {item.total_approval_amount}"
            )


if __name__ == "__main__":
    example_business_trip()
