"""
Approval Delegation CLI

Command-line interface for the approval delegation engine.
Provides commands for grant management, checks, the proxy ledger,
history and the expiry sweep.

Usage:
    apdel init --db delegations.db
    apdel grant create --from-id user-sw-001 --from-name "Sarah Williams" \\
        --to-id user-jw-001 --to-name "James Wilson" --kind temporary \\
        --start 2024-01-10 --end 2024-01-12 --max-amount 1000
    apdel validate --id <grant_id> --amount 800
    apdel proxy record --grant <grant_id> --approval-id apr-1 --reference PR-2024-0901 ...
    apdel sweep
    apdel history
"""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from approval_delegation.delegation.models import (
    DelegationGrant,
    DelegationLimits,
    Party,
    WorkflowCategory,
)
from approval_delegation.engine import DelegationEngine
from approval_delegation.kernel.errors import DelegationError
from approval_delegation.kernel.logging import configure_logging

# Configure logging (human-readable console output)
configure_logging(json_output=False, log_level="WARNING")

app = typer.Typer(
    name="apdel",
    help="Approval delegation - hand off approval authority with limits and a full audit trail",
    add_completion=False,
)

# Sub-apps
grant_app = typer.Typer(help="Delegation grant lifecycle commands")
proxy_app = typer.Typer(help="Proxy approval ledger commands")

app.add_typer(grant_app, name="grant")
app.add_typer(proxy_app, name="proxy")

# Global state
DEFAULT_DB = Path(".apdel.db")

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


def get_engine(db_path: Optional[Path] = None) -> DelegationEngine:
    """Get engine instance"""
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'apdel init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    return DelegationEngine(str(db))


@contextmanager
def delegation_errors() -> Iterator[None]:
    """Report engine errors on stderr and exit with status 1"""
    try:
        yield
    except DelegationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e


def echo_json(data: object) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def echo_grant(engine: DelegationEngine, grant: DelegationGrant) -> None:
    """Print a grant with its derived status"""
    status = grant.status(engine.time_provider.now(), engine.policy.business_timezone)
    typer.echo(f"  {grant.grant_id} [{status.value}]")
    typer.echo(f"    From: {grant.delegator.name} ({grant.delegator.user_id})")
    typer.echo(f"    To: {grant.delegate.name} ({grant.delegate.user_id})")
    typer.echo(f"    Kind: {grant.delegation_kind.value}")
    typer.echo(f"    Window: {grant.start_date} → {grant.end_date}")
    if grant.workflow_categories:
        typer.echo(
            "    Categories: "
            + ", ".join(sorted(c.value for c in grant.workflow_categories))
        )
    for line in engine.limits_summary(grant):
        typer.echo(f"    Limit: {line}")
    if grant.revoke_reason:
        typer.echo(f"    Revoke reason: {grant.revoke_reason}")


# Initialization command


@app.command()
def init(
    db: Annotated[
        Path,
        typer.Option(help="Database path"),
    ] = DEFAULT_DB,
) -> None:
    """Initialize a new delegation database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    DelegationEngine(str(db))
    typer.echo(f"✓ Initialized delegation database: {db}")


# Grant commands


@grant_app.command("create")
def grant_create(
    from_id: Annotated[str, typer.Option("--from-id", help="Delegator user ID")],
    from_name: Annotated[str, typer.Option("--from-name", help="Delegator display name")],
    to_id: Annotated[str, typer.Option("--to-id", help="Delegate user ID")],
    to_name: Annotated[str, typer.Option("--to-name", help="Delegate display name")],
    start: Annotated[str, typer.Option("--start", help="First day (YYYY-MM-DD)")],
    end: Annotated[str, typer.Option("--end", help="Last day (YYYY-MM-DD)")],
    kind: Annotated[
        str, typer.Option("--kind", help="Delegation kind (full, specific, temporary)")
    ] = "full",
    from_role: Annotated[Optional[str], typer.Option("--from-role")] = None,
    to_role: Annotated[Optional[str], typer.Option("--to-role")] = None,
    category: Annotated[
        Optional[list[str]],
        typer.Option("--category", help="Workflow category in scope (repeatable)"),
    ] = None,
    workflow: Annotated[
        Optional[list[str]],
        typer.Option("--workflow", help="Workflow item ID in scope (repeatable)"),
    ] = None,
    max_amount: Annotated[Optional[str], typer.Option("--max-amount")] = None,
    max_per_day: Annotated[Optional[int], typer.Option("--max-per-day")] = None,
    max_tier: Annotated[Optional[int], typer.Option("--max-tier")] = None,
    exclude_category: Annotated[
        Optional[list[str]],
        typer.Option("--exclude-category", help="Excluded category (repeatable)"),
    ] = None,
    exclude_high_priority: Annotated[bool, typer.Option("--exclude-high-priority")] = False,
    no_re_delegation: Annotated[bool, typer.Option("--no-re-delegation")] = False,
    same_department: Annotated[bool, typer.Option("--same-department")] = False,
    justification_above: Annotated[Optional[str], typer.Option("--justification-above")] = None,
    reason: Annotated[Optional[str], typer.Option("--reason")] = None,
    db: DbOption = None,
) -> None:
    """Create a delegation grant"""
    engine = get_engine(db)

    limits = None
    if any(
        [
            max_amount,
            max_per_day,
            max_tier,
            exclude_category,
            exclude_high_priority,
            no_re_delegation,
            same_department,
            justification_above,
        ]
    ):
        limits = DelegationLimits(
            max_approval_amount=Decimal(max_amount) if max_amount else None,
            max_approvals_per_day=max_per_day,
            max_tier_level=max_tier,
            exclude_categories=frozenset(WorkflowCategory(c) for c in exclude_category or ()),
            exclude_high_priority=exclude_high_priority,
            allow_re_delegation=not no_re_delegation,
            restrict_to_same_department=same_department,
            require_justification_above=(
                Decimal(justification_above) if justification_above else None
            ),
        )

    with delegation_errors():
        eligibility = engine.check_re_delegation(to_id)
        if not eligibility.can_receive:
            typer.echo(f"Error: Re-delegation not allowed: {eligibility.reason}", err=True)
            raise typer.Exit(1)
        if eligibility.reason:
            typer.echo(f"⚠️  {eligibility.reason}")

        for conflict in engine.check_conflicts(from_id, start, end):
            typer.echo(
                f"⚠️  Overlaps {conflict.grant_id} "
                f"({conflict.start_date} → {conflict.end_date}, to {conflict.delegate.name})"
            )

        grant = engine.create_grant(
            delegator=Party(user_id=from_id, name=from_name, role=from_role),
            delegate=Party(user_id=to_id, name=to_name, role=to_role),
            delegation_kind=kind,
            start_date=start,
            end_date=end,
            workflow_ids=workflow,
            workflow_categories=category,
            limits=limits,
            reason=reason,
        )

    typer.echo(f"✓ Created grant: {grant.grant_id}")
    echo_grant(engine, grant)


@grant_app.command("list")
def grant_list(
    status: Annotated[
        Optional[str],
        typer.Option("--status", help="Filter by status (scheduled, active, expired, revoked)"),
    ] = None,
    from_id: Annotated[Optional[str], typer.Option("--from-id")] = None,
    to_id: Annotated[Optional[str], typer.Option("--to-id")] = None,
    kind: Annotated[Optional[str], typer.Option("--kind")] = None,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """List grants, newest first"""
    engine = get_engine(db)

    grants = engine.list_grants(status=status, delegator_id=from_id, delegate_id=to_id, kind=kind)

    if json_output:
        echo_json([g.model_dump(mode="json") for g in grants])
        return

    if not grants:
        typer.echo(f"No grants{f' with status {status}' if status else ''}")
        return

    typer.echo(f"Grants ({len(grants)}):")
    for grant in grants:
        echo_grant(engine, grant)


@grant_app.command("show")
def grant_show(
    grant_id: Annotated[str, typer.Option("--id", help="Grant ID")],
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show one grant"""
    engine = get_engine(db)

    grant = engine.get_grant(grant_id)
    if grant is None:
        typer.echo(f"Error: Grant not found: {grant_id}", err=True)
        raise typer.Exit(1)

    if json_output:
        echo_json(grant.model_dump(mode="json"))
    else:
        echo_grant(engine, grant)


@grant_app.command("update")
def grant_update(
    grant_id: Annotated[str, typer.Option("--id", help="Grant ID")],
    by: Annotated[str, typer.Option("--by", help="Who is making the change")],
    start: Annotated[Optional[str], typer.Option("--start")] = None,
    end: Annotated[Optional[str], typer.Option("--end")] = None,
    kind: Annotated[Optional[str], typer.Option("--kind")] = None,
    reason: Annotated[Optional[str], typer.Option("--reason")] = None,
    category: Annotated[
        Optional[list[str]],
        typer.Option("--category", help="Replace categories in scope (repeatable)"),
    ] = None,
    db: DbOption = None,
) -> None:
    """Modify a live grant"""
    engine = get_engine(db)

    patch: dict[str, object] = {}
    if kind:
        patch["delegation_kind"] = kind
    if start:
        patch["start_date"] = start
    if end:
        patch["end_date"] = end
    if category:
        patch["workflow_categories"] = category
    if reason:
        patch["reason"] = reason

    if not patch:
        typer.echo("Error: Nothing to update", err=True)
        raise typer.Exit(1)

    with delegation_errors():
        grant = engine.update_grant(grant_id, patch, updated_by=by)

    typer.echo(f"✓ Updated grant: {grant.grant_id}")
    echo_grant(engine, grant)


@grant_app.command("revoke")
def grant_revoke(
    grant_id: Annotated[str, typer.Option("--id", help="Grant ID")],
    by: Annotated[str, typer.Option("--by", help="Who is revoking")],
    reason: Annotated[Optional[str], typer.Option("--reason")] = None,
    db: DbOption = None,
) -> None:
    """Revoke a grant"""
    engine = get_engine(db)

    with delegation_errors():
        grant = engine.revoke_grant(grant_id, revoked_by=by, reason=reason)

    typer.echo(f"✓ Revoked grant: {grant.grant_id}")
    if grant.revoke_reason:
        typer.echo(f"  Reason: {grant.revoke_reason}")


@grant_app.command("delete")
def grant_delete(
    grant_id: Annotated[str, typer.Option("--id", help="Grant ID")],
    db: DbOption = None,
) -> None:
    """Delete a grant and its audit trail (proxy records are kept)"""
    engine = get_engine(db)

    with delegation_errors():
        engine.delete_grant(grant_id)

    typer.echo(f"✓ Deleted grant: {grant_id}")


@grant_app.command("audit")
def grant_audit(
    grant_id: Annotated[str, typer.Option("--id", help="Grant ID")],
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show a grant's audit trail, most recent first"""
    engine = get_engine(db)

    with delegation_errors():
        entries = engine.audit_trail(grant_id)

    if json_output:
        echo_json([e.model_dump(mode="json") for e in entries])
        return

    typer.echo(f"Audit trail for {grant_id} ({len(entries)} entries):")
    for entry in entries:
        typer.echo(f"  {entry.occurred_at} {entry.action.value}: {entry.detail} ({entry.actor_name})")


# Checks


@app.command()
def conflicts(
    from_id: Annotated[str, typer.Option("--from-id", help="Delegator user ID")],
    start: Annotated[str, typer.Option("--start")],
    end: Annotated[str, typer.Option("--end")],
    exclude: Annotated[Optional[str], typer.Option("--exclude", help="Grant ID to ignore")] = None,
    db: DbOption = None,
) -> None:
    """List live grants from a delegator overlapping a window"""
    engine = get_engine(db)

    found = engine.check_conflicts(from_id, start, end, exclude_grant_id=exclude)
    if not found:
        typer.echo("✓ No conflicting grants")
        return

    typer.echo(f"⚠️  {len(found)} conflicting grant(s):")
    for grant in found:
        echo_grant(engine, grant)


@app.command()
def eligibility(
    candidate: Annotated[str, typer.Option("--candidate", help="Candidate delegate user ID")],
    db: DbOption = None,
) -> None:
    """Check whether a user may receive a new grant"""
    engine = get_engine(db)

    result = engine.check_re_delegation(candidate)
    if result.can_receive:
        typer.echo(f"✓ {candidate} can receive a delegation")
    else:
        typer.echo(f"✗ {candidate} cannot receive a delegation")
    if result.reason:
        typer.echo(f"  {result.reason}")

    if not result.can_receive:
        raise typer.Exit(1)


@app.command()
def validate(
    grant_id: Annotated[str, typer.Option("--id", help="Grant ID")],
    amount: Annotated[Optional[str], typer.Option("--amount")] = None,
    category: Annotated[Optional[str], typer.Option("--category")] = None,
    tier: Annotated[Optional[int], typer.Option("--tier")] = None,
    db: DbOption = None,
) -> None:
    """Validate a proposed approval against a grant's limits"""
    engine = get_engine(db)

    with delegation_errors():
        result = engine.validate_limits(grant_id, amount=amount, category=category, tier_level=tier)

    typer.echo("✓ Valid" if result.is_valid else "✗ Invalid")
    for error in result.errors:
        typer.echo(f"  Error: {error}")
    for warning in result.warnings:
        typer.echo(f"  Warning: {warning}")

    if not result.is_valid:
        raise typer.Exit(1)


# Proxy ledger commands


@proxy_app.command("record")
def proxy_record(
    grant_id: Annotated[str, typer.Option("--grant", help="Grant ID")],
    approval_id: Annotated[str, typer.Option("--approval-id")],
    reference: Annotated[str, typer.Option("--reference", help="e.g. PR-2024-0901")],
    category: Annotated[str, typer.Option("--category")],
    action: Annotated[str, typer.Option("--action", help="approved, rejected or returned")],
    original_id: Annotated[str, typer.Option("--original-id")],
    original_name: Annotated[str, typer.Option("--original-name")],
    proxy_id: Annotated[str, typer.Option("--proxy-id")],
    proxy_name: Annotated[str, typer.Option("--proxy-name")],
    amount: Annotated[Optional[str], typer.Option("--amount")] = None,
    comment: Annotated[Optional[str], typer.Option("--comment")] = None,
    db: DbOption = None,
) -> None:
    """Record an action a delegate took under a grant"""
    engine = get_engine(db)

    with delegation_errors():
        record = engine.record_proxy_approval(
            grant_id=grant_id,
            approval_id=approval_id,
            approval_reference=reference,
            category=category,
            original_approver=Party(user_id=original_id, name=original_name),
            proxy_approver=Party(user_id=proxy_id, name=proxy_name),
            action=action,
            comment=comment,
            amount=amount,
        )

    typer.echo(f"✓ Recorded proxy approval: {record.record_id}")
    typer.echo(f"  {record.action.value} {record.approval_reference} for {original_name}")


@proxy_app.command("list")
def proxy_list(
    grant_id: Annotated[Optional[str], typer.Option("--grant")] = None,
    original_id: Annotated[Optional[str], typer.Option("--original-id")] = None,
    proxy_id: Annotated[Optional[str], typer.Option("--proxy-id")] = None,
    category: Annotated[Optional[str], typer.Option("--category")] = None,
    action: Annotated[Optional[str], typer.Option("--action")] = None,
    date_to: Annotated[Optional[str], typer.Option("--date-to", help="YYYY-MM-DD")] = None,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """List proxy approvals, newest first"""
    engine = get_engine(db)

    records = engine.proxy_approvals(
        grant_id=grant_id,
        original_approver_id=original_id,
        proxy_approver_id=proxy_id,
        category=category,
        action=action,
        date_to=date_to,
    )

    if json_output:
        echo_json([r.model_dump(mode="json") for r in records])
        return

    typer.echo(f"Proxy approvals ({len(records)}):")
    for record in records:
        amount = f" {record.amount}" if record.amount is not None else ""
        typer.echo(
            f"  {record.action_at} {record.action.value} {record.approval_reference}{amount} "
            f"by {record.proxy_approver.name} for {record.original_approver.name}"
        )


@proxy_app.command("stats")
def proxy_stats(
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show proxy approval statistics"""
    engine = get_engine(db)

    stats = engine.proxy_approval_stats()

    if json_output:
        echo_json(stats.model_dump(mode="json"))
        return

    typer.echo(f"Total: {stats.total}")
    typer.echo(f"  Approved: {stats.approved}")
    typer.echo(f"  Rejected: {stats.rejected}")
    typer.echo(f"  Returned: {stats.returned}")
    typer.echo(f"  Total amount: {stats.total_amount}")
    for row in stats.top_proxy_approvers:
        typer.echo(f"  {row.name}: {row.count} ({row.amount})")


# History and monitoring


@app.command()
def history(
    from_id: Annotated[Optional[str], typer.Option("--from-id")] = None,
    to_id: Annotated[Optional[str], typer.Option("--to-id")] = None,
    status: Annotated[Optional[str], typer.Option("--status", help="expired or revoked")] = None,
    kind: Annotated[Optional[str], typer.Option("--kind")] = None,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show ended grants with the approvals processed under them"""
    engine = get_engine(db)

    entries = engine.history(delegator_id=from_id, delegate_id=to_id, status=status, kind=kind)

    if json_output:
        echo_json([h.model_dump(mode="json") for h in entries])
        return

    typer.echo(f"Delegation history ({len(entries)}):")
    for entry in entries:
        typer.echo(
            f"  {entry.grant_id} [{entry.status.value}] "
            f"{entry.delegator.name} → {entry.delegate.name}, ended {entry.actual_end_date}: "
            f"{entry.approvals_processed} approvals, {entry.total_approval_amount} total"
        )


@app.command()
def sweep(
    db: DbOption = None,
) -> None:
    """Expire grants whose window has elapsed"""
    engine = get_engine(db)

    result = engine.sweep_expirations()

    typer.echo(f"✓ {result.summary()}")
    for grant_id in result.expired_grant_ids:
        typer.echo(f"  Expired: {grant_id}")
    for grant_id in result.failed_grant_ids:
        typer.echo(f"  Failed: {grant_id}", err=True)


@app.command()
def stats(
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show delegation statistics"""
    engine = get_engine(db)

    result = engine.stats()

    if json_output:
        echo_json(result.model_dump(mode="json"))
        return

    typer.echo(f"Total grants: {result.total}")
    typer.echo(f"  Active: {result.active}")
    typer.echo(f"  Scheduled: {result.scheduled}")
    typer.echo(f"  Expired: {result.expired}")
    typer.echo(f"Approvals via delegation: {result.approvals_via_delegation}")
    if result.top_delegators:
        typer.echo("Top delegators:")
        for row in result.top_delegators:
            typer.echo(f"  {row.name}: {row.count}")
    if result.top_delegates:
        typer.echo("Top delegates:")
        for row in result.top_delegates:
            typer.echo(f"  {row.name}: {row.count}")


@app.command()
def ooo(
    user: Annotated[str, typer.Option("--user", help="User ID")],
    db: DbOption = None,
) -> None:
    """Show whether a user is out of office via their own delegation"""
    engine = get_engine(db)

    status = engine.out_of_office(user)
    if status.is_out_of_office and status.active_grant is not None:
        typer.echo(f"{user} is out of office, delegated to {status.active_grant.delegate.name}")
        typer.echo(f"  Until: {status.active_grant.end_date}")
    else:
        typer.echo(f"{user} is not out of office")


@app.command()
def expiring(
    user: Annotated[str, typer.Option("--user", help="User ID")],
    days: Annotated[Optional[int], typer.Option("--days", help="Look-ahead in days")] = None,
    db: DbOption = None,
) -> None:
    """List Active grants involving a user that end soon"""
    engine = get_engine(db)

    grants = engine.expiring_grants(user, days=days)
    if not grants:
        typer.echo("No grants expiring soon")
        return

    typer.echo(f"Expiring soon ({len(grants)}):")
    for grant in grants:
        echo_grant(engine, grant)


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
