"""
CLI Integration Tests

Drives the apdel commands end-to-end against a temporary database. The CLI
runs on the real clock, so grant windows are built around today.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from typer.testing import CliRunner

from approval_delegation.cli.main import app

runner = CliRunner()

TODAY = datetime.now(timezone.utc).date()


def day(offset: int) -> str:
    return (TODAY + timedelta(days=offset)).isoformat()


@pytest.fixture
def db(tmp_path: Path) -> str:
    db_path = tmp_path / "cli.db"
    result = runner.invoke(app, ["init", "--db", str(db_path)])
    assert result.exit_code == 0
    assert "Initialized delegation database" in result.stdout
    return str(db_path)


def invoke(db: str, *args: str):
    return runner.invoke(app, [*args, "--db", db])


def create(db: str, *extra: str, from_id="user-sw-001", to_id="user-jw-001", start=-1, end=5) -> str:
    result = invoke(
        db,
        "grant",
        "create",
        "--from-id",
        from_id,
        "--from-name",
        f"Name {from_id}",
        "--to-id",
        to_id,
        "--to-name",
        f"Name {to_id}",
        "--start",
        day(start),
        "--end",
        day(end),
        *extra,
    )
    assert result.exit_code == 0, result.output
    return result.stdout.split("Created grant: ")[1].split("\n")[0]


def test_init_refuses_existing_database(db: str) -> None:
    result = runner.invoke(app, ["init", "--db", db])
    assert result.exit_code == 1
    assert "already exists" in result.output


def test_commands_require_initialized_database(tmp_path: Path) -> None:
    result = runner.invoke(app, ["grant", "list", "--db", str(tmp_path / "missing.db")])
    assert result.exit_code == 1
    assert "Database not found" in result.output


def test_grant_lifecycle_via_cli(db: str) -> None:
    grant_id = create(db, "--kind", "temporary", "--max-amount", "1000", "--reason", "Trip")

    result = invoke(db, "grant", "show", "--id", grant_id)
    assert result.exit_code == 0
    assert "[active]" in result.stdout
    assert "Limit: Max amount: 1,000" in result.stdout

    result = invoke(db, "grant", "list", "--status", "active", "--json")
    assert result.exit_code == 0
    listed = json.loads(result.stdout)
    assert [g["grant_id"] for g in listed] == [grant_id]
    assert listed[0]["limits"]["max_approval_amount"] == "1000"

    result = invoke(db, "grant", "update", "--id", grant_id, "--by", "Sarah", "--end", day(7))
    assert result.exit_code == 0
    assert "Updated grant" in result.stdout

    result = invoke(db, "grant", "revoke", "--id", grant_id, "--by", "Sarah", "--reason", "Back early")
    assert result.exit_code == 0
    assert "Reason: Back early" in result.stdout

    result = invoke(db, "grant", "audit", "--id", grant_id, "--json")
    assert result.exit_code == 0
    actions = [entry["action"] for entry in json.loads(result.stdout)]
    assert actions == ["revoked", "modified", "created"]

    # Revoked grants stay revoked
    result = invoke(db, "grant", "revoke", "--id", grant_id, "--by", "Sarah")
    assert result.exit_code == 1
    assert "Error:" in result.output

    result = invoke(db, "grant", "delete", "--id", grant_id)
    assert result.exit_code == 0
    result = invoke(db, "grant", "show", "--id", grant_id)
    assert result.exit_code == 1


def test_update_without_fields_fails(db: str) -> None:
    grant_id = create(db)
    result = invoke(db, "grant", "update", "--id", grant_id, "--by", "Sarah")
    assert result.exit_code == 1
    assert "Nothing to update" in result.output


def test_invalid_window_is_reported(db: str) -> None:
    result = invoke(
        db,
        "grant",
        "create",
        "--from-id",
        "a",
        "--from-name",
        "A",
        "--to-id",
        "b",
        "--to-name",
        "B",
        "--start",
        day(5),
        "--end",
        day(1),
    )
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_unknown_grant_is_reported(db: str) -> None:
    for args in (
        ["grant", "revoke", "--id", "del-missing", "--by", "x"],
        ["grant", "delete", "--id", "del-missing"],
        ["grant", "audit", "--id", "del-missing"],
        ["validate", "--id", "del-missing", "--amount", "1"],
    ):
        result = invoke(db, *args)
        assert result.exit_code == 1, args
        assert "not found" in result.output.lower()


def test_validate_limits(db: str) -> None:
    grant_id = create(db, "--max-amount", "5000", "--exclude-category", "contract")

    result = invoke(db, "validate", "--id", grant_id, "--amount", "4600")
    assert result.exit_code == 0
    assert "✓ Valid" in result.stdout
    assert "approaching the delegation limit of 5,000" in result.stdout

    result = invoke(db, "validate", "--id", grant_id, "--amount", "5001", "--category", "contract")
    assert result.exit_code == 1
    assert "✗ Invalid" in result.stdout
    assert "exceeds delegation limit of 5,000" in result.stdout


def test_conflicts_and_eligibility(db: str) -> None:
    create(db, "--no-re-delegation")

    result = invoke(db, "conflicts", "--from-id", "user-sw-001", "--start", day(0), "--end", day(2))
    assert result.exit_code == 0
    assert "1 conflicting grant(s)" in result.stdout

    result = invoke(db, "conflicts", "--from-id", "user-sw-001", "--start", day(10), "--end", day(12))
    assert "No conflicting grants" in result.stdout

    # Creating an overlapping grant only warns
    result = invoke(
        db,
        "grant",
        "create",
        "--from-id",
        "user-sw-001",
        "--from-name",
        "Sarah",
        "--to-id",
        "user-mg-001",
        "--to-name",
        "Maria",
        "--start",
        day(0),
        "--end",
        day(2),
    )
    assert result.exit_code == 0
    assert "⚠️  Overlaps" in result.stdout

    result = invoke(db, "eligibility", "--candidate", "user-jw-001")
    assert result.exit_code == 0

    # James hands his own authority on: his inbound grant forbids it
    create(db, from_id="user-jw-001", to_id="user-tb-001")
    result = invoke(db, "eligibility", "--candidate", "user-jw-001")
    assert result.exit_code == 1
    assert "cannot receive" in result.stdout


def test_proxy_ledger_commands(db: str) -> None:
    grant_id = create(db)

    result = invoke(
        db,
        "proxy",
        "record",
        "--grant",
        grant_id,
        "--approval-id",
        "apr-1",
        "--reference",
        "PR-2024-0901",
        "--category",
        "purchase",
        "--action",
        "approved",
        "--original-id",
        "user-sw-001",
        "--original-name",
        "Sarah Williams",
        "--proxy-id",
        "user-jw-001",
        "--proxy-name",
        "James Wilson",
        "--amount",
        "800",
    )
    assert result.exit_code == 0, result.output
    assert "Recorded proxy approval" in result.stdout

    result = invoke(db, "proxy", "list", "--grant", grant_id, "--json")
    records = json.loads(result.stdout)
    assert len(records) == 1
    assert records[0]["approval_reference"] == "PR-2024-0901"
    assert records[0]["amount"] == "800"

    result = invoke(db, "proxy", "stats", "--json")
    stats = json.loads(result.stdout)
    assert stats["total"] == 1
    assert stats["approved"] == 1

    result = invoke(db, "grant", "audit", "--id", grant_id)
    assert "Approved PR-2024-0901 on behalf of Sarah Williams" in result.stdout


def test_sweep_history_and_stats(db: str) -> None:
    lapsed = create(db, start=-10, end=-3)
    create(db, from_id="user-mg-001", start=-1, end=1)

    result = invoke(db, "sweep")
    assert result.exit_code == 0
    assert f"Expired: {lapsed}" in result.stdout

    result = invoke(db, "sweep")
    assert f"Expired: {lapsed}" not in result.stdout

    result = invoke(db, "history", "--json")
    entries = json.loads(result.stdout)
    assert [e["grant_id"] for e in entries] == [lapsed]
    assert entries[0]["status"] == "expired"
    assert entries[0]["approvals_processed"] == 0

    result = invoke(db, "stats", "--json")
    stats = json.loads(result.stdout)
    assert stats["total"] == 2
    assert stats["active"] == 1
    assert stats["expired"] == 1


def test_out_of_office_and_expiring(db: str) -> None:
    create(db, start=-1, end=1)

    result = invoke(db, "ooo", "--user", "user-sw-001")
    assert "is out of office" in result.stdout
    assert "not out of office" not in result.stdout

    result = invoke(db, "ooo", "--user", "user-jw-001")
    assert "not out of office" in result.stdout

    result = invoke(db, "expiring", "--user", "user-jw-001")
    assert "Expiring soon (1)" in result.stdout

    result = invoke(db, "expiring", "--user", "user-jw-001", "--days", "0")
    assert "No grants expiring soon" in result.stdout
