"""
Delegation Policy - Tunable parameters of the delegation engine

The DelegationPolicy gathers the thresholds that shape validator warnings,
expiry reminders, calendar-day evaluation and the optional hard guards
around grant creation.

Fun fact: The 90% "approaching the limit" warning mirrors how card issuers
nudge spenders before a hard decline - a soft signal is cheaper than a
rejected approval.
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


class DelegationPolicy(BaseModel):
    """
    Engine-wide delegation parameters

    Defaults reproduce the behaviour approvers expect out of the box:
    conflicts are advisory, grants may be of any length, and days roll
    over at midnight UTC.
    """

    policy_version: str = Field(
        default="1.0",
        description="Policy version for tracking changes over time",
    )

    near_limit_ratio: float = Field(
        default=0.9,
        gt=0.0,
        le=1.0,
        description="Fraction of max_approval_amount above which a warning is raised",
    )

    business_timezone: str = Field(
        default="UTC",
        description="IANA timezone in which grant start/end calendar dates are evaluated",
    )

    expiring_soon_days: int = Field(
        default=3,
        ge=0,
        le=365,
        description="Days ahead that count as 'expiring soon' for reminders",
    )

    top_parties_limit: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Size of the top delegators/delegates/proxy approvers leaderboards",
    )

    block_conflicting_grants: bool = Field(
        default=False,
        description="Reject grant creation when the delegator has overlapping live grants",
    )

    max_grant_days: int | None = Field(
        default=None,
        ge=1,
        le=3650,
        description="Optional upper bound on a grant's window length (inclusive days)",
    )

    ledger_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts at attaching a proxy approval to a concurrently modified grant",
    )

    model_config = {
        "frozen": False,
        "json_schema_extra": {
            "description": "Parameters governing delegation validation and lifecycle"
        },
    }

    @field_validator("business_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value


# Default global policy instance
default_delegation_policy = DelegationPolicy()
