"""
ExpirySweeper - Periodic retirement of lapsed grants

The sweeper is invoked on a schedule by an external scheduler. Each run
looks at every grant that is not yet marked terminal and appends one
DelegationExpired event for each grant whose window has elapsed.

Idempotence comes from the store, not from locks: the append is keyed on
the grant's current stream version and on a per-grant deterministic
command id, so two overlapping sweeps produce at most one event per grant.

Fun fact: This is the same "claim by conditional write" trick job queues
use to make sure a task is picked up by exactly one worker!
"""

import time
from datetime import datetime

from approval_delegation.delegation.handlers import DelegationCommandHandlers
from approval_delegation.delegation.models import DelegationGrant
from approval_delegation.kernel.errors import StreamVersionConflict
from approval_delegation.kernel.event_store import EventStore
from approval_delegation.kernel.events import Event
from approval_delegation.kernel.ids import generate_id
from approval_delegation.kernel.logging import LogOperation, get_logger
from approval_delegation.kernel.metrics import (
    grants_expired_total,
    sweep_duration_seconds,
    sweep_failures_total,
)

logger = get_logger(__name__)


class SweepResult:
    """
    Result of one expiry sweep

    `events` holds every event the caller must apply to its projections,
    including ones another sweeper wrote first.
    """

    def __init__(
        self,
        sweep_id: str,
        swept_at: datetime,
        expired_grant_ids: list[str],
        failed_grant_ids: list[str],
        events: list[Event],
    ):
        self.sweep_id = sweep_id
        self.swept_at = swept_at
        self.expired_grant_ids = expired_grant_ids
        self.failed_grant_ids = failed_grant_ids
        self.events = events

    @property
    def expired_count(self) -> int:
        return len(self.expired_grant_ids)

    @property
    def failed_count(self) -> int:
        return len(self.failed_grant_ids)

    def summary(self) -> str:
        """Human-readable summary of sweep result"""
        parts = [
            f"Sweep {self.sweep_id} at {self.swept_at}",
            f"Expired: {self.expired_count}",
        ]
        if self.failed_count:
            parts.append(f"Failed: {self.failed_count}")
        return " | ".join(parts)


class ExpirySweeper:
    """
    Transitions lapsed grants to Expired exactly once

    The sweeper:
    1. Takes the grants not yet marked terminal
    2. Asks the handlers for a DelegationExpired event per lapsed grant
    3. Appends it with expected_version = grant.version (the claim)
    4. Isolates per-grant failures and keeps going
    """

    def __init__(
        self,
        event_store: EventStore,
        handlers: DelegationCommandHandlers,
    ):
        self.event_store = event_store
        self.handlers = handlers

    def sweep(self, grants: list[DelegationGrant], now: datetime) -> SweepResult:
        """
        Execute a single sweep

        Args:
            grants: Grants without a terminal status marker
            now: Clock reading the sweep evaluates against

        Returns:
            SweepResult with transitioned grant ids and events to apply
        """
        sweep_id = generate_id()
        started = time.perf_counter()
        expired_ids: list[str] = []
        failed_ids: list[str] = []
        applied: list[Event] = []

        with LogOperation(
            logger,
            "expiry_sweep",
            correlation_id=sweep_id,
            sweep_id=sweep_id,
            candidates=len(grants),
        ):
            for grant in grants:
                try:
                    events = self.handlers.handle_expire_grant(grant, now)
                    if not events:
                        continue

                    stored = self.event_store.append(grant.grant_id, grant.version, events)
                    applied.extend(stored)

                    if stored[0].event_id != events[0].event_id:
                        logger.debug(
                            "Grant already expired by another sweep",
                            sweep_id=sweep_id,
                            grant_id=grant.grant_id,
                        )
                        continue

                    expired_ids.append(grant.grant_id)
                    grants_expired_total.inc()

                except StreamVersionConflict as e:
                    # Lost the claim; whoever won decides the grant's fate
                    logger.info(
                        "Grant changed during sweep, skipping",
                        sweep_id=sweep_id,
                        grant_id=grant.grant_id,
                        actual_version=e.actual_version,
                    )

                except Exception as e:
                    failed_ids.append(grant.grant_id)
                    sweep_failures_total.inc()
                    logger.error(
                        "Failed to expire grant",
                        sweep_id=sweep_id,
                        grant_id=grant.grant_id,
                        error=str(e),
                        exc_info=True,
                    )

            logger.info(
                "Expiry sweep completed",
                sweep_id=sweep_id,
                expired_count=len(expired_ids),
                failed_count=len(failed_ids),
            )

        sweep_duration_seconds.observe(time.perf_counter() - started)

        return SweepResult(
            sweep_id=sweep_id,
            swept_at=now,
            expired_grant_ids=expired_ids,
            failed_grant_ids=failed_ids,
            events=applied,
        )
