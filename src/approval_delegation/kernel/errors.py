"""
Custom exceptions for the approval delegation engine

Well-defined error hierarchy enables precise error handling and
clear error messages for calling workflows and operators.

Conflicts between overlapping grants are deliberately absent here: they are
returned as data by the conflict detector, never raised.
"""


class DelegationError(Exception):
    """Base exception for all approval delegation errors"""

    pass


class EventStoreError(DelegationError):
    """Base class for event store errors"""

    pass


class CommandIdempotencyViolation(EventStoreError):
    """
    Raised inside the store when a command_id was already appended

    Never reaches callers: the store catches it and hands back the events
    the first run produced.
    """

    def __init__(self, command_id: str) -> None:
        self.command_id = command_id
        super().__init__(f"Command {command_id} already processed")


class StreamVersionConflict(EventStoreError):
    """
    Raised when stream version doesn't match expected (optimistic locking)

    Indicates concurrent modification of the same grant - caller should
    reload and retry, or accept that another writer won.
    """

    def __init__(
        self, stream_id: str, expected_version: int, actual_version: int
    ) -> None:
        self.stream_id = stream_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stream {stream_id} version mismatch: "
            f"expected {expected_version}, got {actual_version}"
        )


class GrantNotFound(DelegationError):
    """Raised when an operation references a grant id that does not exist"""

    def __init__(self, grant_id: str) -> None:
        self.grant_id = grant_id
        super().__init__(f"Delegation grant {grant_id} not found")


class InvalidDelegationWindow(DelegationError):
    """Raised when a grant's validity window or parties are malformed"""

    def __init__(self, message: str, start_date: object = None, end_date: object = None) -> None:
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(message)


class InvalidGrantUpdate(DelegationError):
    """Raised when a patch would leave a grant in a state it cannot hold"""

    def __init__(self, grant_id: str, fields: list[str], message: str) -> None:
        self.grant_id = grant_id
        self.fields = list(fields)
        super().__init__(f"Cannot update delegation grant {grant_id}: {message}")


class GrantAlreadyTerminal(DelegationError):
    """
    Raised when revoking or modifying a grant that is already Revoked or Expired

    Also the outcome when a revoke loses a race against the expiry sweep -
    the grant simply ended first.
    """

    def __init__(self, grant_id: str, status: str) -> None:
        self.grant_id = grant_id
        self.status = status
        super().__init__(
            f"Delegation grant {grant_id} is already {status} and cannot be changed"
        )


class LimitsValidationFailed(DelegationError):
    """
    Raised only when a caller opts into treating limit errors as blocking

    The validator itself always returns structured data; see
    ValidationResult.raise_for_errors().
    """

    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("Delegation limits violated: " + "; ".join(self.errors))


class ConflictingGrantBlocked(DelegationError):
    """Raised when policy opts into hard-blocking overlapping grants"""

    def __init__(self, delegator_id: str, conflicting_ids: list[str]) -> None:
        self.delegator_id = delegator_id
        self.conflicting_ids = conflicting_ids
        super().__init__(
            f"Delegator {delegator_id} already has overlapping grants: "
            f"{', '.join(conflicting_ids)}"
        )
