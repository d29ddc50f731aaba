"""
Retry logic with exponential backoff for transient failures.

Covers SQLite lock contention, optimistic-lock losses on a grant stream,
and projection rebuilds.
"""

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from approval_delegation.kernel.errors import StreamVersionConflict
from approval_delegation.kernel.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# ============================================================================
# Retry Decorators
# ============================================================================


def retry_on_sqlite_lock(
    max_attempts: int = 3,
    min_wait_ms: int = 100,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for SQLite lock contention (OperationalError).

    SQLite uses file-based locking and can report "database is locked"
    when several engine instances write at once. This decorator retries
    with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts (default: 3)
        min_wait_ms: Minimum wait time in milliseconds (default: 100)
        max_wait_ms: Maximum wait time in milliseconds (default: 1000)

    Returns:
        Decorated function that retries on sqlite3.OperationalError
    """
    return retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "SQLite lock detected, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )


def retry_on_version_conflict(
    max_attempts: int = 3,
    min_wait_ms: int = 10,
    max_wait_ms: int = 200,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for appends that lost an optimistic-lock race.

    Only for commands whose outcome does not depend on the grant's prior
    version, such as attaching a proxy-approval audit event. The decorated
    function must re-read the stream version on each attempt.

    Example:
        @retry_on_version_conflict()
        def record(...):
            version = store.get_stream_version(grant_id)
            store.append_many([...])
    """
    return retry(
        retry=retry_if_exception_type(StreamVersionConflict),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.info(
            "Stream version conflict, retrying with fresh version",
            attempt=retry_state.attempt_number,
        ),
        reraise=True,
    )


def retry_projection_rebuild(
    max_attempts: int = 3,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for projection rebuilds.

    Rebuilds read the whole log and can hit lock contention or transient
    I/O errors.

    Args:
        max_attempts: Maximum number of retry attempts (default: 3)
    """
    return retry(
        retry=retry_if_exception_type((sqlite3.OperationalError, OSError)),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=0.5,
            max=5.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "Projection rebuild failed, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )
