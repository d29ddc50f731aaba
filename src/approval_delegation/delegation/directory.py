"""
Candidate directory - who may be picked as a delegate

User identity lives in an external directory. The engine consumes it
through a small protocol and only ever filters what it is given.
"""

from collections.abc import Iterable
from typing import Protocol

from approval_delegation.delegation.models import CandidateUser


class CandidateDirectory(Protocol):
    """Source of candidate delegates"""

    def list_candidates(self) -> list[CandidateUser]:
        ...


class InMemoryCandidateDirectory:
    """Directory backed by a fixed list, for tests and the CLI"""

    def __init__(self, candidates: Iterable[CandidateUser] = ()) -> None:
        self._candidates = list(candidates)

    def add(self, candidate: CandidateUser) -> None:
        self._candidates.append(candidate)

    def list_candidates(self) -> list[CandidateUser]:
        return list(self._candidates)


def filter_candidates(
    candidates: Iterable[CandidateUser],
    exclude_user_id: str | None = None,
    search: str | None = None,
) -> list[CandidateUser]:
    """
    Narrow candidates to eligible delegates

    Drops the excluded user, matches `search` case-insensitively against
    name, email and role, and keeps only users who can receive delegation.
    """
    result = list(candidates)

    if exclude_user_id:
        result = [c for c in result if c.user_id != exclude_user_id]

    if search:
        needle = search.lower()
        result = [
            c
            for c in result
            if needle in c.name.lower()
            or needle in c.email.lower()
            or needle in c.role.lower()
        ]

    return [c for c in result if c.can_receive_delegation]
