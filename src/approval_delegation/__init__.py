"""
Approval Delegation - Event-sourced delegation and proxy authorization engine

Lets an approver temporarily hand off approval authority, bounds it with
limits, surfaces conflicting grants, records every action taken on someone
else's behalf, and retires grants whose window has elapsed.

Fun fact: "Per procurationem" - the "p.p." people still write above a
signature - has marked proxy authority on letters since the Middle Ages.
"""

from approval_delegation.engine import DelegationEngine

__version__ = "0.1.0"
__all__ = ["DelegationEngine", "__version__"]
