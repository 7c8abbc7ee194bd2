# wavebooks/services/states.py
"""
Assignment state as a tagged variant.

A transaction is Unassigned (no row), Assigned, in Conflict (several
counterparties share its phone number) or Resolved (a conflict settled by
hand). Callers branch on the variant type instead of poking at nullable
columns.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from wavebooks.models import AssignmentState, TransactionAssignment


@dataclass(frozen=True)
class Unassigned:
    transaction_id: str
    name = "unassigned"


@dataclass(frozen=True)
class Assigned:
    assignment: TransactionAssignment
    name = "assigned"


@dataclass(frozen=True)
class Conflict:
    assignment: TransactionAssignment
    candidates: dict
    name = "conflict"


@dataclass(frozen=True)
class Resolved:
    assignment: TransactionAssignment
    name = "resolved"


AssignmentView = Union[Unassigned, Assigned, Conflict, Resolved]


def state_of(transaction_id: str, assignment: Optional[TransactionAssignment]) -> AssignmentView:
    if assignment is None:
        return Unassigned(transaction_id)
    if assignment.state == AssignmentState.CONFLICT:
        return Conflict(assignment, dict(assignment.candidates or {}))
    if assignment.state == AssignmentState.RESOLVED:
        return Resolved(assignment)
    return Assigned(assignment)
