"""
Status Transitions - the single authoritative transition table per entity.

Every status write in the engine goes through compare_and_set(), which
rejects transitions missing from the table and applies the write only
if the row still holds the expected status. A False return means a
concurrent operation got there first.
"""

from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from datapraktis.core.exceptions import PreconditionFailed
from datapraktis.core.models import (
    EscrowStatus,
    EscrowTransaction,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    Proposal,
    ProposalStatus,
    Withdrawal,
    WithdrawalStatus,
)
from datapraktis.core.settlement.ledger import utcnow

TransitionTable = Mapping[Enum, frozenset]


PROJECT_TRANSITIONS: TransitionTable = {
    ProjectStatus.DRAFT: frozenset({ProjectStatus.OPEN, ProjectStatus.CANCELLED}),
    ProjectStatus.OPEN: frozenset({ProjectStatus.IN_PROGRESS, ProjectStatus.CANCELLED}),
    ProjectStatus.IN_PROGRESS: frozenset({ProjectStatus.COMPLETED, ProjectStatus.CANCELLED}),
    ProjectStatus.COMPLETED: frozenset(),
    ProjectStatus.CANCELLED: frozenset(),
}

PROPOSAL_TRANSITIONS: TransitionTable = {
    ProposalStatus.PENDING: frozenset({ProposalStatus.ACCEPTED, ProposalStatus.REJECTED}),
    ProposalStatus.ACCEPTED: frozenset(),
    ProposalStatus.REJECTED: frozenset(),
}

MILESTONE_TRANSITIONS: TransitionTable = {
    MilestoneStatus.PENDING: frozenset({
        MilestoneStatus.IN_PROGRESS,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.IN_PROGRESS: frozenset({
        MilestoneStatus.SUBMITTED,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.SUBMITTED: frozenset({
        MilestoneStatus.APPROVED,
        MilestoneStatus.REVISION_REQUESTED,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.REVISION_REQUESTED: frozenset({
        MilestoneStatus.SUBMITTED,
        MilestoneStatus.DISPUTED,
    }),
    MilestoneStatus.APPROVED: frozenset(),
    MilestoneStatus.DISPUTED: frozenset(),
}

# PENDING -> PENDING is a fresh charge attempt for the same milestone.
ESCROW_TRANSITIONS: TransitionTable = {
    EscrowStatus.PENDING: frozenset({
        EscrowStatus.PENDING,
        EscrowStatus.ESCROWED,
        EscrowStatus.FAILED,
    }),
    EscrowStatus.FAILED: frozenset({EscrowStatus.PENDING}),
    EscrowStatus.ESCROWED: frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED}),
    EscrowStatus.REFUNDED: frozenset({EscrowStatus.PENDING}),
    EscrowStatus.RELEASED: frozenset(),
}

WITHDRAWAL_TRANSITIONS: TransitionTable = {
    WithdrawalStatus.PENDING: frozenset({
        WithdrawalStatus.PROCESSING,
        WithdrawalStatus.FAILED,
    }),
    WithdrawalStatus.PROCESSING: frozenset({
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.FAILED,
    }),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.FAILED: frozenset(),
}

TRANSITIONS: dict[type, TransitionTable] = {
    Project: PROJECT_TRANSITIONS,
    Proposal: PROPOSAL_TRANSITIONS,
    Milestone: MILESTONE_TRANSITIONS,
    EscrowTransaction: ESCROW_TRANSITIONS,
    Withdrawal: WITHDRAWAL_TRANSITIONS,
}


def can_transition(model: type, current: Enum, target: Enum) -> bool:
    """Check whether current -> target is listed for the model."""
    return target in TRANSITIONS[model].get(current, frozenset())


def ensure_transition(model: type, current: Enum, target: Enum) -> None:
    """Raise PreconditionFailed unless current -> target is listed."""
    if not can_transition(model, current, target):
        raise PreconditionFailed(
            f"{model.__name__} cannot move from {current.value} to {target.value}"
        )


async def compare_and_set(
    db: AsyncSession,
    model: type,
    row_id: UUID,
    expected: Enum,
    target: Enum,
    **values: Any,
) -> bool:
    """
    Atomically move a row from expected to target status.

    Args:
        db: Session whose transaction the write joins
        model: Mapped class with id and status columns
        row_id: Primary key of the row
        expected: Status the row must currently hold
        target: New status
        **values: Extra columns written together with the status

    Returns:
        True if this call performed the transition, False if the row
        no longer held the expected status.

    Raises:
        PreconditionFailed: If expected -> target is not a listed transition
    """
    ensure_transition(model, expected, target)
    # Written explicitly so the synced in-session object has no expired column
    values.setdefault("updated_at", utcnow())

    result = await db.execute(
        update(model)
        .where(model.id == row_id, model.status == expected)
        .values(status=target, **values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1
