"""
DataPraktis - Milestones API
=============================

Work-review transitions: submit, approve, request revision, dispute.
"""

from dataclasses import asdict
from typing import Optional
from uuid import UUID

from fastapi import APIRouter

from datapraktis.api.deps import (
    CurrentAdminUser,
    CurrentAnalyst,
    CurrentClient,
    CurrentUser,
    DbSession,
    Policy,
)
from datapraktis.core.schemas import (
    ApprovalResponse,
    DisputeRequest,
    MilestoneResponse,
    RevisionRequest,
)
from datapraktis.core.settlement.milestones import MilestoneService

router = APIRouter(prefix="/milestones", tags=["Milestones"])


@router.get(
    "/{milestone_id}",
    response_model=MilestoneResponse,
    summary="Get milestone",
    responses={
        403: {"description": "Not a participant"},
        404: {"description": "Milestone not found"},
    },
)
async def get_milestone(
    milestone_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> MilestoneResponse:
    service = MilestoneService(db)
    milestone = await service.get_for_actor(milestone_id, current_user)
    return MilestoneResponse.model_validate(milestone)


@router.post(
    "/{milestone_id}/submit",
    response_model=MilestoneResponse,
    summary="Submit work",
    responses={
        403: {"description": "Not the hired analyst"},
        409: {"description": "Milestone is not in progress"},
    },
)
async def submit_milestone(
    milestone_id: UUID,
    current_user: CurrentAnalyst,
    db: DbSession,
    policy: Policy,
) -> MilestoneResponse:
    """
    Submit work for review. Starts the auto-release review window.
    """
    service = MilestoneService(db, policy)
    milestone = await service.submit(milestone_id, current_user)
    return MilestoneResponse.model_validate(milestone)


@router.post(
    "/{milestone_id}/approve",
    response_model=ApprovalResponse,
    summary="Approve milestone",
    responses={
        200: {"description": "Approved and funds released (or already settled)"},
        403: {"description": "Not the project client"},
        409: {"description": "Milestone not submitted or not funded"},
    },
)
async def approve_milestone(
    milestone_id: UUID,
    current_user: CurrentClient,
    db: DbSession,
    policy: Policy,
) -> ApprovalResponse:
    """
    Approve submitted work and release its escrow to the analyst.

    applied is false when the auto-release sweep settled the milestone
    first.
    """
    service = MilestoneService(db, policy)
    outcome = await service.approve(milestone_id, current_user)
    return ApprovalResponse(**asdict(outcome))


@router.post(
    "/{milestone_id}/request-revision",
    response_model=MilestoneResponse,
    summary="Request revision",
    responses={
        403: {"description": "Not the project client"},
        409: {"description": "Milestone not submitted, or revision limit reached"},
    },
)
async def request_revision(
    milestone_id: UUID,
    current_user: CurrentClient,
    db: DbSession,
    data: Optional[RevisionRequest] = None,
) -> MilestoneResponse:
    service = MilestoneService(db)
    milestone = await service.request_revision(
        milestone_id, current_user, note=data.note if data else None
    )
    return MilestoneResponse.model_validate(milestone)


@router.post(
    "/{milestone_id}/dispute",
    response_model=MilestoneResponse,
    summary="Escalate to dispute",
    responses={
        403: {"description": "Admin access required"},
        409: {"description": "Milestone already approved or disputed"},
    },
)
async def dispute_milestone(
    milestone_id: UUID,
    current_user: CurrentAdminUser,
    db: DbSession,
    data: Optional[DisputeRequest] = None,
) -> MilestoneResponse:
    service = MilestoneService(db)
    milestone = await service.mark_disputed(
        milestone_id, current_user, reason=data.reason if data else None
    )
    return MilestoneResponse.model_validate(milestone)
