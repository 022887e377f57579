"""
DataPraktis - Projects API
===========================

Project lifecycle and proposals, up to engagement formation.
"""

from uuid import UUID

from fastapi import APIRouter, status

from datapraktis.api.deps import CurrentAnalyst, CurrentClient, CurrentUser, DbSession, Policy
from datapraktis.core.schemas import (
    ProjectCreate,
    ProjectResponse,
    ProposalCreate,
    ProposalResponse,
)
from datapraktis.core.settlement.engagement import EngagementService, MilestonePlan

router = APIRouter(prefix="/projects", tags=["Projects"])


# ==========================================================================
# Projects
# ==========================================================================

@router.post(
    "",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create project",
    responses={
        201: {"description": "Project created"},
        403: {"description": "Clients only"},
        422: {"description": "Validation error"},
    },
)
async def create_project(
    data: ProjectCreate,
    current_user: CurrentClient,
    db: DbSession,
    policy: Policy,
) -> ProjectResponse:
    """
    Post a new project. OPEN by default, DRAFT when publish is false.
    """
    service = EngagementService(db, policy)
    project = await service.create_project(
        current_user,
        title=data.title,
        description=data.description,
        budget_min=data.budget_min,
        budget_max=data.budget_max,
        deadline=data.deadline,
        publish=data.publish,
    )
    return ProjectResponse.model_validate(project)


@router.get(
    "/{project_id}",
    response_model=ProjectResponse,
    summary="Get project",
    responses={
        403: {"description": "Not a participant"},
        404: {"description": "Project not found"},
    },
)
async def get_project(
    project_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> ProjectResponse:
    service = EngagementService(db)
    project = await service.get_project(project_id, current_user)
    return ProjectResponse.model_validate(project)


@router.post(
    "/{project_id}/publish",
    response_model=ProjectResponse,
    summary="Publish draft project",
    responses={
        404: {"description": "Project not found"},
        409: {"description": "Project is not a draft"},
    },
)
async def publish_project(
    project_id: UUID,
    current_user: CurrentClient,
    db: DbSession,
) -> ProjectResponse:
    service = EngagementService(db)
    project = await service.publish_project(project_id, current_user)
    return ProjectResponse.model_validate(project)


@router.post(
    "/{project_id}/cancel",
    response_model=ProjectResponse,
    summary="Cancel project",
    responses={
        404: {"description": "Project not found"},
        409: {"description": "Project already finished or holds escrowed funds"},
    },
)
async def cancel_project(
    project_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> ProjectResponse:
    """
    Cancel a project. Refused while any milestone has funds in escrow.
    """
    service = EngagementService(db)
    project = await service.cancel_project(project_id, current_user)
    return ProjectResponse.model_validate(project)


# ==========================================================================
# Proposals
# ==========================================================================

@router.get(
    "/{project_id}/proposals",
    response_model=list[ProposalResponse],
    summary="List proposals",
)
async def list_proposals(
    project_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> list[ProposalResponse]:
    service = EngagementService(db)
    proposals = await service.list_proposals(project_id, current_user)
    return [ProposalResponse.model_validate(p) for p in proposals]


@router.post(
    "/{project_id}/proposals",
    response_model=ProposalResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit proposal",
    responses={
        201: {"description": "Proposal submitted"},
        403: {"description": "Analysts only"},
        409: {"description": "Project not open or already bid"},
        422: {"description": "Milestones do not sum to the budget"},
    },
)
async def create_proposal(
    project_id: UUID,
    data: ProposalCreate,
    current_user: CurrentAnalyst,
    db: DbSession,
    policy: Policy,
) -> ProposalResponse:
    service = EngagementService(db, policy)
    proposal = await service.create_proposal(
        project_id,
        current_user,
        cover_letter=data.cover_letter,
        proposed_budget=data.proposed_budget,
        proposed_days=data.proposed_days,
        milestones=[
            MilestonePlan(
                title=m.title,
                description=m.description,
                amount=m.amount,
                due_date=m.due_date,
            )
            for m in data.proposed_milestones
        ],
    )
    return ProposalResponse.model_validate(proposal)


@router.post(
    "/{project_id}/proposals/{proposal_id}/accept",
    response_model=ProjectResponse,
    summary="Accept proposal",
    responses={
        200: {"description": "Engagement formed"},
        404: {"description": "Project or proposal not found"},
        409: {"description": "Project no longer open or proposal not pending"},
    },
)
async def accept_proposal(
    project_id: UUID,
    proposal_id: UUID,
    current_user: CurrentClient,
    db: DbSession,
    policy: Policy,
) -> ProjectResponse:
    """
    Hire the analyst: milestones are created, the first one starts, and
    every other pending proposal is rejected.
    """
    service = EngagementService(db, policy)
    project = await service.accept_proposal(project_id, proposal_id, current_user)
    return ProjectResponse.model_validate(project)


@router.post(
    "/{project_id}/proposals/{proposal_id}/reject",
    response_model=ProposalResponse,
    summary="Reject proposal",
)
async def reject_proposal(
    project_id: UUID,
    proposal_id: UUID,
    current_user: CurrentClient,
    db: DbSession,
) -> ProposalResponse:
    service = EngagementService(db)
    proposal = await service.reject_proposal(project_id, proposal_id, current_user)
    return ProposalResponse.model_validate(proposal)
