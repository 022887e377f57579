"""
Engagement Service - projects, proposals and engagement formation.

accept_proposal() is the one operation that turns a bid into a binding
contract. Everything it writes commits together or not at all; the
project's OPEN -> IN_PROGRESS compare-and-swap is inside the same unit,
so two concurrent acceptances cannot both form an engagement.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from datapraktis.core.database import atomic
from datapraktis.core.exceptions import (
    AccessDenied,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from datapraktis.core.models import (
    EscrowStatus,
    EscrowTransaction,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    Proposal,
    ProposalStatus,
    User,
    UserRole,
)
from datapraktis.core.settlement.conversations import ConversationService
from datapraktis.core.settlement.ledger import ensure_utc, format_rupiah, utcnow, validate_amount
from datapraktis.core.settlement.policy import SettlementPolicy
from datapraktis.core.settlement.transitions import compare_and_set, ensure_transition

logger = structlog.get_logger()


MIN_TITLE_LENGTH = 5
MIN_COVER_LETTER_LENGTH = 50


@dataclass(frozen=True)
class MilestonePlan:
    """One proposed milestone descriptor."""
    title: str
    amount: int
    description: Optional[str] = None
    due_date: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MilestonePlan":
        due = data.get("due_date")
        if isinstance(due, str):
            due = datetime.fromisoformat(due)
        return cls(
            title=data["title"],
            amount=data["amount"],
            description=data.get("description"),
            due_date=due,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "amount": self.amount,
            "due_date": self.due_date.isoformat() if self.due_date else None,
        }


def validate_milestone_plans(plans: list[MilestonePlan], budget: int) -> None:
    """Milestones must be non-empty, positive and sum exactly to the budget."""
    if not plans:
        raise ValidationError("At least one milestone is required")
    for plan in plans:
        if not plan.title or not plan.title.strip():
            raise ValidationError("Milestone title is required")
        validate_amount(plan.amount)
    total = sum(plan.amount for plan in plans)
    if total != budget:
        raise ValidationError(
            f"Milestone amounts total {format_rupiah(total)} "
            f"but the proposed budget is {format_rupiah(budget)}"
        )


class EngagementService:
    """
    Project lifecycle and proposal handling up to engagement formation.

    Usage:
        service = EngagementService(db)
        project = await service.accept_proposal(project_id, proposal_id, client)
    """

    def __init__(self, db: AsyncSession, policy: Optional[SettlementPolicy] = None):
        self.db = db
        self.policy = policy or SettlementPolicy.from_settings()
        self.conversations = ConversationService(db)

    # ======================================================================
    # Lookups
    # ======================================================================

    async def _get_project(self, project_id: UUID) -> Project:
        project = await self.db.get(Project, project_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    async def _get_owned_project(self, project_id: UUID, actor: User) -> Project:
        project = await self._get_project(project_id)
        if project.client_id != actor.id:
            raise AccessDenied("Only the project client can do this")
        return project

    async def _get_proposal(self, project_id: UUID, proposal_id: UUID) -> Proposal:
        proposal = await self.db.get(Proposal, proposal_id)
        if proposal is None or proposal.project_id != project_id:
            raise NotFound("Proposal not found")
        return proposal

    async def _holds_escrow(self, project_id: UUID) -> bool:
        result = await self.db.execute(
            select(EscrowTransaction.id).where(
                EscrowTransaction.project_id == project_id,
                EscrowTransaction.status == EscrowStatus.ESCROWED,
            )
        )
        return result.first() is not None

    async def get_project(self, project_id: UUID, actor: User) -> Project:
        """Visible to its client, its hired analyst, admins, and analysts while OPEN."""
        project = await self._get_project(project_id)
        if actor.role == UserRole.ADMIN or actor.id in (project.client_id, project.hired_analyst_id):
            return project
        if actor.role == UserRole.ANALYST and project.status == ProjectStatus.OPEN:
            return project
        raise AccessDenied("Not a participant of this project")

    async def list_proposals(self, project_id: UUID, actor: User) -> list[Proposal]:
        """Client and admins see every bid; an analyst sees only their own."""
        project = await self._get_project(project_id)
        query = select(Proposal).where(Proposal.project_id == project.id)
        if actor.role == UserRole.ANALYST:
            query = query.where(Proposal.analyst_id == actor.id)
        elif actor.role != UserRole.ADMIN and project.client_id != actor.id:
            raise AccessDenied("Not a participant of this project")
        result = await self.db.execute(query.order_by(Proposal.created_at))
        return list(result.scalars().all())

    # ======================================================================
    # Project Lifecycle
    # ======================================================================

    async def create_project(
        self,
        client: User,
        title: str,
        budget_min: int,
        budget_max: int,
        description: Optional[str] = None,
        deadline: Optional[datetime] = None,
        publish: bool = True,
    ) -> Project:
        """Create a project, OPEN by default or DRAFT when publish=False."""
        if client.role != UserRole.CLIENT:
            raise AccessDenied("Only clients can create projects")
        if not title or len(title.strip()) < MIN_TITLE_LENGTH:
            raise ValidationError(f"Title must be at least {MIN_TITLE_LENGTH} characters")
        validate_amount(budget_min)
        validate_amount(budget_max)
        if budget_min < self.policy.min_proposal_budget:
            raise ValidationError(
                f"Minimum budget is {format_rupiah(self.policy.min_proposal_budget)}"
            )
        if budget_max < budget_min:
            raise ValidationError("budget_max must not be below budget_min")

        project = Project(
            client_id=client.id,
            title=title.strip(),
            description=description,
            budget_min=budget_min,
            budget_max=budget_max,
            deadline=ensure_utc(deadline),
            status=ProjectStatus.OPEN if publish else ProjectStatus.DRAFT,
        )
        async with atomic(self.db):
            self.db.add(project)
        await self.db.refresh(project)

        logger.info("project_created", project_id=str(project.id), status=project.status.value)
        return project

    async def publish_project(self, project_id: UUID, actor: User) -> Project:
        project = await self._get_owned_project(project_id, actor)
        ensure_transition(Project, project.status, ProjectStatus.OPEN)

        async with atomic(self.db):
            swapped = await compare_and_set(
                self.db, Project, project.id, ProjectStatus.DRAFT, ProjectStatus.OPEN
            )
            if not swapped:
                raise PreconditionFailed("Project changed concurrently; reload and retry")
        await self.db.refresh(project)

        logger.info("project_published", project_id=str(project.id))
        return project

    async def cancel_project(
        self,
        project_id: UUID,
        actor: User,
        now: Optional[datetime] = None,
    ) -> Project:
        """
        Cancel a project from any non-terminal state.

        Refused while any milestone has funds in escrow; those must be
        released or refunded first. Clears the hired analyst, rejects
        outstanding proposals and fails unpaid PENDING charges.
        """
        now = now or utcnow()
        project = await self._get_project(project_id)
        if actor.role != UserRole.ADMIN and project.client_id != actor.id:
            raise AccessDenied("Only the project client can cancel it")

        current = project.status
        ensure_transition(Project, current, ProjectStatus.CANCELLED)

        if await self._holds_escrow(project.id):
            raise PreconditionFailed("Project has funds in escrow; settle or refund them first")

        async with atomic(self.db):
            # Close open charges first so a late settlement cannot escrow
            # into a cancelled project
            abandoned = await self.db.execute(
                update(EscrowTransaction)
                .where(
                    EscrowTransaction.project_id == project.id,
                    EscrowTransaction.status == EscrowStatus.PENDING,
                )
                .values(status=EscrowStatus.FAILED, failed_at=now)
                .execution_options(synchronize_session="fetch")
            )
            if await self._holds_escrow(project.id):
                # Settled between the check above and this unit
                raise PreconditionFailed("Project has funds in escrow; settle or refund them first")

            swapped = await compare_and_set(
                self.db,
                Project,
                project.id,
                current,
                ProjectStatus.CANCELLED,
                cancelled_at=now,
                hired_analyst_id=None,
            )
            if not swapped:
                raise PreconditionFailed("Project changed concurrently; reload and retry")
            await self.db.execute(
                update(Proposal)
                .where(
                    Proposal.project_id == project.id,
                    Proposal.status == ProposalStatus.PENDING,
                )
                .values(status=ProposalStatus.REJECTED)
                .execution_options(synchronize_session="fetch")
            )
            await self.db.execute(
                update(Milestone)
                .where(Milestone.project_id == project.id)
                .values(auto_release_at=None)
                .execution_options(synchronize_session="fetch")
            )
        await self.db.refresh(project)

        logger.info(
            "project_cancelled",
            project_id=str(project.id),
            previous=current.value,
            abandoned_charges=abandoned.rowcount,
        )
        await self.conversations.notify_project(
            project.id, f"Project '{project.title}' was cancelled."
        )
        return project

    # ======================================================================
    # Proposals
    # ======================================================================

    async def create_proposal(
        self,
        project_id: UUID,
        analyst: User,
        cover_letter: str,
        proposed_budget: int,
        proposed_days: int,
        milestones: Iterable[MilestonePlan],
    ) -> Proposal:
        """
        Submit a bid on an OPEN project.

        Raises:
            ValidationError: Malformed bid (milestones not summing to budget, ...)
            AccessDenied: Actor is not an analyst
            PreconditionFailed: No analyst profile, project not OPEN, or
                this analyst already bid
        """
        plans = list(milestones)

        if analyst.role != UserRole.ANALYST:
            raise AccessDenied("Only analysts can submit proposals")
        if not cover_letter or len(cover_letter.strip()) < MIN_COVER_LETTER_LENGTH:
            raise ValidationError(
                f"Cover letter must be at least {MIN_COVER_LETTER_LENGTH} characters"
            )
        validate_amount(proposed_budget)
        if proposed_budget < self.policy.min_proposal_budget:
            raise ValidationError(
                f"Minimum budget is {format_rupiah(self.policy.min_proposal_budget)}"
            )
        if isinstance(proposed_days, bool) or not isinstance(proposed_days, int) or proposed_days < 1:
            raise ValidationError("proposed_days must be at least 1")
        validate_milestone_plans(plans, proposed_budget)

        if analyst.analyst_profile is None:
            raise PreconditionFailed("Complete your analyst profile before bidding")

        project = await self._get_project(project_id)
        if project.status != ProjectStatus.OPEN:
            raise PreconditionFailed("Project is not accepting proposals")

        existing = await self.db.execute(
            select(Proposal.id).where(
                Proposal.project_id == project.id,
                Proposal.analyst_id == analyst.id,
            )
        )
        if existing.first() is not None:
            raise PreconditionFailed("You already submitted a proposal for this project")

        proposal = Proposal(
            project_id=project.id,
            analyst_id=analyst.id,
            cover_letter=cover_letter,
            proposed_budget=proposed_budget,
            proposed_days=proposed_days,
            proposed_milestones=[plan.to_dict() for plan in plans],
            status=ProposalStatus.PENDING,
        )
        try:
            async with atomic(self.db):
                self.db.add(proposal)
        except IntegrityError as e:
            raise PreconditionFailed("You already submitted a proposal for this project") from e

        await self.db.refresh(proposal)
        logger.info(
            "proposal_created",
            project_id=str(project.id),
            proposal_id=str(proposal.id),
            budget=proposed_budget,
            milestones=len(plans),
        )
        return proposal

    async def accept_proposal(
        self,
        project_id: UUID,
        proposal_id: UUID,
        actor: User,
        now: Optional[datetime] = None,
    ) -> Project:
        """
        Form the engagement: hire the analyst and materialise milestones.

        All-or-nothing. On return the project is IN_PROGRESS, the first
        milestone IN_PROGRESS, the rest PENDING, every other pending bid
        REJECTED, and a client/analyst conversation exists.

        Raises:
            NotFound, AccessDenied, PreconditionFailed, ValidationError
        """
        now = now or utcnow()
        project = await self._get_owned_project(project_id, actor)
        proposal = await self._get_proposal(project.id, proposal_id)

        if project.status != ProjectStatus.OPEN:
            raise PreconditionFailed("Project is no longer accepting proposals")
        if proposal.status != ProposalStatus.PENDING:
            raise PreconditionFailed(f"Proposal is already {proposal.status.value}")

        plans = [MilestonePlan.from_mapping(item) for item in proposal.proposed_milestones]
        validate_milestone_plans(plans, proposal.proposed_budget)

        async with atomic(self.db):
            hired = await compare_and_set(
                self.db,
                Project,
                project.id,
                ProjectStatus.OPEN,
                ProjectStatus.IN_PROGRESS,
                hired_analyst_id=proposal.analyst_id,
                hired_at=now,
            )
            if not hired:
                raise PreconditionFailed("Project is no longer accepting proposals")

            accepted = await compare_and_set(
                self.db,
                Proposal,
                proposal.id,
                ProposalStatus.PENDING,
                ProposalStatus.ACCEPTED,
            )
            if not accepted:
                raise PreconditionFailed("Proposal changed concurrently; reload and retry")

            await self.db.execute(
                update(Proposal)
                .where(
                    Proposal.project_id == project.id,
                    Proposal.id != proposal.id,
                    Proposal.status == ProposalStatus.PENDING,
                )
                .values(status=ProposalStatus.REJECTED)
                .execution_options(synchronize_session="fetch")
            )

            for index, plan in enumerate(plans):
                self.db.add(
                    Milestone(
                        project_id=project.id,
                        title=plan.title,
                        description=plan.description,
                        amount=plan.amount,
                        due_date=ensure_utc(plan.due_date),
                        sort_order=index,
                        status=MilestoneStatus.IN_PROGRESS if index == 0 else MilestoneStatus.PENDING,
                        revision_limit=self.policy.revision_limit,
                    )
                )

            conversation = await self.conversations.ensure_conversation(
                project.id, [project.client_id, proposal.analyst_id]
            )

        await self.db.refresh(project)
        logger.info(
            "engagement_formed",
            project_id=str(project.id),
            proposal_id=str(proposal.id),
            analyst_id=str(proposal.analyst_id),
            milestones=len(plans),
        )
        await self.conversations.post_system_message(
            conversation.id,
            f"Proposal accepted. Project '{project.title}' started with "
            f"{len(plans)} milestone(s) totalling {format_rupiah(proposal.proposed_budget)}.",
        )
        return project

    async def reject_proposal(
        self,
        project_id: UUID,
        proposal_id: UUID,
        actor: User,
    ) -> Proposal:
        project = await self._get_owned_project(project_id, actor)
        proposal = await self._get_proposal(project.id, proposal_id)

        if project.status != ProjectStatus.OPEN:
            raise PreconditionFailed("Project is no longer accepting proposals")
        ensure_transition(Proposal, proposal.status, ProposalStatus.REJECTED)

        async with atomic(self.db):
            swapped = await compare_and_set(
                self.db,
                Proposal,
                proposal.id,
                ProposalStatus.PENDING,
                ProposalStatus.REJECTED,
            )
            if not swapped:
                raise PreconditionFailed("Proposal changed concurrently; reload and retry")
        await self.db.refresh(proposal)

        logger.info("proposal_rejected", proposal_id=str(proposal.id))
        return proposal
