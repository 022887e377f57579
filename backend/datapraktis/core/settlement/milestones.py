"""
Milestone Service - the work-review state machine.

IN_PROGRESS -> SUBMITTED -> APPROVED, with REVISION_REQUESTED loops
and an out-of-band DISPUTED escalation.

Approval is the one multi-entity unit: milestone APPROVED, escrow
RELEASED, next milestone started and, on the last milestone, project
COMPLETED all commit together. Both status writes are compare-and-swap,
so a client approval racing the auto-release sweep settles exactly once.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from datapraktis.core.database import atomic
from datapraktis.core.exceptions import (
    AccessDenied,
    NotFound,
    PreconditionFailed,
    RevisionLimitExceeded,
)
from datapraktis.core.models import (
    AnalystProfile,
    EscrowStatus,
    EscrowTransaction,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    User,
    UserRole,
)
from datapraktis.core.settlement.conversations import ConversationService
from datapraktis.core.settlement.escrow import release_funds, start_milestone_if_due
from datapraktis.core.settlement.ledger import format_rupiah, utcnow
from datapraktis.core.settlement.policy import SettlementPolicy
from datapraktis.core.settlement.transitions import compare_and_set, ensure_transition

logger = structlog.get_logger()


@dataclass(frozen=True)
class ApprovalOutcome:
    """Result of an approval attempt. applied=False means someone else won."""
    milestone_id: UUID
    applied: bool
    status: MilestoneStatus
    released_amount: int = 0
    next_milestone_id: Optional[UUID] = None
    project_completed: bool = False
    auto_released: bool = False


class MilestoneService:
    """
    Submit / approve / revise / dispute transitions for milestones.

    Usage:
        service = MilestoneService(db)
        await service.submit(milestone_id, analyst)
        outcome = await service.approve(milestone_id, client)
    """

    def __init__(self, db: AsyncSession, policy: Optional[SettlementPolicy] = None):
        self.db = db
        self.policy = policy or SettlementPolicy.from_settings()
        self.conversations = ConversationService(db)

    async def _load(self, milestone_id: UUID) -> tuple[Milestone, Project]:
        milestone = await self.db.get(Milestone, milestone_id)
        if milestone is None:
            raise NotFound("Milestone not found")
        project = await self.db.get(Project, milestone.project_id)
        if project is None:
            raise NotFound("Project not found")
        return milestone, project

    async def get_for_actor(self, milestone_id: UUID, actor: User) -> Milestone:
        """Fetch a milestone visible to the project's client, analyst or an admin."""
        milestone, project = await self._load(milestone_id)
        if actor.role != UserRole.ADMIN and actor.id not in (
            project.client_id,
            project.hired_analyst_id,
        ):
            raise AccessDenied("Not a participant of this project")
        return milestone

    # ======================================================================
    # Submit
    # ======================================================================

    async def submit(
        self,
        milestone_id: UUID,
        actor: User,
        now: Optional[datetime] = None,
    ) -> Milestone:
        """
        Hand in work for review and start the auto-release clock.

        Raises:
            AccessDenied: Actor is not the hired analyst
            PreconditionFailed: Milestone is not IN_PROGRESS or REVISION_REQUESTED
        """
        now = now or utcnow()
        milestone, project = await self._load(milestone_id)

        if project.hired_analyst_id != actor.id:
            raise AccessDenied("Only the hired analyst can submit work")
        if project.status != ProjectStatus.IN_PROGRESS:
            raise PreconditionFailed("Project is not in progress")

        current = milestone.status
        ensure_transition(Milestone, current, MilestoneStatus.SUBMITTED)
        deadline = now + self.policy.review_window

        async with atomic(self.db):
            swapped = await compare_and_set(
                self.db,
                Milestone,
                milestone.id,
                current,
                MilestoneStatus.SUBMITTED,
                submitted_at=now,
                auto_release_at=deadline,
            )
            if not swapped:
                raise PreconditionFailed("Milestone changed concurrently; reload and retry")
        await self.db.refresh(milestone)

        logger.info(
            "milestone_submitted",
            milestone_id=str(milestone.id),
            resubmission=current == MilestoneStatus.REVISION_REQUESTED,
            auto_release_at=deadline.isoformat(),
        )
        await self.conversations.notify_project(
            project.id,
            f"Milestone '{milestone.title}' was submitted for review. "
            f"It will be approved automatically on {deadline:%Y-%m-%d} "
            f"if no action is taken.",
        )
        return milestone

    # ======================================================================
    # Approve
    # ======================================================================

    async def approve(
        self,
        milestone_id: UUID,
        actor: Optional[User] = None,
        *,
        auto_release: bool = False,
        now: Optional[datetime] = None,
    ) -> ApprovalOutcome:
        """
        Approve a submitted milestone and release its escrow.

        With auto_release=True (scheduler) no actor is required and a
        milestone that already left SUBMITTED is a no-op instead of an error.

        Raises:
            AccessDenied: Actor is not the project client
            PreconditionFailed: Not SUBMITTED (client path), project not in
                progress, or funds not escrowed
        """
        now = now or utcnow()
        milestone, project = await self._load(milestone_id)

        if not auto_release and (actor is None or project.client_id != actor.id):
            raise AccessDenied("Only the project client can approve a milestone")

        if milestone.status != MilestoneStatus.SUBMITTED:
            if auto_release:
                logger.info(
                    "auto_release_skipped",
                    milestone_id=str(milestone.id),
                    status=milestone.status.value,
                )
                return ApprovalOutcome(
                    milestone_id=milestone.id,
                    applied=False,
                    status=milestone.status,
                    auto_released=True,
                )
            raise PreconditionFailed(
                f"Milestone is {milestone.status.value}, only submitted work can be approved"
            )

        if project.status != ProjectStatus.IN_PROGRESS:
            raise PreconditionFailed("Project is not in progress")

        result = await self.db.execute(
            select(EscrowTransaction).where(EscrowTransaction.milestone_id == milestone.id)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None or transaction.status != EscrowStatus.ESCROWED:
            raise PreconditionFailed("Milestone funds are not held in escrow")

        next_milestone_id: Optional[UUID] = None
        completed = False

        async with atomic(self.db):
            applied = await compare_and_set(
                self.db,
                Milestone,
                milestone.id,
                MilestoneStatus.SUBMITTED,
                MilestoneStatus.APPROVED,
                approved_at=now,
                auto_release_at=None,
                auto_released=auto_release,
            )
            if applied:
                released = await release_funds(
                    self.db, milestone, transaction, now, self.policy.security_hold_days
                )
                if not released:
                    raise PreconditionFailed("Escrow changed concurrently; approval rolled back")
                next_milestone_id = await self._start_next(project.id, milestone.sort_order)
                completed = await self._complete_if_done(project, now)

        if not applied:
            await self.db.refresh(milestone)
            logger.info(
                "approval_lost_race",
                milestone_id=str(milestone.id),
                status=milestone.status.value,
                auto_release=auto_release,
            )
            return ApprovalOutcome(
                milestone_id=milestone.id,
                applied=False,
                status=milestone.status,
                auto_released=auto_release,
            )

        logger.info(
            "milestone_approved",
            milestone_id=str(milestone.id),
            auto_release=auto_release,
            net=transaction.net_amount,
            next_milestone_id=str(next_milestone_id) if next_milestone_id else None,
            project_completed=completed,
        )

        if auto_release:
            text = (
                f"Milestone '{milestone.title}' was approved automatically because "
                f"the {self.policy.review_window_days}-day review window elapsed. "
                f"{format_rupiah(transaction.net_amount)} has been released to the analyst."
            )
        else:
            text = (
                f"Milestone '{milestone.title}' was approved. "
                f"{format_rupiah(transaction.net_amount)} has been released to the analyst."
            )
        await self.conversations.notify_project(project.id, text)
        if completed:
            await self.conversations.notify_project(
                project.id, f"All milestones approved. Project '{project.title}' is complete."
            )

        return ApprovalOutcome(
            milestone_id=milestone.id,
            applied=True,
            status=MilestoneStatus.APPROVED,
            released_amount=transaction.net_amount,
            next_milestone_id=next_milestone_id,
            project_completed=completed,
            auto_released=auto_release,
        )

    async def _start_next(self, project_id: UUID, sort_order: int) -> Optional[UUID]:
        result = await self.db.execute(
            select(Milestone)
            .where(Milestone.project_id == project_id, Milestone.sort_order > sort_order)
            .order_by(Milestone.sort_order)
            .limit(1)
        )
        following = result.scalar_one_or_none()
        if following is None:
            return None
        if await start_milestone_if_due(self.db, following.id):
            return following.id
        return None

    async def _complete_if_done(self, project: Project, now: datetime) -> bool:
        result = await self.db.execute(
            select(func.count()).select_from(Milestone).where(
                Milestone.project_id == project.id,
                Milestone.status != MilestoneStatus.APPROVED,
            )
        )
        if result.scalar_one() > 0:
            return False

        completed = await compare_and_set(
            self.db,
            Project,
            project.id,
            ProjectStatus.IN_PROGRESS,
            ProjectStatus.COMPLETED,
            completed_at=now,
        )
        if completed:
            await self.db.execute(
                update(AnalystProfile)
                .where(AnalystProfile.user_id == project.hired_analyst_id)
                .values(completed_projects=AnalystProfile.completed_projects + 1)
                .execution_options(synchronize_session=False)
            )
        return completed

    # ======================================================================
    # Revisions & Disputes
    # ======================================================================

    async def request_revision(
        self,
        milestone_id: UUID,
        actor: User,
        note: Optional[str] = None,
    ) -> Milestone:
        """
        Send submitted work back to the analyst.

        Raises:
            AccessDenied: Actor is not the project client
            PreconditionFailed: Milestone is not SUBMITTED
            RevisionLimitExceeded: revision_count already at revision_limit
        """
        milestone, project = await self._load(milestone_id)

        if project.client_id != actor.id:
            raise AccessDenied("Only the project client can request a revision")
        if milestone.status != MilestoneStatus.SUBMITTED:
            raise PreconditionFailed(
                f"Milestone is {milestone.status.value}, only submitted work can be revised"
            )
        if milestone.revision_count >= milestone.revision_limit:
            raise RevisionLimitExceeded(
                f"Revision limit of {milestone.revision_limit} reached; open a dispute instead"
            )

        async with atomic(self.db):
            swapped = await compare_and_set(
                self.db,
                Milestone,
                milestone.id,
                MilestoneStatus.SUBMITTED,
                MilestoneStatus.REVISION_REQUESTED,
                revision_count=milestone.revision_count + 1,
                auto_release_at=None,
            )
            if not swapped:
                raise PreconditionFailed("Milestone changed concurrently; reload and retry")
        await self.db.refresh(milestone)

        logger.info(
            "revision_requested",
            milestone_id=str(milestone.id),
            revision_count=milestone.revision_count,
            revision_limit=milestone.revision_limit,
        )
        await self.conversations.notify_project(
            project.id,
            f"Revision {milestone.revision_count}/{milestone.revision_limit} "
            f"requested for milestone '{milestone.title}'.",
        )
        if note:
            await self.conversations.notify_project(project.id, note, sender_id=actor.id)
        return milestone

    async def mark_disputed(
        self,
        milestone_id: UUID,
        actor: User,
        reason: Optional[str] = None,
    ) -> Milestone:
        """Escalate a milestone to manual dispute resolution (admin only)."""
        if actor.role != UserRole.ADMIN:
            raise AccessDenied("Only an administrator can open a dispute")

        milestone, project = await self._load(milestone_id)
        current = milestone.status
        ensure_transition(Milestone, current, MilestoneStatus.DISPUTED)

        async with atomic(self.db):
            swapped = await compare_and_set(
                self.db,
                Milestone,
                milestone.id,
                current,
                MilestoneStatus.DISPUTED,
                auto_release_at=None,
            )
            if not swapped:
                raise PreconditionFailed("Milestone changed concurrently; reload and retry")
        await self.db.refresh(milestone)

        logger.warning(
            "milestone_disputed",
            milestone_id=str(milestone.id),
            previous=current.value,
            reason=reason,
        )
        text = f"Milestone '{milestone.title}' is under dispute review."
        if reason:
            text = f"{text} Reason: {reason}"
        await self.conversations.notify_project(project.id, text)
        return milestone
