"""
DataPraktis - Milestone Workflow Tests
=======================================

Submit, approve, revision and dispute transitions.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from datapraktis.core.exceptions import (
    AccessDenied,
    PreconditionFailed,
    RevisionLimitExceeded,
)
from datapraktis.core.models import (
    AnalystProfile,
    EscrowStatus,
    EscrowTransaction,
    Message,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    User,
)
from datapraktis.core.schemas import MilestoneResponse
from datapraktis.core.settlement.milestones import MilestoneService
from datapraktis.core.settlement.policy import SettlementPolicy

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

ACTIVE = (
    MilestoneStatus.IN_PROGRESS,
    MilestoneStatus.SUBMITTED,
    MilestoneStatus.REVISION_REQUESTED,
)


@pytest.fixture
def milestones(db_session: AsyncSession, policy: SettlementPolicy) -> MilestoneService:
    return MilestoneService(db_session, policy)


async def assert_single_active(db: AsyncSession, project_id) -> None:
    """Exactly one active milestone, with every earlier one APPROVED."""
    result = await db.execute(
        select(Milestone.sort_order, Milestone.status)
        .where(Milestone.project_id == project_id)
        .order_by(Milestone.sort_order)
    )
    rows = result.all()
    active = [order for order, status in rows if status in ACTIVE]
    assert len(active) == 1
    assert all(status == MilestoneStatus.APPROVED for order, status in rows if order < active[0])


async def system_messages(db: AsyncSession) -> list[str]:
    result = await db.execute(
        select(Message.content).where(Message.is_system.is_(True)).order_by(Message.created_at)
    )
    return list(result.scalars().all())


# ==========================================================================
# Submit Tests
# ==========================================================================

class TestSubmit:
    """Tests for MilestoneService.submit()."""

    async def test_submit_starts_review_window(
        self, milestones: MilestoneService, engagement: Project, analyst: User
    ):
        milestone = engagement.milestones[0]

        result = await milestones.submit(milestone.id, analyst, now=NOW)

        assert result.status == MilestoneStatus.SUBMITTED
        assert result.submitted_at == NOW
        assert result.auto_release_at == NOW + timedelta(days=14)

    async def test_only_hired_analyst(
        self, milestones: MilestoneService, engagement: Project, other_analyst: User
    ):
        with pytest.raises(AccessDenied):
            await milestones.submit(engagement.milestones[0].id, other_analyst)

    async def test_pending_milestone_cannot_be_submitted(
        self, milestones: MilestoneService, engagement: Project, analyst: User
    ):
        with pytest.raises(PreconditionFailed):
            await milestones.submit(engagement.milestones[1].id, analyst)

    async def test_double_submit_refused(
        self, milestones: MilestoneService, engagement: Project, analyst: User
    ):
        milestone_id = engagement.milestones[0].id
        await milestones.submit(milestone_id, analyst, now=NOW)

        with pytest.raises(PreconditionFailed):
            await milestones.submit(milestone_id, analyst, now=NOW)

    async def test_submission_posts_system_message(
        self,
        db_session: AsyncSession,
        milestones: MilestoneService,
        engagement: Project,
        analyst: User,
    ):
        await milestones.submit(engagement.milestones[0].id, analyst, now=NOW)

        messages = await system_messages(db_session)
        assert any("submitted for review" in m for m in messages)
        assert all(m.startswith("[SYSTEM]") for m in messages)


# ==========================================================================
# Approve Tests
# ==========================================================================

class TestApprove:
    """Tests for MilestoneService.approve()."""

    async def test_approve_releases_and_advances(
        self,
        db_session: AsyncSession,
        milestones: MilestoneService,
        engagement: Project,
        fund_milestone,
        client_user: User,
        analyst: User,
    ):
        first, second = engagement.milestones
        transaction = await fund_milestone(first.id)
        await milestones.submit(first.id, analyst, now=NOW)

        outcome = await milestones.approve(first.id, client_user, now=NOW + timedelta(days=2))

        assert outcome.applied is True
        assert outcome.status == MilestoneStatus.APPROVED
        assert outcome.released_amount == 360_000
        assert outcome.next_milestone_id == second.id
        assert outcome.project_completed is False
        assert outcome.auto_released is False

        assert first.status == MilestoneStatus.APPROVED
        assert first.auto_release_at is None
        assert second.status == MilestoneStatus.IN_PROGRESS
        await db_session.refresh(transaction)
        assert transaction.status == EscrowStatus.RELEASED
        await assert_single_active(db_session, engagement.id)

    async def test_last_approval_completes_project(
        self,
        db_session: AsyncSession,
        milestones: MilestoneService,
        engagement: Project,
        fund_milestone,
        client_user: User,
        analyst: User,
    ):
        for milestone in engagement.milestones:
            await fund_milestone(milestone.id)
            await milestones.submit(milestone.id, analyst, now=NOW)
            outcome = await milestones.approve(milestone.id, client_user, now=NOW)

        assert outcome.project_completed is True
        assert outcome.next_milestone_id is None
        await db_session.refresh(engagement)
        assert engagement.status == ProjectStatus.COMPLETED
        assert engagement.completed_at is not None
        assert engagement.hired_analyst_id == analyst.id

        profile = await db_session.get(AnalystProfile, analyst.id)
        await db_session.refresh(profile)
        assert profile.completed_projects == 1
        assert profile.total_earnings == 900_000

        messages = await system_messages(db_session)
        assert any("is complete" in m for m in messages)

    async def test_approve_requires_escrow(
        self,
        db_session: AsyncSession,
        milestones: MilestoneService,
        engagement: Project,
        client_user: User,
        analyst: User,
    ):
        """Unfunded work cannot be approved; the milestone stays SUBMITTED."""
        milestone = engagement.milestones[0]
        await milestones.submit(milestone.id, analyst, now=NOW)

        with pytest.raises(PreconditionFailed):
            await milestones.approve(milestone.id, client_user)

        await db_session.refresh(milestone)
        assert milestone.status == MilestoneStatus.SUBMITTED

    async def test_approve_non_submitted_refused(
        self, milestones: MilestoneService, engagement: Project, client_user: User
    ):
        with pytest.raises(PreconditionFailed):
            await milestones.approve(engagement.milestones[0].id, client_user)

    async def test_only_client_can_approve(
        self,
        milestones: MilestoneService,
        engagement: Project,
        fund_milestone,
        analyst: User,
        other_client: User,
    ):
        milestone = engagement.milestones[0]
        await fund_milestone(milestone.id)
        await milestones.submit(milestone.id, analyst, now=NOW)

        with pytest.raises(AccessDenied):
            await milestones.approve(milestone.id, other_client)
        with pytest.raises(AccessDenied):
            await milestones.approve(milestone.id, analyst)

    async def test_lost_race_is_noop(
        self,
        db_session: AsyncSession,
        milestones: MilestoneService,
        engagement: Project,
        fund_milestone,
        client_user: User,
        analyst: User,
    ):
        """
        The row leaves SUBMITTED between the check and the swap: the
        approval reports applied=False and releases nothing.
        """
        milestone = engagement.milestones[0]
        transaction = await fund_milestone(milestone.id)
        await milestones.submit(milestone.id, analyst, now=NOW)

        # Concurrent writer; the loaded milestone still reads SUBMITTED
        await db_session.execute(
            update(Milestone)
            .where(Milestone.id == milestone.id)
            .values(status=MilestoneStatus.APPROVED)
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()
        assert milestone.status == MilestoneStatus.SUBMITTED

        outcome = await milestones.approve(milestone.id, client_user, now=NOW)

        assert outcome.applied is False
        assert outcome.status == MilestoneStatus.APPROVED
        assert outcome.released_amount == 0
        await db_session.refresh(transaction)
        assert transaction.status == EscrowStatus.ESCROWED

    async def test_approve_then_auto_release_settles_once(
        self,
        db_session: AsyncSession,
        milestones: MilestoneService,
        engagement: Project,
        fund_milestone,
        client_user: User,
        analyst: User,
    ):
        """Client approval followed by the scheduler path releases exactly once."""
        milestone = engagement.milestones[0]
        await fund_milestone(milestone.id)
        await milestones.submit(milestone.id, analyst, now=NOW)

        first = await milestones.approve(milestone.id, client_user, now=NOW)
        second = await milestones.approve(milestone.id, auto_release=True, now=NOW)

        assert first.applied is True
        assert second.applied is False
        profile = await db_session.get(AnalystProfile, analyst.id)
        await db_session.refresh(profile)
        assert profile.total_earnings == 360_000

        released = await db_session.execute(
            select(EscrowTransaction).where(EscrowTransaction.status == EscrowStatus.RELEASED)
        )
        assert len(released.scalars().all()) == 1


# ==========================================================================
# Revision Tests
# ==========================================================================

class TestRequestRevision:
    """Tests for MilestoneService.request_revision()."""

    async def test_revision_clears_deadline(
        self,
        milestones: MilestoneService,
        engagement: Project,
        client_user: User,
        analyst: User,
    ):
        milestone_id = engagement.milestones[0].id
        await milestones.submit(milestone_id, analyst, now=NOW)

        milestone = await milestones.request_revision(milestone_id, client_user)

        assert milestone.status == MilestoneStatus.REVISION_REQUESTED
        assert milestone.revision_count == 1
        assert milestone.auto_release_at is None

    async def test_resubmit_after_revision(
        self,
        milestones: MilestoneService,
        engagement: Project,
        client_user: User,
        analyst: User,
    ):
        milestone_id = engagement.milestones[0].id
        await milestones.submit(milestone_id, analyst, now=NOW)
        await milestones.request_revision(milestone_id, client_user)

        later = NOW + timedelta(days=3)
        milestone = await milestones.submit(milestone_id, analyst, now=later)

        assert milestone.status == MilestoneStatus.SUBMITTED
        assert milestone.auto_release_at == later + timedelta(days=14)

    async def test_scenario_d_revision_limit(
        self,
        db_session: AsyncSession,
        create_engagement,
        client_user: User,
        analyst: User,
    ):
        """Limit 2: two revisions succeed, the third raises and the milestone stays SUBMITTED."""
        strict = SettlementPolicy(revision_limit=2)
        project = await create_engagement(policy_override=strict)
        milestone_id = project.milestones[0].id
        service = MilestoneService(db_session, strict)

        for _ in range(2):
            await service.submit(milestone_id, analyst, now=NOW)
            await service.request_revision(milestone_id, client_user)
        await service.submit(milestone_id, analyst, now=NOW)

        with pytest.raises(RevisionLimitExceeded):
            await service.request_revision(milestone_id, client_user)

        milestone = await db_session.get(Milestone, milestone_id)
        await db_session.refresh(milestone)
        assert milestone.status == MilestoneStatus.SUBMITTED
        assert milestone.revision_count == 2
        assert milestone.revision_limit == 2

    async def test_note_posted_as_client_message(
        self,
        db_session: AsyncSession,
        milestones: MilestoneService,
        engagement: Project,
        client_user: User,
        analyst: User,
    ):
        milestone_id = engagement.milestones[0].id
        await milestones.submit(milestone_id, analyst, now=NOW)

        await milestones.request_revision(milestone_id, client_user, note="Please add a cohort chart")

        result = await db_session.execute(
            select(Message).where(Message.sender_id == client_user.id)
        )
        notes = result.scalars().all()
        assert [m.content for m in notes] == ["Please add a cohort chart"]
        assert notes[0].is_system is False

    async def test_only_client_requests_revision(
        self, milestones: MilestoneService, engagement: Project, analyst: User
    ):
        milestone_id = engagement.milestones[0].id
        await milestones.submit(milestone_id, analyst, now=NOW)

        with pytest.raises(AccessDenied):
            await milestones.request_revision(milestone_id, analyst)


# ==========================================================================
# Dispute Tests
# ==========================================================================

class TestDispute:
    """Tests for MilestoneService.mark_disputed()."""

    async def test_admin_disputes_submitted_milestone(
        self,
        milestones: MilestoneService,
        engagement: Project,
        analyst: User,
        admin: User,
    ):
        milestone_id = engagement.milestones[0].id
        await milestones.submit(milestone_id, analyst, now=NOW)

        milestone = await milestones.mark_disputed(milestone_id, admin, reason="Scope disagreement")

        assert milestone.status == MilestoneStatus.DISPUTED
        assert milestone.auto_release_at is None

    async def test_non_admin_refused(
        self, milestones: MilestoneService, engagement: Project, client_user: User
    ):
        with pytest.raises(AccessDenied):
            await milestones.mark_disputed(engagement.milestones[0].id, client_user)

    async def test_approved_milestone_cannot_be_disputed(
        self,
        milestones: MilestoneService,
        engagement: Project,
        fund_milestone,
        client_user: User,
        analyst: User,
        admin: User,
    ):
        milestone_id = engagement.milestones[0].id
        await fund_milestone(milestone_id)
        await milestones.submit(milestone_id, analyst, now=NOW)
        await milestones.approve(milestone_id, client_user, now=NOW)

        with pytest.raises(PreconditionFailed):
            await milestones.mark_disputed(milestone_id, admin)


# ==========================================================================
# Returned State Tests
# ==========================================================================

class TestReturnedMilestoneIsLoaded:
    """Transition results serialise without further database access."""

    async def test_submit_result_serialises(
        self, milestones: MilestoneService, engagement: Project, analyst: User
    ):
        milestone = await milestones.submit(engagement.milestones[0].id, analyst, now=NOW)

        data = MilestoneResponse.model_validate(milestone)

        assert data.status == MilestoneStatus.SUBMITTED
        assert data.updated_at is not None

    async def test_revision_result_serialises(
        self,
        milestones: MilestoneService,
        engagement: Project,
        client_user: User,
        analyst: User,
    ):
        milestone_id = engagement.milestones[0].id
        await milestones.submit(milestone_id, analyst, now=NOW)

        milestone = await milestones.request_revision(milestone_id, client_user)
        data = MilestoneResponse.model_validate(milestone)

        assert data.revision_count == 1
        assert data.updated_at is not None

    async def test_dispute_result_serialises(
        self, milestones: MilestoneService, engagement: Project, admin: User
    ):
        milestone = await milestones.mark_disputed(engagement.milestones[0].id, admin)

        data = MilestoneResponse.model_validate(milestone)

        assert data.status == MilestoneStatus.DISPUTED
        assert data.updated_at is not None
