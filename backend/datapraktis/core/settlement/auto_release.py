"""
Auto-Release Scheduler - settles milestones nobody reviewed in time.

A sweep picks every SUBMITTED milestone whose review deadline has passed
and runs the scheduler variant of approval on each one, one unit of work
per milestone. A failing milestone is rolled back, logged and reported;
the sweep moves on to the next. Sweeps are idempotent: running one twice,
or alongside a client approval, settles each milestone at most once.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datapraktis.core.database import AsyncSessionLocal
from datapraktis.core.exceptions import SettlementError
from datapraktis.core.models import Milestone, MilestoneStatus
from datapraktis.core.settlement.ledger import utcnow
from datapraktis.core.settlement.milestones import MilestoneService
from datapraktis.core.settlement.policy import SettlementPolicy

logger = structlog.get_logger()


@dataclass(frozen=True)
class SweepError:
    milestone_id: UUID
    code: str
    message: str


@dataclass
class SweepReport:
    """Outcome of one sweep."""
    started_at: datetime
    processed: int = 0
    released: int = 0
    skipped: int = 0
    errors: list[SweepError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "processed": self.processed,
            "released": self.released,
            "skipped": self.skipped,
            "errors": [
                {"milestone_id": str(e.milestone_id), "code": e.code, "message": e.message}
                for e in self.errors
            ],
        }


class AutoReleaseScheduler:
    """
    Periodic auto-release sweep.

    sweep() works on a caller-supplied session (cron endpoint, tests);
    run_forever() opens a fresh session from session_factory per sweep.

    Usage:
        scheduler = AutoReleaseScheduler()
        task = asyncio.create_task(scheduler.run_forever(3600))
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        policy: Optional[SettlementPolicy] = None,
    ):
        self.session_factory = session_factory
        self.policy = policy or SettlementPolicy.from_settings()
        self._stopping = asyncio.Event()

    async def due_milestones(self, db: AsyncSession, now: datetime) -> list[UUID]:
        result = await db.execute(
            select(Milestone.id)
            .where(
                Milestone.status == MilestoneStatus.SUBMITTED,
                Milestone.auto_release_at.is_not(None),
                Milestone.auto_release_at <= now,
            )
            .order_by(Milestone.auto_release_at)
        )
        return list(result.scalars().all())

    async def sweep(self, db: AsyncSession, now: Optional[datetime] = None) -> SweepReport:
        """
        Auto-approve every overdue SUBMITTED milestone.

        Never raises for a single milestone's failure; those end up in
        SweepReport.errors.
        """
        now = now or utcnow()
        report = SweepReport(started_at=now)
        milestone_ids = await self.due_milestones(db, now)
        logger.info("auto_release_sweep_started", due=len(milestone_ids))

        service = MilestoneService(db, self.policy)
        for milestone_id in milestone_ids:
            if self._stopping.is_set():
                logger.info("auto_release_sweep_interrupted", remaining=len(milestone_ids) - report.processed)
                break

            report.processed += 1
            try:
                outcome = await service.approve(milestone_id, auto_release=True, now=now)
            except (SettlementError, SQLAlchemyError) as e:
                await db.rollback()
                code = e.code if isinstance(e, SettlementError) else "database_error"
                message = e.message if isinstance(e, SettlementError) else str(e)
                logger.error(
                    "auto_release_failed",
                    milestone_id=str(milestone_id),
                    code=code,
                    error=message,
                )
                report.errors.append(SweepError(milestone_id, code, message))
                continue

            if outcome.applied:
                report.released += 1
            else:
                report.skipped += 1

        logger.info(
            "auto_release_sweep_finished",
            processed=report.processed,
            released=report.released,
            skipped=report.skipped,
            errors=len(report.errors),
        )
        return report

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        async with self.session_factory() as db:
            return await self.sweep(db, now)

    async def run_forever(self, interval: Optional[float] = None) -> None:
        """Sweep every interval seconds until stop() or cancellation."""
        interval = interval or 3600
        self._stopping.clear()
        logger.info("auto_release_scheduler_started", interval=interval)

        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                # One bad sweep must not end the loop; the next tick retries
                logger.exception("auto_release_sweep_aborted")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("auto_release_scheduler_stopped")

    def stop(self) -> None:
        self._stopping.set()
