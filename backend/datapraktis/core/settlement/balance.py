"""
Balance Service - analyst earnings ledger and withdrawals.

Balances are derived on every read from escrow transactions and
withdrawals; nothing here trusts a stored running balance. Released
funds only become withdrawable once their security hold (available_at)
has passed.

    total     = net of RELEASED transactions
    matured   = the part of total whose hold has elapsed
    withdrawn = COMPLETED withdrawals
    pending   = PENDING + PROCESSING withdrawals
    available = matured - withdrawn - pending
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
    BelowMinimumAmount,
    InsufficientBalance,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from datapraktis.core.models import (
    AnalystProfile,
    EscrowStatus,
    EscrowTransaction,
    User,
    UserRole,
    Withdrawal,
    WithdrawalStatus,
)
from datapraktis.core.settlement.ledger import format_rupiah, utcnow, validate_amount
from datapraktis.core.settlement.policy import SettlementPolicy
from datapraktis.core.settlement.transitions import compare_and_set, ensure_transition

logger = structlog.get_logger()


WITHDRAWAL_FEE = 0
IN_FLIGHT_WITHDRAWALS = (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)


@dataclass(frozen=True)
class Balance:
    analyst_id: UUID
    total: int
    matured: int
    on_hold: int
    withdrawn: int
    pending: int
    available: int


@dataclass(frozen=True)
class EarningsReconciliation:
    analyst_id: UUID
    cached: int
    derived: int

    @property
    def drift(self) -> int:
        return self.cached - self.derived


class BalanceService:
    """
    Derived balances plus the withdrawal workflow.

    Usage:
        service = BalanceService(db)
        balance = await service.get_balance(analyst.id)
        withdrawal = await service.request_withdrawal(analyst, 250_000)
    """

    def __init__(self, db: AsyncSession, policy: Optional[SettlementPolicy] = None):
        self.db = db
        self.policy = policy or SettlementPolicy.from_settings()

    # ======================================================================
    # Ledger
    # ======================================================================

    async def _sum_released(self, analyst_id: UUID, matured_by: Optional[datetime] = None) -> int:
        query = select(func.coalesce(func.sum(EscrowTransaction.net_amount), 0)).where(
            EscrowTransaction.analyst_id == analyst_id,
            EscrowTransaction.status == EscrowStatus.RELEASED,
        )
        if matured_by is not None:
            query = query.where(EscrowTransaction.available_at <= matured_by)
        result = await self.db.execute(query)
        return int(result.scalar_one())

    async def _sum_withdrawals(self, analyst_id: UUID, statuses: tuple[WithdrawalStatus, ...]) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Withdrawal.net_amount), 0)).where(
                Withdrawal.analyst_id == analyst_id,
                Withdrawal.status.in_(statuses),
            )
        )
        return int(result.scalar_one())

    async def get_balance(self, analyst_id: UUID, now: Optional[datetime] = None) -> Balance:
        """Compute the analyst's balance from transaction history."""
        now = now or utcnow()
        total = await self._sum_released(analyst_id)
        matured = await self._sum_released(analyst_id, matured_by=now)
        withdrawn = await self._sum_withdrawals(analyst_id, (WithdrawalStatus.COMPLETED,))
        pending = await self._sum_withdrawals(analyst_id, IN_FLIGHT_WITHDRAWALS)

        available = matured - withdrawn - pending
        if available < 0:
            # Withdrawals approved against funds since refunded, or manual edits
            logger.error(
                "negative_available_balance",
                analyst_id=str(analyst_id),
                matured=matured,
                withdrawn=withdrawn,
                pending=pending,
            )
            available = 0

        return Balance(
            analyst_id=analyst_id,
            total=total,
            matured=matured,
            on_hold=total - matured,
            withdrawn=withdrawn,
            pending=pending,
            available=available,
        )

    async def reconcile_earnings(self, analyst_id: UUID) -> EarningsReconciliation:
        """Rebuild the cached total_earnings counter from released transactions."""
        profile = await self.db.get(AnalystProfile, analyst_id, populate_existing=True)
        if profile is None:
            raise NotFound("Analyst profile not found")

        derived = await self._sum_released(analyst_id)
        report = EarningsReconciliation(
            analyst_id=analyst_id,
            cached=profile.total_earnings,
            derived=derived,
        )

        if report.drift:
            logger.warning(
                "earnings_drift_detected",
                analyst_id=str(analyst_id),
                cached=report.cached,
                derived=report.derived,
            )
        async with atomic(self.db):
            profile.total_earnings = derived
        return report

    # ======================================================================
    # Withdrawal Requests
    # ======================================================================

    async def list_withdrawals(
        self,
        analyst_id: Optional[UUID] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 50,
    ) -> list[Withdrawal]:
        query = select(Withdrawal)
        if analyst_id is not None:
            query = query.where(Withdrawal.analyst_id == analyst_id)
        if status is not None:
            query = query.where(Withdrawal.status == status)
        result = await self.db.execute(query.order_by(Withdrawal.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def request_withdrawal(
        self,
        analyst: User,
        amount: int,
        now: Optional[datetime] = None,
    ) -> Withdrawal:
        """
        Create a PENDING withdrawal against the available balance.

        The profile row is locked and its ledger_version bumped before the
        balance is read, so two concurrent requests cannot both spend the
        same funds.

        Raises:
            AccessDenied: Actor is not an analyst
            ValidationError: Amount is not a positive integer
            BelowMinimumAmount: amount < minimum withdrawal
            PreconditionFailed: Payout details missing
            InsufficientBalance: amount > available
        """
        now = now or utcnow()
        if analyst.role != UserRole.ANALYST:
            raise AccessDenied("Only analysts can withdraw")
        validate_amount(amount)
        if amount < self.policy.min_withdrawal_amount:
            raise BelowMinimumAmount(
                f"Minimum withdrawal is {format_rupiah(self.policy.min_withdrawal_amount)}"
            )

        async with atomic(self.db):
            result = await self.db.execute(
                select(AnalystProfile)
                .where(AnalystProfile.user_id == analyst.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            profile = result.scalar_one_or_none()
            if profile is None or not profile.has_payout_details:
                raise PreconditionFailed("Complete your bank account details first")

            bumped = await self.db.execute(
                update(AnalystProfile)
                .where(
                    AnalystProfile.user_id == analyst.id,
                    AnalystProfile.ledger_version == profile.ledger_version,
                )
                .values(ledger_version=profile.ledger_version + 1)
                .execution_options(synchronize_session="fetch")
            )
            if bumped.rowcount != 1:
                raise PreconditionFailed("Another withdrawal is being processed; retry")

            balance = await self.get_balance(analyst.id, now)
            if amount > balance.available:
                logger.info(
                    "withdrawal_refused",
                    analyst_id=str(analyst.id),
                    amount=amount,
                    available=balance.available,
                )
                raise InsufficientBalance(
                    f"Requested {format_rupiah(amount)} but only "
                    f"{format_rupiah(balance.available)} is available"
                )

            withdrawal = Withdrawal(
                analyst_id=analyst.id,
                amount=amount,
                fee=WITHDRAWAL_FEE,
                net_amount=amount - WITHDRAWAL_FEE,
                bank_name=profile.bank_name,
                bank_account_number=profile.bank_account_number,
                bank_account_name=profile.bank_account_name,
                status=WithdrawalStatus.PENDING,
            )
            self.db.add(withdrawal)

        await self.db.refresh(withdrawal)
        logger.info(
            "withdrawal_requested",
            withdrawal_id=str(withdrawal.id),
            analyst_id=str(analyst.id),
            amount=amount,
        )
        return withdrawal

    # ======================================================================
    # Administration
    # ======================================================================

    async def _transition(
        self,
        withdrawal_id: UUID,
        actor: User,
        target: WithdrawalStatus,
        **values,
    ) -> Withdrawal:
        if actor.role != UserRole.ADMIN:
            raise AccessDenied("Admin access required")

        withdrawal = await self.db.get(Withdrawal, withdrawal_id)
        if withdrawal is None:
            raise NotFound("Withdrawal not found")

        current = withdrawal.status
        ensure_transition(Withdrawal, current, target)

        async with atomic(self.db):
            swapped = await compare_and_set(
                self.db, Withdrawal, withdrawal.id, current, target, **values
            )
            if not swapped:
                raise PreconditionFailed("Withdrawal changed concurrently; reload and retry")
        await self.db.refresh(withdrawal)

        logger.info(
            "withdrawal_status_changed",
            withdrawal_id=str(withdrawal.id),
            previous=current.value,
            status=target.value,
            admin_id=str(actor.id),
        )
        return withdrawal

    async def approve_withdrawal(
        self,
        withdrawal_id: UUID,
        actor: User,
        now: Optional[datetime] = None,
    ) -> Withdrawal:
        return await self._transition(
            withdrawal_id, actor, WithdrawalStatus.PROCESSING, processed_at=now or utcnow()
        )

    async def complete_withdrawal(
        self,
        withdrawal_id: UUID,
        actor: User,
        now: Optional[datetime] = None,
    ) -> Withdrawal:
        return await self._transition(
            withdrawal_id, actor, WithdrawalStatus.COMPLETED, completed_at=now or utcnow()
        )

    async def reject_withdrawal(
        self,
        withdrawal_id: UUID,
        actor: User,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Withdrawal:
        """Fail a PENDING or PROCESSING withdrawal; the funds return to available."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        return await self._transition(
            withdrawal_id,
            actor,
            WithdrawalStatus.FAILED,
            failed_at=now or utcnow(),
            failure_reason=reason.strip(),
        )
