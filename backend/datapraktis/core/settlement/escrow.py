"""
Escrow Service - milestone funding lifecycle.

PENDING -> ESCROWED -> RELEASED, with FAILED and REFUNDED branches.

Gateway notifications are delivered at least once, so every callback is
applied by inspecting the stored status: a notification that would not
move the transaction along a webhook edge is accepted as a no-op.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from datapraktis.core.database import atomic
from datapraktis.core.exceptions import (
    AccessDenied,
    AlreadyPaid,
    ExternalServiceFailure,
    InvalidSignature,
    NotFound,
    PreconditionFailed,
    UnknownOrderReference,
    ValidationError,
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
from datapraktis.core.settlement.gateway import (
    GatewayNotification,
    PayerInfo,
    PaymentGateway,
    map_gateway_status,
)
from datapraktis.core.settlement.ledger import hold_release_time, split_fee, utcnow
from datapraktis.core.settlement.policy import SettlementPolicy
from datapraktis.core.settlement.transitions import compare_and_set

logger = structlog.get_logger()


# Transitions a gateway notification may drive. Re-funding (back to
# PENDING) only happens through initiate().
WEBHOOK_EDGES = frozenset({
    (EscrowStatus.PENDING, EscrowStatus.ESCROWED),
    (EscrowStatus.PENDING, EscrowStatus.FAILED),
    (EscrowStatus.ESCROWED, EscrowStatus.REFUNDED),
})

PAID_STATUSES = (EscrowStatus.ESCROWED, EscrowStatus.RELEASED)


def order_reference(project_id: UUID, milestone_id: UUID, attempt: int) -> str:
    """Deterministic gateway order id (doubles as the idempotency key)."""
    return f"DP-{project_id.hex[:8]}-{milestone_id.hex[:8]}-{attempt}"


@dataclass(frozen=True)
class CallbackOutcome:
    """What a gateway notification did to its transaction."""
    order_ref: str
    previous_status: EscrowStatus
    status: EscrowStatus
    applied: bool
    milestone_started: bool = False


class EscrowService:
    """
    Funding, gateway callbacks and release for milestone escrow.

    Usage:
        service = EscrowService(db, gateway)
        tx = await service.initiate(milestone_id, client)
        outcome = await service.on_gateway_callback(notification)
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        policy: Optional[SettlementPolicy] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.policy = policy or SettlementPolicy.from_settings()

    # ======================================================================
    # Lookups
    # ======================================================================

    async def get_milestone(self, milestone_id: UUID) -> Milestone:
        milestone = await self.db.get(Milestone, milestone_id)
        if milestone is None:
            raise NotFound("Milestone not found")
        return milestone

    async def get_project(self, project_id: UUID) -> Project:
        project = await self.db.get(Project, project_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    async def get_transaction_for_milestone(self, milestone_id: UUID) -> Optional[EscrowTransaction]:
        result = await self.db.execute(
            select(EscrowTransaction).where(EscrowTransaction.milestone_id == milestone_id)
        )
        return result.scalar_one_or_none()

    async def get_transaction_by_order_ref(self, order_ref: str) -> Optional[EscrowTransaction]:
        result = await self.db.execute(
            select(EscrowTransaction).where(EscrowTransaction.gateway_order_ref == order_ref)
        )
        return result.scalar_one_or_none()

    # ======================================================================
    # Initiate
    # ======================================================================

    async def initiate(
        self,
        milestone_id: UUID,
        actor: User,
        now: Optional[datetime] = None,
    ) -> EscrowTransaction:
        """
        Request a gateway charge for a milestone and record it as PENDING.

        A PENDING charge the gateway still considers open is returned
        as is, so its order reference stays payable and known. A new
        attempt is only issued once the gateway reports the old order
        as failed.

        The gateway call happens before anything is written; if it fails
        (ExternalServiceFailure) the attempt counter is untouched, so a
        retry reuses the same order reference.

        Raises:
            NotFound, AccessDenied, PreconditionFailed, AlreadyPaid,
            ExternalServiceFailure
        """
        milestone = await self.get_milestone(milestone_id)
        project = await self.get_project(milestone.project_id)

        if project.client_id != actor.id:
            raise AccessDenied("Only the project client can fund a milestone")
        if project.status != ProjectStatus.IN_PROGRESS or project.hired_analyst_id is None:
            raise PreconditionFailed("Project is not in progress")
        if milestone.status in (MilestoneStatus.APPROVED, MilestoneStatus.DISPUTED):
            raise PreconditionFailed(f"Milestone is {milestone.status.value}")

        transaction = await self.get_transaction_for_milestone(milestone.id)
        if transaction is not None and transaction.status in PAID_STATUSES:
            raise AlreadyPaid("Milestone has already been paid")
        if transaction is not None and transaction.status == EscrowStatus.PENDING:
            outstanding = await self._outstanding_charge_status(transaction)
            if outstanding == EscrowStatus.ESCROWED:
                raise AlreadyPaid("Payment received; awaiting gateway confirmation")
            if outstanding != EscrowStatus.FAILED:
                logger.info(
                    "escrow_charge_reused",
                    order_ref=transaction.gateway_order_ref,
                    attempt=transaction.attempt,
                )
                return transaction

        split = split_fee(milestone.amount, self.policy.fee_rate)
        attempt = transaction.attempt + 1 if transaction is not None else 1
        order_ref = order_reference(project.id, milestone.id, attempt)

        charge = await self.gateway.initiate_charge(
            order_ref=order_ref,
            amount=split.gross,
            payer=PayerInfo(name=actor.name or "Customer", email=actor.email),
            description=f"{project.title} - {milestone.title}",
        )

        values: dict[str, Any] = dict(
            analyst_id=project.hired_analyst_id,
            amount=split.gross,
            platform_fee=split.fee,
            net_amount=split.net,
            gateway_order_ref=order_ref,
            gateway_token=charge.token,
            redirect_url=charge.redirect_url,
            attempt=attempt,
        )

        async with atomic(self.db):
            if transaction is None:
                transaction = EscrowTransaction(
                    project_id=project.id,
                    milestone_id=milestone.id,
                    status=EscrowStatus.PENDING,
                    **values,
                )
                self.db.add(transaction)
            else:
                swapped = await compare_and_set(
                    self.db,
                    EscrowTransaction,
                    transaction.id,
                    transaction.status,
                    EscrowStatus.PENDING,
                    failed_at=None,
                    refunded_at=None,
                    **values,
                )
                if not swapped:
                    raise PreconditionFailed("Escrow transaction changed concurrently; retry")

        await self.db.refresh(transaction)
        logger.info(
            "escrow_initiated",
            order_ref=order_ref,
            milestone_id=str(milestone.id),
            amount=split.gross,
            fee=split.fee,
            net=split.net,
            attempt=attempt,
        )
        return transaction

    async def _outstanding_charge_status(
        self, transaction: EscrowTransaction
    ) -> Optional[EscrowStatus]:
        """Gateway's view of a PENDING order; None when unknown or unreachable."""
        try:
            status = await self.gateway.get_status(transaction.gateway_order_ref)
        except ExternalServiceFailure as e:
            logger.warning(
                "escrow_status_check_failed",
                order_ref=transaction.gateway_order_ref,
                error=e.message,
            )
            return None
        return map_gateway_status(
            str(status.get("transaction_status", "")), status.get("fraud_status")
        )

    # ======================================================================
    # Gateway Callback
    # ======================================================================

    async def on_gateway_callback(
        self,
        notification: GatewayNotification,
        now: Optional[datetime] = None,
    ) -> CallbackOutcome:
        """
        Apply a gateway payment-status notification.

        Raises:
            InvalidSignature: Signature check failed (no state change)
            UnknownOrderReference: No transaction for the order id
            ValidationError: Signed amount differs from the stored amount
        """
        now = now or utcnow()

        if not self.gateway.verify_signature(notification):
            logger.warning(
                "webhook_rejected",
                reason="invalid_signature",
                order_ref=notification.order_ref,
            )
            raise InvalidSignature("Invalid notification signature")

        transaction = await self.get_transaction_by_order_ref(notification.order_ref)
        if transaction is None:
            logger.warning(
                "webhook_rejected",
                reason="unknown_order",
                order_ref=notification.order_ref,
            )
            raise UnknownOrderReference(f"Unknown order {notification.order_ref}")

        if not _amount_matches(notification.gross_amount, transaction.amount):
            logger.warning(
                "webhook_rejected",
                reason="amount_mismatch",
                order_ref=notification.order_ref,
                notified=notification.gross_amount,
                stored=transaction.amount,
            )
            raise ValidationError("Notified amount does not match the escrow amount")

        previous = transaction.status
        target = map_gateway_status(notification.transaction_status, notification.fraud_status)

        if (
            target == previous == EscrowStatus.PENDING
            and notification.payment_type
            and notification.payment_type != transaction.payment_method
        ):
            async with atomic(self.db):
                transaction.payment_method = notification.payment_type

        if target is None or (previous, target) not in WEBHOOK_EDGES:
            if target == EscrowStatus.ESCROWED and previous == EscrowStatus.FAILED:
                # Paid after the charge was closed; refunded by hand
                logger.warning(
                    "webhook_payment_on_closed_charge",
                    order_ref=notification.order_ref,
                    amount=transaction.amount,
                )
            else:
                logger.info(
                    "webhook_noop",
                    order_ref=notification.order_ref,
                    gateway_status=notification.transaction_status,
                    status=previous.value,
                )
            return CallbackOutcome(
                order_ref=notification.order_ref,
                previous_status=previous,
                status=previous,
                applied=False,
            )

        values: dict[str, Any] = {}
        if notification.payment_type:
            values["payment_method"] = notification.payment_type
        if target == EscrowStatus.ESCROWED:
            values["escrowed_at"] = now
        elif target == EscrowStatus.FAILED:
            values["failed_at"] = now
        elif target == EscrowStatus.REFUNDED:
            values["refunded_at"] = now

        started = False
        async with atomic(self.db):
            applied = await compare_and_set(
                self.db, EscrowTransaction, transaction.id, previous, target, **values
            )
            if applied and target == EscrowStatus.ESCROWED:
                started = await start_milestone_if_due(self.db, transaction.milestone_id)

        if not applied:
            # A duplicate delivery committed first
            await self.db.refresh(transaction)
            logger.info("webhook_duplicate", order_ref=notification.order_ref)
            return CallbackOutcome(
                order_ref=notification.order_ref,
                previous_status=previous,
                status=transaction.status,
                applied=False,
            )

        logger.info(
            "escrow_status_changed",
            order_ref=notification.order_ref,
            previous=previous.value,
            status=target.value,
            milestone_started=started,
        )
        return CallbackOutcome(
            order_ref=notification.order_ref,
            previous_status=previous,
            status=target,
            applied=True,
            milestone_started=started,
        )

    # ======================================================================
    # Release
    # ======================================================================

    async def release(
        self,
        milestone_id: UUID,
        actor: Optional[User] = None,
        now: Optional[datetime] = None,
    ) -> EscrowTransaction:
        """
        Release funds for an approved milestone as a standalone unit.

        Approval already releases in the same unit; this is the repair
        path for a transaction left ESCROWED. Already RELEASED is a no-op.
        """
        now = now or utcnow()
        milestone = await self.get_milestone(milestone_id)
        project = await self.get_project(milestone.project_id)

        if actor is not None and actor.role != UserRole.ADMIN and project.client_id != actor.id:
            raise AccessDenied("Only the project client can release funds")
        if milestone.status != MilestoneStatus.APPROVED:
            raise PreconditionFailed("Milestone has not been approved")

        transaction = await self.get_transaction_for_milestone(milestone.id)
        if transaction is None:
            raise PreconditionFailed("Milestone has no escrow transaction")
        if transaction.status == EscrowStatus.RELEASED:
            return transaction
        if transaction.status != EscrowStatus.ESCROWED:
            raise PreconditionFailed(f"Escrow is {transaction.status.value}, not escrowed")

        async with atomic(self.db):
            await release_funds(
                self.db, milestone, transaction, now, self.policy.security_hold_days
            )

        await self.db.refresh(transaction)
        return transaction

    async def check_status(
        self,
        order_ref: str,
        actor: Optional[User] = None,
    ) -> tuple[EscrowTransaction, dict[str, Any]]:
        """Ask the gateway for its view of an order (manual verification)."""
        transaction = await self.get_transaction_by_order_ref(order_ref)
        if transaction is None:
            raise UnknownOrderReference(f"Unknown order {order_ref}")

        if actor is not None and actor.role != UserRole.ADMIN:
            project = await self.get_project(transaction.project_id)
            if actor.id not in (project.client_id, transaction.analyst_id):
                raise AccessDenied("Not a participant of this project")

        return transaction, await self.gateway.get_status(order_ref)


# ==========================================================================
# Unit-of-work Steps
# ==========================================================================
# These join the caller's transaction and never commit.

async def start_milestone_if_due(db: AsyncSession, milestone_id: UUID) -> bool:
    """
    Move a PENDING milestone to IN_PROGRESS if it is next in line.

    A milestone only starts when its project is IN_PROGRESS and every
    earlier milestone is APPROVED.
    """
    milestone = await db.get(Milestone, milestone_id)
    if milestone is None or milestone.status != MilestoneStatus.PENDING:
        return False

    project = await db.get(Project, milestone.project_id)
    if project is None or project.status != ProjectStatus.IN_PROGRESS:
        return False

    result = await db.execute(
        select(func.count()).select_from(Milestone).where(
            Milestone.project_id == milestone.project_id,
            Milestone.sort_order < milestone.sort_order,
            Milestone.status != MilestoneStatus.APPROVED,
        )
    )
    if result.scalar_one() > 0:
        return False

    return await compare_and_set(
        db,
        Milestone,
        milestone.id,
        MilestoneStatus.PENDING,
        MilestoneStatus.IN_PROGRESS,
    )


async def release_funds(
    db: AsyncSession,
    milestone: Milestone,
    transaction: EscrowTransaction,
    now: datetime,
    hold_days: int,
) -> bool:
    """
    Release escrowed funds for an approved milestone.

    Returns False if the transaction was no longer ESCROWED.
    """
    if milestone.status != MilestoneStatus.APPROVED:
        raise PreconditionFailed("Escrow can only be released for an approved milestone")

    available_at = hold_release_time(now, hold_days)
    released = await compare_and_set(
        db,
        EscrowTransaction,
        transaction.id,
        EscrowStatus.ESCROWED,
        EscrowStatus.RELEASED,
        released_at=now,
        available_at=available_at,
    )
    if not released:
        return False

    # Cached counter only; balances are derived from transactions
    await db.execute(
        update(AnalystProfile)
        .where(AnalystProfile.user_id == transaction.analyst_id)
        .values(total_earnings=AnalystProfile.total_earnings + transaction.net_amount)
        .execution_options(synchronize_session=False)
    )

    logger.info(
        "escrow_released",
        order_ref=transaction.gateway_order_ref,
        analyst_id=str(transaction.analyst_id),
        net=transaction.net_amount,
        available_at=available_at.isoformat(),
    )
    return True


def _amount_matches(notified: str, stored: int) -> bool:
    """Midtrans sends gross_amount as a decimal string, e.g. "1000000.00"."""
    try:
        return Decimal(notified) == Decimal(stored)
    except (InvalidOperation, ValueError):
        return False
