"""
DataPraktis - Withdrawals API
==============================

Analyst balance and payout requests, plus the admin payout workflow:
PENDING -> PROCESSING -> COMPLETED, or FAILED with a reason.
"""

from dataclasses import asdict
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from datapraktis.api.deps import CurrentAdminUser, CurrentAnalyst, DbSession, Policy
from datapraktis.core.models import WithdrawalStatus
from datapraktis.core.schemas import (
    BalanceResponse,
    ReconciliationResponse,
    WithdrawalCreate,
    WithdrawalOverview,
    WithdrawalReject,
    WithdrawalResponse,
)
from datapraktis.core.settlement.balance import BalanceService

router = APIRouter(prefix="/analyst/withdrawals", tags=["Withdrawals"])
admin_router = APIRouter(prefix="/admin", tags=["Admin"])


# ==========================================================================
# Analyst
# ==========================================================================

@router.get(
    "",
    response_model=WithdrawalOverview,
    summary="Balance and withdrawal history",
)
async def get_withdrawals(
    current_user: CurrentAnalyst,
    db: DbSession,
    policy: Policy,
) -> WithdrawalOverview:
    """
    Current balance (derived from released escrow) and the last 20
    withdrawals.
    """
    service = BalanceService(db, policy)
    balance = await service.get_balance(current_user.id)
    withdrawals = await service.list_withdrawals(analyst_id=current_user.id, limit=20)

    fields = asdict(balance)
    fields.pop("analyst_id")
    return WithdrawalOverview(
        balance=BalanceResponse(**fields),
        withdrawals=[WithdrawalResponse.model_validate(w) for w in withdrawals],
    )


@router.post(
    "",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request withdrawal",
    responses={
        201: {"description": "Withdrawal requested"},
        400: {"description": "Insufficient balance or below minimum"},
        409: {"description": "Bank details missing"},
    },
)
async def request_withdrawal(
    data: WithdrawalCreate,
    current_user: CurrentAnalyst,
    db: DbSession,
    policy: Policy,
) -> WithdrawalResponse:
    service = BalanceService(db, policy)
    withdrawal = await service.request_withdrawal(current_user, data.amount)
    return WithdrawalResponse.model_validate(withdrawal)


# ==========================================================================
# Admin
# ==========================================================================

@admin_router.get(
    "/withdrawals",
    response_model=list[WithdrawalResponse],
    summary="List withdrawals",
)
async def list_withdrawals(
    current_user: CurrentAdminUser,
    db: DbSession,
    withdrawal_status: Optional[WithdrawalStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
) -> list[WithdrawalResponse]:
    service = BalanceService(db)
    withdrawals = await service.list_withdrawals(status=withdrawal_status, limit=limit)
    return [WithdrawalResponse.model_validate(w) for w in withdrawals]


@admin_router.post(
    "/withdrawals/{withdrawal_id}/approve",
    response_model=WithdrawalResponse,
    summary="Start processing a withdrawal",
    responses={409: {"description": "Withdrawal is not pending"}},
)
async def approve_withdrawal(
    withdrawal_id: UUID,
    current_user: CurrentAdminUser,
    db: DbSession,
) -> WithdrawalResponse:
    service = BalanceService(db)
    withdrawal = await service.approve_withdrawal(withdrawal_id, current_user)
    return WithdrawalResponse.model_validate(withdrawal)


@admin_router.post(
    "/withdrawals/{withdrawal_id}/complete",
    response_model=WithdrawalResponse,
    summary="Mark withdrawal paid out",
    responses={409: {"description": "Withdrawal is not processing"}},
)
async def complete_withdrawal(
    withdrawal_id: UUID,
    current_user: CurrentAdminUser,
    db: DbSession,
) -> WithdrawalResponse:
    service = BalanceService(db)
    withdrawal = await service.complete_withdrawal(withdrawal_id, current_user)
    return WithdrawalResponse.model_validate(withdrawal)


@admin_router.post(
    "/withdrawals/{withdrawal_id}/reject",
    response_model=WithdrawalResponse,
    summary="Reject withdrawal",
    responses={409: {"description": "Withdrawal already completed or failed"}},
)
async def reject_withdrawal(
    withdrawal_id: UUID,
    data: WithdrawalReject,
    current_user: CurrentAdminUser,
    db: DbSession,
) -> WithdrawalResponse:
    service = BalanceService(db)
    withdrawal = await service.reject_withdrawal(withdrawal_id, current_user, data.reason)
    return WithdrawalResponse.model_validate(withdrawal)


@admin_router.post(
    "/analysts/{analyst_id}/reconcile",
    response_model=ReconciliationResponse,
    summary="Rebuild cached earnings",
)
async def reconcile_earnings(
    analyst_id: UUID,
    current_user: CurrentAdminUser,
    db: DbSession,
) -> ReconciliationResponse:
    """
    Recompute the analyst's cached total_earnings from released escrow
    and report any drift.
    """
    service = BalanceService(db)
    report = await service.reconcile_earnings(analyst_id)
    return ReconciliationResponse(
        analyst_id=report.analyst_id,
        cached=report.cached,
        derived=report.derived,
        drift=report.drift,
    )
