"""
DataPraktis - Cron API
=======================

Entry point for an external scheduler (hourly is typical). Protected
by CRON_SECRET when one is configured:

    Authorization: Bearer <CRON_SECRET>
"""

import hmac
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials

from datapraktis.api.deps import DbSession, Policy, security
from datapraktis.core.config import settings
from datapraktis.core.schemas import SweepResponse
from datapraktis.core.settlement.auto_release import AutoReleaseScheduler

router = APIRouter(prefix="/cron", tags=["Cron"])


async def verify_cron_secret(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> None:
    if not settings.CRON_SECRET:
        return
    token = credentials.credentials if credentials else ""
    if not hmac.compare_digest(token, settings.CRON_SECRET):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


@router.api_route(
    "/auto-release",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    summary="Run auto-release sweep",
    dependencies=[Depends(verify_cron_secret)],
    responses={401: {"description": "Missing or wrong cron secret"}},
)
async def auto_release(db: DbSession, policy: Policy) -> SweepResponse:
    """
    Approve and release every submitted milestone whose review window
    has elapsed. Per-milestone failures are reported, not raised.
    """
    scheduler = AutoReleaseScheduler(policy=policy)
    report = await scheduler.sweep(db)
    return SweepResponse.model_validate(report.to_dict())
