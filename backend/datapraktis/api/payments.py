"""
DataPraktis - Payments API
===========================

Milestone escrow: charge creation, the Midtrans notification webhook,
release and manual status checks.

Webhook setup (Midtrans dashboard → Settings → Configuration):
    Payment Notification URL: https://your-domain/api/v1/payments/webhook
"""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request, status

from datapraktis.api.deps import CurrentClient, CurrentUser, DbSession, Gateway, Policy
from datapraktis.core.schemas import (
    EscrowTransactionResponse,
    GatewayStatusResponse,
    PaymentCreate,
    PaymentRelease,
    WebhookAck,
)
from datapraktis.core.settlement.escrow import EscrowService
from datapraktis.core.settlement.gateway import GatewayNotification

router = APIRouter(prefix="/payments", tags=["Payments"])

logger = structlog.get_logger()


@router.post(
    "/create",
    response_model=EscrowTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Fund milestone",
    responses={
        201: {"description": "Charge created; redirect the client to redirect_url"},
        403: {"description": "Not the project client"},
        409: {"description": "Milestone already paid or project not in progress"},
        502: {"description": "Payment gateway unavailable"},
    },
)
async def create_payment(
    data: PaymentCreate,
    current_user: CurrentClient,
    db: DbSession,
    gateway: Gateway,
    policy: Policy,
) -> EscrowTransactionResponse:
    """
    Request a gateway charge for a milestone and record it as pending.
    """
    service = EscrowService(db, gateway, policy)
    transaction = await service.initiate(data.milestone_id, current_user)
    return EscrowTransactionResponse.model_validate(transaction)


@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Gateway notification",
    responses={
        200: {"description": "Notification applied or ignored as a duplicate"},
        401: {"description": "Invalid signature"},
        404: {"description": "Unknown order"},
    },
)
async def payment_webhook(
    request: Request,
    db: DbSession,
    gateway: Gateway,
    policy: Policy,
) -> WebhookAck:
    """
    Apply a Midtrans payment-status notification.

    Safe to deliver more than once; replays are acknowledged without
    changing state.
    """
    try:
        payload: Any = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    notification = GatewayNotification.from_payload(payload)
    logger.info(
        "webhook_received",
        order_ref=notification.order_ref,
        gateway_status=notification.transaction_status,
    )

    service = EscrowService(db, gateway, policy)
    outcome = await service.on_gateway_callback(notification)
    return WebhookAck(order_ref=outcome.order_ref, status=outcome.status, applied=outcome.applied)


@router.post(
    "/release",
    response_model=EscrowTransactionResponse,
    summary="Release escrow",
    responses={
        403: {"description": "Not the project client"},
        409: {"description": "Milestone not approved or funds not escrowed"},
    },
)
async def release_payment(
    data: PaymentRelease,
    current_user: CurrentUser,
    db: DbSession,
    gateway: Gateway,
    policy: Policy,
) -> EscrowTransactionResponse:
    """
    Release funds for an approved milestone.

    Approval normally releases funds itself; this repairs a transaction
    left in escrow and is a no-op once released.
    """
    service = EscrowService(db, gateway, policy)
    transaction = await service.release(data.milestone_id, actor=current_user)
    return EscrowTransactionResponse.model_validate(transaction)


@router.get(
    "/status/{order_ref}",
    response_model=GatewayStatusResponse,
    summary="Check gateway status",
    responses={
        404: {"description": "Unknown order"},
        502: {"description": "Payment gateway unavailable"},
    },
)
async def payment_status(
    order_ref: str,
    current_user: CurrentUser,
    db: DbSession,
    gateway: Gateway,
) -> GatewayStatusResponse:
    service = EscrowService(db, gateway)
    transaction, gateway_status = await service.check_status(order_ref, actor=current_user)
    return GatewayStatusResponse(
        order_ref=order_ref,
        status=transaction.status,
        gateway=gateway_status,
    )
