"""
Payment Gateway - Midtrans Snap integration.

The engine talks to the gateway through PaymentGateway:
- initiate_charge(): create a Snap payment for an order reference
- verify_signature(): authenticate an incoming status notification
- get_status(): query an order for manual verification

Transient failures (network errors, 5xx) are retried with exponential
backoff. Exhausted retries and 4xx responses raise ExternalServiceFailure;
nothing is ever recorded as paid on the strength of a failed call.
"""

import base64
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from datapraktis.core.config import settings
from datapraktis.core.exceptions import ExternalServiceFailure
from datapraktis.core.models import EscrowStatus

logger = structlog.get_logger()


SNAP_SANDBOX_URL = "https://app.sandbox.midtrans.com/snap/v1"
SNAP_PRODUCTION_URL = "https://app.midtrans.com/snap/v1"
CORE_SANDBOX_URL = "https://api.sandbox.midtrans.com/v2"
CORE_PRODUCTION_URL = "https://api.midtrans.com/v2"

ENABLED_PAYMENTS = [
    "credit_card",
    "gopay",
    "shopeepay",
    "bank_transfer",
    "bca_va",
    "bni_va",
    "bri_va",
    "permata_va",
    "other_va",
    "echannel",
    "cstore",
    "akulaku",
    "kredivo",
]

# Midtrans limits item names to 50 characters
ITEM_NAME_MAX_LENGTH = 50


# ==========================================================================
# Gateway Data
# ==========================================================================

@dataclass(frozen=True)
class PayerInfo:
    name: str
    email: str


@dataclass(frozen=True)
class ChargeResult:
    token: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayNotification:
    """Payment status notification as delivered by the gateway."""
    order_ref: str
    transaction_status: str
    status_code: str
    gross_amount: str
    signature: str
    payment_type: Optional[str] = None
    fraud_status: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "GatewayNotification":
        """Build from a Midtrans HTTP notification body."""
        return cls(
            order_ref=str(payload.get("order_id", "")),
            transaction_status=str(payload.get("transaction_status", "")),
            status_code=str(payload.get("status_code", "")),
            gross_amount=str(payload.get("gross_amount", "")),
            signature=str(payload.get("signature_key", "")),
            payment_type=payload.get("payment_type"),
            fraud_status=payload.get("fraud_status"),
        )


def map_gateway_status(
    transaction_status: str,
    fraud_status: Optional[str] = None,
) -> Optional[EscrowStatus]:
    """
    Map a Midtrans transaction status to an escrow status.

    Returns None for statuses the engine does not act on.
    """
    if transaction_status == "capture":
        # Card payments only count as paid once the fraud check accepts them
        if fraud_status == "accept":
            return EscrowStatus.ESCROWED
        if fraud_status == "challenge":
            return EscrowStatus.PENDING
        if fraud_status is None:
            return None
        return EscrowStatus.FAILED
    if transaction_status == "settlement":
        return EscrowStatus.ESCROWED
    if transaction_status == "pending":
        return EscrowStatus.PENDING
    if transaction_status in ("cancel", "deny", "expire", "failure"):
        return EscrowStatus.FAILED
    if transaction_status in ("refund", "partial_refund"):
        return EscrowStatus.REFUNDED
    return None


def midtrans_signature(
    order_ref: str,
    status_code: str,
    gross_amount: str,
    server_key: str,
) -> str:
    """SHA-512 of order_id + status_code + gross_amount + server_key."""
    payload = f"{order_ref}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(payload.encode()).hexdigest()


# ==========================================================================
# Gateway Interface
# ==========================================================================

class PaymentGateway(ABC):
    """Capability interface for the external payment gateway."""

    @abstractmethod
    async def initiate_charge(
        self,
        order_ref: str,
        amount: int,
        payer: PayerInfo,
        description: str,
    ) -> ChargeResult:
        """Request a charge; returns the payment token and redirect URL."""

    @abstractmethod
    def verify_signature(self, notification: GatewayNotification) -> bool:
        """Return True if the notification is authentic."""

    @abstractmethod
    async def get_status(self, order_ref: str) -> dict[str, Any]:
        """Fetch the gateway's current view of an order."""


class _TransientGatewayError(Exception):
    pass


class MidtransGateway(PaymentGateway):
    """
    Midtrans Snap / Core API client.

    Falls back to settings for anything not passed explicitly.
    """

    def __init__(
        self,
        server_key: Optional[str] = None,
        is_production: Optional[bool] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.server_key = server_key if server_key is not None else settings.MIDTRANS_SERVER_KEY
        self.is_production = (
            is_production if is_production is not None else settings.MIDTRANS_IS_PRODUCTION
        )
        self.max_attempts = max_attempts or settings.GATEWAY_MAX_ATTEMPTS
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.GATEWAY_TIMEOUT_SECONDS,
        )

        if not self.server_key:
            logger.warning("midtrans_gateway_unconfigured")

    @property
    def snap_url(self) -> str:
        return SNAP_PRODUCTION_URL if self.is_production else SNAP_SANDBOX_URL

    @property
    def core_api_url(self) -> str:
        return CORE_PRODUCTION_URL if self.is_production else CORE_SANDBOX_URL

    def _headers(self) -> dict[str, str]:
        auth = base64.b64encode(f"{self.server_key}:".encode()).decode()
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Basic {auth}",
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying transient failures with backoff."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.5, max=8),
                retry=retry_if_exception_type((_TransientGatewayError, httpx.TransportError)),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.request(
                        method, url, headers=self._headers(), **kwargs
                    )
                    if response.status_code >= 500:
                        raise _TransientGatewayError(
                            f"Gateway returned {response.status_code}"
                        )
        except (_TransientGatewayError, httpx.TransportError) as e:
            logger.error("gateway_unreachable", url=url, error=str(e))
            raise ExternalServiceFailure(f"Payment gateway unavailable: {e}") from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.error("gateway_rejected_request", url=url, status=response.status_code, detail=detail)
            raise ExternalServiceFailure(f"Payment gateway rejected request: {detail}")

        return response

    async def initiate_charge(
        self,
        order_ref: str,
        amount: int,
        payer: PayerInfo,
        description: str,
    ) -> ChargeResult:
        payload = {
            "transaction_details": {
                "order_id": order_ref,
                "gross_amount": amount,
            },
            "customer_details": {
                "first_name": payer.name,
                "email": payer.email,
            },
            "item_details": [
                {
                    "id": order_ref,
                    "price": amount,
                    "quantity": 1,
                    "name": description[:ITEM_NAME_MAX_LENGTH],
                },
            ],
            "enabled_payments": ENABLED_PAYMENTS,
        }

        response = await self._request("POST", f"{self.snap_url}/transactions", json=payload)
        data = response.json()

        logger.info("gateway_charge_created", order_ref=order_ref, amount=amount)
        return ChargeResult(token=data["token"], redirect_url=data["redirect_url"])

    def verify_signature(self, notification: GatewayNotification) -> bool:
        if not notification.signature or not self.server_key:
            return False
        expected = midtrans_signature(
            notification.order_ref,
            notification.status_code,
            notification.gross_amount,
            self.server_key,
        )
        return hmac.compare_digest(expected, notification.signature)

    async def get_status(self, order_ref: str) -> dict[str, Any]:
        response = await self._request("GET", f"{self.core_api_url}/{order_ref}/status")
        return response.json()

    async def close(self) -> None:
        await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if not isinstance(body, dict):
        return str(body)[:200]
    messages = body.get("error_messages") or [body.get("status_message", "")]
    return "; ".join(str(m) for m in messages if m) or f"HTTP {response.status_code}"
