"""
DataPraktis - Midtrans Gateway Tests
=====================================

Snap client behaviour against a mocked HTTP transport.
"""

import base64
import json

import httpx
import pytest

from datapraktis.core.exceptions import ExternalServiceFailure
from datapraktis.core.models import EscrowStatus
from datapraktis.core.settlement.gateway import (
    SNAP_SANDBOX_URL,
    GatewayNotification,
    MidtransGateway,
    PayerInfo,
    map_gateway_status,
    midtrans_signature,
)

SERVER_KEY = "SB-Mid-server-unit"


def make_gateway(handler, max_attempts: int = 2) -> MidtransGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MidtransGateway(
        server_key=SERVER_KEY,
        is_production=False,
        max_attempts=max_attempts,
        client=client,
    )


# ==========================================================================
# Charge Tests
# ==========================================================================

class TestInitiateCharge:
    """Tests for MidtransGateway.initiate_charge()."""

    async def test_creates_snap_transaction(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                201,
                json={"token": "snap-token", "redirect_url": "https://pay.example/snap-token"},
            )

        gateway = make_gateway(handler)
        result = await gateway.initiate_charge(
            "DP-aaaa1111-bbbb2222-1",
            1_000_000,
            PayerInfo(name="Sari", email="sari@example.com"),
            "Retail churn analysis - Data cleaning and a very long milestone title",
        )
        await gateway.close()

        assert result.token == "snap-token"
        assert result.redirect_url == "https://pay.example/snap-token"

        request = seen[0]
        assert str(request.url) == f"{SNAP_SANDBOX_URL}/transactions"
        expected_auth = base64.b64encode(f"{SERVER_KEY}:".encode()).decode()
        assert request.headers["Authorization"] == f"Basic {expected_auth}"

        body = json.loads(request.content)
        assert body["transaction_details"] == {
            "order_id": "DP-aaaa1111-bbbb2222-1",
            "gross_amount": 1_000_000,
        }
        assert body["customer_details"]["email"] == "sari@example.com"
        assert len(body["item_details"][0]["name"]) <= 50

    async def test_server_errors_are_retried(self):
        """5xx responses are retried, then surface as ExternalServiceFailure."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503, json={"status_message": "Service unavailable"})

        gateway = make_gateway(handler, max_attempts=2)

        with pytest.raises(ExternalServiceFailure):
            await gateway.initiate_charge(
                "DP-1", 100_000, PayerInfo(name="Sari", email="sari@example.com"), "Item"
            )

        assert len(calls) == 2

    async def test_recovers_after_transient_error(self):
        responses = iter([
            httpx.Response(502),
            httpx.Response(201, json={"token": "t", "redirect_url": "https://pay.example/t"}),
        ])

        gateway = make_gateway(lambda request: next(responses), max_attempts=3)
        result = await gateway.initiate_charge(
            "DP-2", 100_000, PayerInfo(name="Sari", email="sari@example.com"), "Item"
        )

        assert result.token == "t"

    async def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                400, json={"error_messages": ["transaction_details.order_id has already been taken"]}
            )

        gateway = make_gateway(handler, max_attempts=3)

        with pytest.raises(ExternalServiceFailure) as exc_info:
            await gateway.initiate_charge(
                "DP-3", 100_000, PayerInfo(name="Sari", email="sari@example.com"), "Item"
            )

        assert len(calls) == 1
        assert "already been taken" in exc_info.value.message

    async def test_get_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/DP-4/status")
            return httpx.Response(200, json={"order_id": "DP-4", "transaction_status": "settlement"})

        gateway = make_gateway(handler)

        status = await gateway.get_status("DP-4")

        assert status["transaction_status"] == "settlement"


# ==========================================================================
# Signature Tests
# ==========================================================================

class TestSignature:
    """Tests for notification authentication."""

    def _notification(self, signature: str) -> GatewayNotification:
        return GatewayNotification.from_payload({
            "order_id": "DP-5",
            "status_code": "200",
            "gross_amount": "100000.00",
            "transaction_status": "settlement",
            "signature_key": signature,
        })

    def test_valid_signature(self):
        gateway = MidtransGateway(server_key=SERVER_KEY, client=httpx.AsyncClient())
        signature = midtrans_signature("DP-5", "200", "100000.00", SERVER_KEY)

        assert gateway.verify_signature(self._notification(signature)) is True

    def test_wrong_key(self):
        gateway = MidtransGateway(server_key=SERVER_KEY, client=httpx.AsyncClient())
        signature = midtrans_signature("DP-5", "200", "100000.00", "other-key")

        assert gateway.verify_signature(self._notification(signature)) is False

    def test_missing_signature(self):
        gateway = MidtransGateway(server_key=SERVER_KEY, client=httpx.AsyncClient())

        assert gateway.verify_signature(self._notification("")) is False

    def test_unconfigured_gateway_rejects_everything(self):
        gateway = MidtransGateway(server_key="", client=httpx.AsyncClient())
        signature = midtrans_signature("DP-5", "200", "100000.00", "")

        assert gateway.verify_signature(self._notification(signature)) is False


# ==========================================================================
# Status Mapping Tests
# ==========================================================================

class TestStatusMapping:
    """Tests for map_gateway_status()."""

    @pytest.mark.parametrize(
        "transaction_status,fraud_status,expected",
        [
            ("settlement", None, EscrowStatus.ESCROWED),
            ("capture", None, None),
            ("capture", "accept", EscrowStatus.ESCROWED),
            ("capture", "challenge", EscrowStatus.PENDING),
            ("capture", "deny", EscrowStatus.FAILED),
            ("pending", None, EscrowStatus.PENDING),
            ("cancel", None, EscrowStatus.FAILED),
            ("deny", None, EscrowStatus.FAILED),
            ("expire", None, EscrowStatus.FAILED),
            ("failure", None, EscrowStatus.FAILED),
            ("refund", None, EscrowStatus.REFUNDED),
            ("partial_refund", None, EscrowStatus.REFUNDED),
            ("authorize", None, None),
        ],
    )
    def test_mapping(self, transaction_status, fraud_status, expected):
        assert map_gateway_status(transaction_status, fraud_status) == expected

    def test_payload_parsing(self):
        notification = GatewayNotification.from_payload({
            "order_id": "DP-6",
            "transaction_status": "capture",
            "fraud_status": "accept",
            "status_code": 200,
            "gross_amount": "250000.00",
            "signature_key": "abc",
            "payment_type": "credit_card",
        })

        assert notification.order_ref == "DP-6"
        assert notification.status_code == "200"
        assert notification.payment_type == "credit_card"
        assert notification.fraud_status == "accept"
