"""
DataPraktis - Test Fixtures
============================

Shared pytest fixtures for all tests.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

import hmac
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from datapraktis.api.deps import (
    create_access_token,
    get_payment_gateway,
    get_settlement_policy,
)
from datapraktis.api.main import app
from datapraktis.core.database import Base, get_db
from datapraktis.core.models import (
    AnalystProfile,
    EscrowTransaction,
    Project,
    User,
    UserRole,
)
from datapraktis.core.settlement.engagement import EngagementService, MilestonePlan
from datapraktis.core.settlement.escrow import EscrowService
from datapraktis.core.settlement.gateway import (
    ChargeResult,
    GatewayNotification,
    PayerInfo,
    PaymentGateway,
    midtrans_signature,
)
from datapraktis.core.settlement.policy import SettlementPolicy


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

SERVER_KEY = "SB-Mid-server-test-key"

COVER_LETTER = (
    "I have delivered a dozen retail churn analyses with Python and SQL "
    "and can start this week."
)


# ==========================================================================
# Fake Gateway
# ==========================================================================

class FakeGateway(PaymentGateway):
    """
    In-memory gateway that records charges and signs like Midtrans.

    Set fail_with to an exception to make the next charges fail.
    """

    def __init__(self, server_key: str = SERVER_KEY):
        self.server_key = server_key
        self.charges: list[dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self.statuses: dict[str, dict[str, Any]] = {}

    async def initiate_charge(
        self,
        order_ref: str,
        amount: int,
        payer: PayerInfo,
        description: str,
    ) -> ChargeResult:
        self.charges.append({
            "order_ref": order_ref,
            "amount": amount,
            "payer": payer,
            "description": description,
        })
        if self.fail_with is not None:
            raise self.fail_with
        return ChargeResult(
            token=f"snap-{order_ref}",
            redirect_url=f"https://app.sandbox.midtrans.com/snap/v2/vtweb/{order_ref}",
        )

    def verify_signature(self, notification: GatewayNotification) -> bool:
        expected = midtrans_signature(
            notification.order_ref,
            notification.status_code,
            notification.gross_amount,
            self.server_key,
        )
        return hmac.compare_digest(expected, notification.signature)

    async def get_status(self, order_ref: str) -> dict[str, Any]:
        return self.statuses.get(
            order_ref,
            {"order_id": order_ref, "transaction_status": "pending"},
        )


def notification_payload(
    order_ref: str,
    transaction_status: str,
    gross_amount: int | str,
    payment_type: Optional[str] = "bank_transfer",
    fraud_status: Optional[str] = None,
    status_code: str = "200",
    server_key: str = SERVER_KEY,
) -> dict[str, Any]:
    """Midtrans notification body, signed with server_key."""
    if isinstance(gross_amount, int):
        gross_amount = f"{gross_amount}.00"
    payload: dict[str, Any] = {
        "order_id": order_ref,
        "transaction_status": transaction_status,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "signature_key": midtrans_signature(order_ref, status_code, gross_amount, server_key),
        "payment_type": payment_type,
    }
    if fraud_status is not None:
        payload["fraud_status"] = fraud_status
    return payload


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db_session: AsyncSession) -> async_sessionmaker[AsyncSession]:
    """Factory for extra sessions on the test database, for interleaving work."""
    return TestingSessionLocal


@pytest.fixture
def policy() -> SettlementPolicy:
    """Default marketplace policy: 10% fee, 5-day hold, 14-day review."""
    return SettlementPolicy()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    gateway: FakeGateway,
    policy: SettlementPolicy,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and gateway overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_settlement_policy] = lambda: policy

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# User Fixtures
# ==========================================================================

async def _create_user(
    db: AsyncSession,
    role: UserRole,
    name: str,
    with_profile: bool = False,
    bank_details: bool = True,
) -> User:
    user = User(
        id=uuid4(),
        email=unique_email(),
        name=name,
        role=role,
        is_active=True,
    )
    db.add(user)
    if with_profile:
        profile = AnalystProfile(
            user=user,
            headline="Data analyst",
            total_earnings=0,
            completed_projects=0,
            ledger_version=0,
        )
        if bank_details:
            profile.bank_name = "BCA"
            profile.bank_account_number = "1234567890"
            profile.bank_account_name = name
        db.add(profile)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def client_user(db_session: AsyncSession) -> User:
    """Project owner."""
    return await _create_user(db_session, UserRole.CLIENT, "Sari Client")


@pytest_asyncio.fixture
async def other_client(db_session: AsyncSession) -> User:
    return await _create_user(db_session, UserRole.CLIENT, "Budi Client")


@pytest_asyncio.fixture
async def analyst(db_session: AsyncSession) -> User:
    """Analyst with a complete payout profile."""
    return await _create_user(db_session, UserRole.ANALYST, "Dewi Analyst", with_profile=True)


@pytest_asyncio.fixture
async def other_analyst(db_session: AsyncSession) -> User:
    return await _create_user(db_session, UserRole.ANALYST, "Agus Analyst", with_profile=True)


@pytest_asyncio.fixture
async def admin(db_session: AsyncSession) -> User:
    return await _create_user(db_session, UserRole.ADMIN, "Admin User")


# ==========================================================================
# Auth Fixtures
# ==========================================================================

@pytest.fixture
def client_headers(client_user: User) -> dict[str, str]:
    token = create_access_token(client_user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def analyst_headers(analyst: User) -> dict[str, str]:
    token = create_access_token(analyst.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin: User) -> dict[str, str]:
    token = create_access_token(admin.id)
    return {"Authorization": f"Bearer {token}"}


# ==========================================================================
# Engagement Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def open_project(db_session: AsyncSession, client_user: User, policy: SettlementPolicy) -> Project:
    """OPEN project with budget_min = Rp 500.000."""
    service = EngagementService(db_session, policy)
    return await service.create_project(
        client_user,
        title="Retail churn analysis",
        budget_min=500_000,
        budget_max=2_000_000,
        description="Quarterly churn drivers for a retail chain",
    )


@pytest.fixture
def create_engagement(
    db_session: AsyncSession,
    client_user: User,
    analyst: User,
    policy: SettlementPolicy,
) -> Callable[..., Awaitable[Project]]:
    """Factory: post a project, bid on it and accept the bid."""

    async def factory(
        amounts: tuple[int, ...] = (400_000, 600_000),
        policy_override: Optional[SettlementPolicy] = None,
    ) -> Project:
        service = EngagementService(db_session, policy_override or policy)
        project = await service.create_project(
            client_user,
            title="Retail churn analysis",
            budget_min=500_000,
            budget_max=sum(amounts) * 2,
        )
        proposal = await service.create_proposal(
            project.id,
            analyst,
            cover_letter=COVER_LETTER,
            proposed_budget=sum(amounts),
            proposed_days=30,
            milestones=[
                MilestonePlan(title=f"Deliverable {i + 1}", amount=amount)
                for i, amount in enumerate(amounts)
            ],
        )
        return await service.accept_proposal(project.id, proposal.id, client_user)

    return factory


@pytest_asyncio.fixture
async def engagement(create_engagement: Callable[..., Awaitable[Project]]) -> Project:
    """IN_PROGRESS project with milestones of Rp 400.000 and Rp 600.000."""
    return await create_engagement()


@pytest.fixture
def fund_milestone(
    db_session: AsyncSession,
    client_user: User,
    gateway: FakeGateway,
    policy: SettlementPolicy,
) -> Callable[[UUID], Awaitable[EscrowTransaction]]:
    """Factory: charge a milestone and deliver a settlement notification."""

    async def factory(milestone_id: UUID) -> EscrowTransaction:
        service = EscrowService(db_session, gateway, policy)
        transaction = await service.initiate(milestone_id, client_user)
        payload = notification_payload(
            transaction.gateway_order_ref, "settlement", transaction.amount
        )
        await service.on_gateway_callback(GatewayNotification.from_payload(payload))
        await db_session.refresh(transaction)
        return transaction

    return factory


@pytest.fixture
def signed_payload() -> Callable[..., dict[str, Any]]:
    """notification_payload() for building webhook bodies."""
    return notification_payload


@pytest.fixture
def signed_notification() -> Callable[..., GatewayNotification]:
    """Like signed_payload, already parsed into a GatewayNotification."""

    def build(*args: Any, **kwargs: Any) -> GatewayNotification:
        return GatewayNotification.from_payload(notification_payload(*args, **kwargs))

    return build


@pytest.fixture
def cover_letter() -> str:
    return COVER_LETTER


@pytest_asyncio.fixture
async def analyst_without_bank(db_session: AsyncSession) -> User:
    """Analyst whose profile has no payout destination yet."""
    return await _create_user(
        db_session,
        UserRole.ANALYST,
        "Rina Analyst",
        with_profile=True,
        bank_details=False,
    )


# ==========================================================================
# Helper Functions
# ==========================================================================

def unique_email() -> str:
    """Generate a unique email for tests."""
    return f"test_{uuid4().hex[:8]}@example.com"
