"""
DataPraktis - Pydantic Schemas
===============================

Request and response schemas for the settlement API.
Money fields are integer rupiah.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from datapraktis.core.models import (
    EscrowStatus,
    MilestoneStatus,
    ProjectStatus,
    ProposalStatus,
    WithdrawalStatus,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Project Schemas
# ==========================================================================

class ProjectCreate(BaseSchema):
    """Schema for posting a project."""

    title: str = Field(min_length=5, max_length=255)
    description: Optional[str] = None
    budget_min: int = Field(gt=0)
    budget_max: int = Field(gt=0)
    deadline: Optional[datetime] = None
    publish: bool = True


class MilestoneResponse(TimestampSchema):
    id: UUID
    project_id: UUID
    title: str
    description: Optional[str] = None
    amount: int
    status: MilestoneStatus
    sort_order: int
    due_date: Optional[datetime] = None
    revision_count: int
    revision_limit: int
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    auto_release_at: Optional[datetime] = None
    auto_released: bool


class ProjectResponse(TimestampSchema):
    """Project with its milestones in sort order."""

    id: UUID
    client_id: UUID
    title: str
    description: Optional[str] = None
    status: ProjectStatus
    budget_min: int
    budget_max: int
    deadline: Optional[datetime] = None
    hired_analyst_id: Optional[UUID] = None
    hired_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    milestones: list[MilestoneResponse] = []


# ==========================================================================
# Proposal Schemas
# ==========================================================================

class MilestoneDraft(BaseSchema):
    """One milestone inside a proposal."""

    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    amount: int = Field(gt=0)
    due_date: Optional[datetime] = None


class ProposalCreate(BaseSchema):
    cover_letter: str = Field(min_length=50)
    proposed_budget: int = Field(gt=0)
    proposed_days: int = Field(ge=1)
    proposed_milestones: list[MilestoneDraft] = Field(min_length=1)


class ProposalResponse(TimestampSchema):
    id: UUID
    project_id: UUID
    analyst_id: UUID
    cover_letter: str
    proposed_budget: int
    proposed_days: int
    proposed_milestones: list[dict[str, Any]]
    status: ProposalStatus


# ==========================================================================
# Milestone Action Schemas
# ==========================================================================

class RevisionRequest(BaseSchema):
    note: Optional[str] = Field(None, max_length=5000)


class DisputeRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=5000)


class ApprovalResponse(BaseSchema):
    """Result of a milestone approval."""

    milestone_id: UUID
    applied: bool
    status: MilestoneStatus
    released_amount: int
    next_milestone_id: Optional[UUID] = None
    project_completed: bool
    auto_released: bool


# ==========================================================================
# Payment Schemas
# ==========================================================================

class PaymentCreate(BaseSchema):
    milestone_id: UUID


class PaymentRelease(BaseSchema):
    milestone_id: UUID


class EscrowTransactionResponse(TimestampSchema):
    id: UUID
    project_id: UUID
    milestone_id: UUID
    analyst_id: UUID
    amount: int
    platform_fee: int
    net_amount: int
    gateway_order_ref: str
    gateway_token: Optional[str] = None
    redirect_url: Optional[str] = None
    payment_method: Optional[str] = None
    attempt: int
    status: EscrowStatus
    escrowed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    available_at: Optional[datetime] = None


class WebhookAck(BaseSchema):
    """Acknowledgement returned to the gateway."""

    order_ref: str
    status: EscrowStatus
    applied: bool


class GatewayStatusResponse(BaseSchema):
    order_ref: str
    status: EscrowStatus
    gateway: dict[str, Any]


# ==========================================================================
# Balance & Withdrawal Schemas
# ==========================================================================

class BalanceResponse(BaseSchema):
    total: int
    matured: int
    on_hold: int
    withdrawn: int
    pending: int
    available: int


class WithdrawalCreate(BaseSchema):
    amount: int = Field(gt=0)


class WithdrawalReject(BaseSchema):
    reason: str = Field(min_length=1, max_length=2000)


class WithdrawalResponse(TimestampSchema):
    id: UUID
    analyst_id: UUID
    amount: int
    fee: int
    net_amount: int
    bank_name: str
    bank_account_number: str
    bank_account_name: str
    status: WithdrawalStatus
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class WithdrawalOverview(BaseSchema):
    """Analyst's balance plus recent withdrawals."""

    balance: BalanceResponse
    withdrawals: list[WithdrawalResponse]


class ReconciliationResponse(BaseSchema):
    analyst_id: UUID
    cached: int
    derived: int
    drift: int


# ==========================================================================
# Scheduler Schemas
# ==========================================================================

class SweepErrorResponse(BaseSchema):
    milestone_id: UUID
    code: str
    message: str


class SweepResponse(BaseSchema):
    started_at: datetime
    processed: int
    released: int
    skipped: int
    errors: list[SweepErrorResponse]


# ==========================================================================
# Common Response Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
