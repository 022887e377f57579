"""
DataPraktis - Database Models
==============================

SQLAlchemy models for the settlement engine.
Money columns hold integer rupiah (minor units); never floats.
"""

import enum
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from datapraktis.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class UserRole(str, enum.Enum):
    """Roles supplied by the identity service."""
    CLIENT = "client"
    ANALYST = "analyst"
    ADMIN = "admin"


class ProjectStatus(str, enum.Enum):
    """Project lifecycle."""
    DRAFT = "draft"
    OPEN = "open"                # Accepting proposals
    IN_PROGRESS = "in_progress"  # Analyst hired
    COMPLETED = "completed"      # Every milestone approved
    CANCELLED = "cancelled"


class ProposalStatus(str, enum.Enum):
    """Analyst bid status."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class MilestoneStatus(str, enum.Enum):
    """Work-review state of a milestone."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    DISPUTED = "disputed"        # Manual escalation, terminal here


class EscrowStatus(str, enum.Enum):
    """Gateway-facing lifecycle of an escrow transaction."""
    PENDING = "pending"          # Charge requested, not yet paid
    ESCROWED = "escrowed"        # Funds held by the platform
    RELEASED = "released"        # Paid out to the analyst ledger
    FAILED = "failed"
    REFUNDED = "refunded"


class WithdrawalStatus(str, enum.Enum):
    """Payout request status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ==========================================================================
# Column Types
# ==========================================================================

class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime, always UTC.

    PostgreSQL keeps the offset; SQLite drops it on read, so naive values
    coming back are UTC wall-clock times.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Identity
# ==========================================================================

class User(Base, TimestampMixin):
    """
    Marketplace account.

    Owned by the identity service; the engine only reads it.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole),
        default=UserRole.CLIENT,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    analyst_profile: Mapped[Optional["AnalystProfile"]] = relationship(
        back_populates="user",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class AnalystProfile(Base, TimestampMixin):
    """
    Analyst payout details and cached counters.

    total_earnings is a materialized view of released escrow; the
    balance service always derives from transaction history instead.
    """

    __tablename__ = "analyst_profiles"

    user_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    headline: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Payout destination
    bank_name: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    bank_account_number: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    bank_account_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Cached counters
    total_earnings: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
    )
    completed_projects: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    # Bumped by every withdrawal request to serialize balance checks
    ledger_version: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    user: Mapped["User"] = relationship(back_populates="analyst_profile")

    @property
    def has_payout_details(self) -> bool:
        return bool(self.bank_name and self.bank_account_number and self.bank_account_name)

    def __repr__(self) -> str:
        return f"<AnalystProfile {self.user_id}>"


# ==========================================================================
# Engagement
# ==========================================================================

class Project(Base, TimestampMixin):
    """
    A unit of client work.

    hired_analyst_id is set iff status is IN_PROGRESS or COMPLETED.
    """

    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    client_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus),
        default=ProjectStatus.OPEN,
        nullable=False,
        index=True,
    )
    budget_min: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    budget_max: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    deadline: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Hiring
    hired_analyst_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    hired_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Relationships
    milestones: Mapped[list["Milestone"]] = relationship(
        back_populates="project",
        order_by="Milestone.sort_order",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Project {self.title[:50]}>"


class Proposal(Base, TimestampMixin):
    """
    Analyst bid on an open project.

    proposed_milestones is an ordered list of
    {"title", "description", "amount", "due_date"} descriptors.
    """

    __tablename__ = "proposals"
    __table_args__ = (
        UniqueConstraint("project_id", "analyst_id", name="uq_proposal_project_analyst"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    analyst_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    cover_letter: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    proposed_budget: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    proposed_days: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    proposed_milestones: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    status: Mapped[ProposalStatus] = mapped_column(
        Enum(ProposalStatus),
        default=ProposalStatus.PENDING,
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<Proposal {self.id} {self.status.value}>"


class Milestone(Base, TimestampMixin):
    """
    Fixed-price unit of deliverable work inside a project.

    Milestones settle strictly in sort_order; amount never changes
    after creation.
    """

    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("project_id", "sort_order", name="uq_milestone_project_order"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    status: Mapped[MilestoneStatus] = mapped_column(
        Enum(MilestoneStatus),
        default=MilestoneStatus.PENDING,
        nullable=False,
        index=True,
    )
    sort_order: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    due_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Review workflow
    revision_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    revision_limit: Mapped[int] = mapped_column(
        Integer,
        default=3,
        nullable=False,
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    auto_release_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
        index=True,
    )
    auto_released: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Relationships
    project: Mapped["Project"] = relationship(back_populates="milestones")
    transaction: Mapped[Optional["EscrowTransaction"]] = relationship(
        back_populates="milestone",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Milestone {self.sort_order} {self.status.value}>"


# ==========================================================================
# Money
# ==========================================================================

class EscrowTransaction(Base, TimestampMixin):
    """
    Client funding for one milestone.

    amount == platform_fee + net_amount, always.
    """

    __tablename__ = "escrow_transactions"
    __table_args__ = (
        CheckConstraint("platform_fee + net_amount = amount", name="ck_escrow_fee_split"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    milestone_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("milestones.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    # Payee, snapshotted when funding starts
    analyst_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    platform_fee: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    net_amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    # Gateway
    gateway_order_ref: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        index=True,
        nullable=False,
    )
    gateway_token: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    redirect_url: Mapped[Optional[str]] = mapped_column(
        String(2000),
        nullable=True,
    )
    payment_method: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    attempt: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus),
        default=EscrowStatus.PENDING,
        nullable=False,
        index=True,
    )
    escrowed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    released_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    available_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    failed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    milestone: Mapped["Milestone"] = relationship(back_populates="transaction")

    def __repr__(self) -> str:
        return f"<EscrowTransaction {self.gateway_order_ref} {self.status.value}>"


class Withdrawal(Base, TimestampMixin):
    """
    Analyst payout request.

    Bank details are copied from the profile at request time.
    """

    __tablename__ = "withdrawals"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    analyst_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    fee: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
    )
    net_amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    # Snapshot of payout destination
    bank_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    bank_account_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    bank_account_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    status: Mapped[WithdrawalStatus] = mapped_column(
        Enum(WithdrawalStatus),
        default=WithdrawalStatus.PENDING,
        nullable=False,
        index=True,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    failed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Withdrawal {self.amount} {self.status.value}>"


# ==========================================================================
# Conversations
# ==========================================================================

class Conversation(Base, TimestampMixin):
    """Client/analyst channel opened when a project starts."""

    __tablename__ = "conversations"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    participants: Mapped[list["ConversationParticipant"]] = relationship(
        back_populates="conversation",
        lazy="selectin",
    )


class ConversationParticipant(Base, TimestampMixin):
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    conversation_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    conversation: Mapped["Conversation"] = relationship(back_populates="participants")


class Message(Base, TimestampMixin):
    """Conversation message. System messages have no sender."""

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    conversation_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sender_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_system: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Message {self.id}>"
