"""Initial settlement engine tables

Revision ID: 001_initial_settlement
Revises:
Create Date: 2026-10-19

Creates all tables for:
- Identity mirror (users, analyst_profiles)
- Engagement (projects, proposals, milestones)
- Money (escrow_transactions, withdrawals)
- Conversations (conversations, conversation_participants, messages)

Enum columns store member names, matching SQLAlchemy's Enum(PyEnum).
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_settlement'
down_revision = None
branch_labels = None
depends_on = None


user_role_enum = postgresql.ENUM(
    'CLIENT', 'ANALYST', 'ADMIN',
    name='userrole',
    create_type=False,
)
project_status_enum = postgresql.ENUM(
    'DRAFT', 'OPEN', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED',
    name='projectstatus',
    create_type=False,
)
proposal_status_enum = postgresql.ENUM(
    'PENDING', 'ACCEPTED', 'REJECTED',
    name='proposalstatus',
    create_type=False,
)
milestone_status_enum = postgresql.ENUM(
    'PENDING', 'IN_PROGRESS', 'SUBMITTED', 'REVISION_REQUESTED', 'APPROVED', 'DISPUTED',
    name='milestonestatus',
    create_type=False,
)
escrow_status_enum = postgresql.ENUM(
    'PENDING', 'ESCROWED', 'RELEASED', 'FAILED', 'REFUNDED',
    name='escrowstatus',
    create_type=False,
)
withdrawal_status_enum = postgresql.ENUM(
    'PENDING', 'PROCESSING', 'COMPLETED', 'FAILED',
    name='withdrawalstatus',
    create_type=False,
)

ALL_ENUMS = (
    user_role_enum,
    project_status_enum,
    proposal_status_enum,
    milestone_status_enum,
    escrow_status_enum,
    withdrawal_status_enum,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # Create Enums
    # ==========================================================================

    for enum in ALL_ENUMS:
        enum.create(op.get_bind(), checkfirst=True)

    # ==========================================================================
    # Identity
    # ==========================================================================

    op.create_table(
        'users',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('role', user_role_enum, nullable=False, server_default='CLIENT'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'analyst_profiles',
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('headline', sa.String(length=255), nullable=True),
        sa.Column('bank_name', sa.String(length=100), nullable=True),
        sa.Column('bank_account_number', sa.String(length=50), nullable=True),
        sa.Column('bank_account_name', sa.String(length=255), nullable=True),
        sa.Column('total_earnings', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('completed_projects', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ledger_version', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('user_id'),
    )

    # ==========================================================================
    # Engagement
    # ==========================================================================

    op.create_table(
        'projects',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('client_id', sa.UUID(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', project_status_enum, nullable=False, server_default='OPEN'),
        sa.Column('budget_min', sa.BigInteger(), nullable=False),
        sa.Column('budget_max', sa.BigInteger(), nullable=False),
        sa.Column('deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('hired_analyst_id', sa.UUID(), nullable=True),
        sa.Column('hired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['client_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['hired_analyst_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_projects_client_id', 'projects', ['client_id'], unique=False)
    op.create_index('ix_projects_status', 'projects', ['status'], unique=False)
    op.create_index('ix_projects_hired_analyst_id', 'projects', ['hired_analyst_id'], unique=False)

    op.create_table(
        'proposals',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('project_id', sa.UUID(), nullable=False),
        sa.Column('analyst_id', sa.UUID(), nullable=False),
        sa.Column('cover_letter', sa.Text(), nullable=False),
        sa.Column('proposed_budget', sa.BigInteger(), nullable=False),
        sa.Column('proposed_days', sa.Integer(), nullable=False),
        sa.Column('proposed_milestones', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('status', proposal_status_enum, nullable=False, server_default='PENDING'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['analyst_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'analyst_id', name='uq_proposal_project_analyst'),
    )
    op.create_index('ix_proposals_project_id', 'proposals', ['project_id'], unique=False)
    op.create_index('ix_proposals_analyst_id', 'proposals', ['analyst_id'], unique=False)
    op.create_index('ix_proposals_status', 'proposals', ['status'], unique=False)

    op.create_table(
        'milestones',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('project_id', sa.UUID(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', milestone_status_enum, nullable=False, server_default='PENDING'),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revision_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('revision_limit', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_release_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_released', sa.Boolean(), nullable=False, server_default='false'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'sort_order', name='uq_milestone_project_order'),
    )
    op.create_index('ix_milestones_project_id', 'milestones', ['project_id'], unique=False)
    op.create_index('ix_milestones_status', 'milestones', ['status'], unique=False)
    op.create_index('ix_milestones_auto_release_at', 'milestones', ['auto_release_at'], unique=False)

    # ==========================================================================
    # Money
    # ==========================================================================

    op.create_table(
        'escrow_transactions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('project_id', sa.UUID(), nullable=False),
        sa.Column('milestone_id', sa.UUID(), nullable=False),
        sa.Column('analyst_id', sa.UUID(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('platform_fee', sa.BigInteger(), nullable=False),
        sa.Column('net_amount', sa.BigInteger(), nullable=False),
        sa.Column('gateway_order_ref', sa.String(length=100), nullable=False),
        sa.Column('gateway_token', sa.String(length=255), nullable=True),
        sa.Column('redirect_url', sa.String(length=2000), nullable=True),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', escrow_status_enum, nullable=False, server_default='PENDING'),
        sa.Column('escrowed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('available_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['milestone_id'], ['milestones.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['analyst_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('milestone_id'),
        sa.CheckConstraint('platform_fee + net_amount = amount', name='ck_escrow_fee_split'),
    )
    op.create_index('ix_escrow_transactions_project_id', 'escrow_transactions', ['project_id'], unique=False)
    op.create_index('ix_escrow_transactions_analyst_id', 'escrow_transactions', ['analyst_id'], unique=False)
    op.create_index('ix_escrow_transactions_gateway_order_ref', 'escrow_transactions', ['gateway_order_ref'], unique=True)
    op.create_index('ix_escrow_transactions_status', 'escrow_transactions', ['status'], unique=False)

    op.create_table(
        'withdrawals',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('analyst_id', sa.UUID(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('fee', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('net_amount', sa.BigInteger(), nullable=False),
        sa.Column('bank_name', sa.String(length=100), nullable=False),
        sa.Column('bank_account_number', sa.String(length=50), nullable=False),
        sa.Column('bank_account_name', sa.String(length=255), nullable=False),
        sa.Column('status', withdrawal_status_enum, nullable=False, server_default='PENDING'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['analyst_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_withdrawals_analyst_id', 'withdrawals', ['analyst_id'], unique=False)
    op.create_index('ix_withdrawals_status', 'withdrawals', ['status'], unique=False)

    # ==========================================================================
    # Conversations
    # ==========================================================================

    op.create_table(
        'conversations',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('project_id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id'),
    )

    op.create_table(
        'conversation_participants',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('conversation_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('conversation_id', 'user_id', name='uq_participant'),
    )
    op.create_index('ix_conversation_participants_conversation_id', 'conversation_participants', ['conversation_id'], unique=False)

    op.create_table(
        'messages',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('conversation_id', sa.UUID(), nullable=False),
        sa.Column('sender_id', sa.UUID(), nullable=True),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('content', sa.Text(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['sender_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('messages')
    op.drop_table('conversation_participants')
    op.drop_table('conversations')
    op.drop_table('withdrawals')
    op.drop_table('escrow_transactions')
    op.drop_table('milestones')
    op.drop_table('proposals')
    op.drop_table('projects')
    op.drop_table('analyst_profiles')
    op.drop_table('users')

    # Drop enums
    op.execute("DROP TYPE IF EXISTS withdrawalstatus")
    op.execute("DROP TYPE IF EXISTS escrowstatus")
    op.execute("DROP TYPE IF EXISTS milestonestatus")
    op.execute("DROP TYPE IF EXISTS proposalstatus")
    op.execute("DROP TYPE IF EXISTS projectstatus")
    op.execute("DROP TYPE IF EXISTS userrole")
