"""Portfolio access-control schema

Revision ID: 001_access_control_schema
Revises:
Create Date: 2026-10-18

Creates the role, invitation status and audit action enums, the users,
portfolios and properties tables they reference, and the memberships,
invitation_tokens and permission_audit_log tables.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_access_control_schema'
down_revision = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # Create ENUM types
    op.execute("CREATE TYPE portfolio_role AS ENUM ('owner', 'admin', 'member', 'viewer')")
    op.execute("CREATE TYPE invitation_token_status AS ENUM ('pending', 'accepted', 'expired', 'revoked')")
    op.execute(
        "CREATE TYPE permission_audit_action AS ENUM "
        "('role_change', 'invitation_sent', 'invitation_accepted', 'access_revoked')"
    )

    portfolio_role = postgresql.ENUM('owner', 'admin', 'member', 'viewer', name='portfolio_role', create_type=False)

    # Identity and portfolio tables
    op.create_table('users',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('email', sa.Text(), nullable=False),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    op.create_table('portfolios',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_portfolios_created_by', 'portfolios', ['created_by'])

    op.create_table('properties',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('portfolio_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['portfolio_id'], ['portfolios.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_properties_portfolio_id', 'properties', ['portfolio_id'])

    # Memberships; property_access NULL means unrestricted
    op.create_table('memberships',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('portfolio_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('role', portfolio_role, server_default='member', nullable=False),
        sa.Column('property_access', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('invited_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('invited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['portfolio_id'], ['portfolios.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['invited_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'portfolio_id', name='uq_memberships_user_portfolio')
    )
    op.create_index('idx_memberships_portfolio_role', 'memberships', ['portfolio_id', 'role'])

    op.create_table('invitation_tokens',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('token', sa.Text(), nullable=False),
        sa.Column('portfolio_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email', sa.Text(), nullable=False),
        sa.Column('role', portfolio_role, server_default='member', nullable=False),
        sa.Column('property_access', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('status', postgresql.ENUM('pending', 'accepted', 'expired', 'revoked', name='invitation_token_status', create_type=False), server_default='pending', nullable=False),
        sa.Column('invited_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('used_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['portfolio_id'], ['portfolios.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['invited_by'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['used_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token'),
        sa.CheckConstraint(
            "(status = 'accepted' AND used_at IS NOT NULL) "
            "OR (status <> 'accepted' AND used_at IS NULL AND used_by IS NULL)",
            name='check_invitation_used_fields'
        )
    )
    op.create_index('idx_invitation_tokens_portfolio_status', 'invitation_tokens', ['portfolio_id', 'status'])
    op.create_index('idx_invitation_tokens_email', 'invitation_tokens', ['email'])
    op.create_index('idx_invitation_tokens_expires_at', 'invitation_tokens', ['expires_at'])

    # Append-only audit trail; references degrade to NULL so entries outlive their subjects
    op.create_table('permission_audit_log',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('portfolio_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('action', postgresql.ENUM('role_change', 'invitation_sent', 'invitation_accepted', 'access_revoked', name='permission_audit_action', create_type=False), nullable=False),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('changed_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['portfolio_id'], ['portfolios.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['changed_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_permission_audit_log_portfolio_created', 'permission_audit_log', ['portfolio_id', 'created_at'])
    op.create_index('idx_permission_audit_log_user', 'permission_audit_log', ['user_id'])
    op.create_index('idx_permission_audit_log_action', 'permission_audit_log', ['action'])


def downgrade() -> None:
    op.drop_index('idx_permission_audit_log_action', 'permission_audit_log')
    op.drop_index('idx_permission_audit_log_user', 'permission_audit_log')
    op.drop_index('idx_permission_audit_log_portfolio_created', 'permission_audit_log')
    op.drop_table('permission_audit_log')

    op.drop_index('idx_invitation_tokens_expires_at', 'invitation_tokens')
    op.drop_index('idx_invitation_tokens_email', 'invitation_tokens')
    op.drop_index('idx_invitation_tokens_portfolio_status', 'invitation_tokens')
    op.drop_table('invitation_tokens')

    op.drop_index('idx_memberships_portfolio_role', 'memberships')
    op.drop_table('memberships')

    op.drop_index('idx_properties_portfolio_id', 'properties')
    op.drop_table('properties')

    op.drop_index('idx_portfolios_created_by', 'portfolios')
    op.drop_table('portfolios')

    op.drop_table('users')

    op.execute("DROP TYPE IF EXISTS permission_audit_action")
    op.execute("DROP TYPE IF EXISTS invitation_token_status")
    op.execute("DROP TYPE IF EXISTS portfolio_role")
