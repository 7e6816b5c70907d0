"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create offers table (written by merchant CRUD, read here)
    # ========================================================================
    op.create_table(
        'offers',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(255), nullable=False, server_default=''),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('per_day_cap', sa.Integer(), nullable=True),
        sa.Column('timezone', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('per_day_cap IS NULL OR per_day_cap >= 0', name='ck_offer_cap_non_negative'),
    )

    op.create_index('ix_offers_merchant_id', 'offers', ['merchant_id'])

    # ========================================================================
    # Create redemption_tokens table
    # ========================================================================
    op.create_table(
        'redemption_tokens',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('offer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('device_tag', sa.String(100), nullable=False, server_default='unknown'),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ttl_seconds', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('consumed_by_merchant_id', UUID(as_uuid=True), nullable=True),
        sa.Column('expired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('superseded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('superseded_by', sa.String(64), nullable=True),

        # Constraints
        sa.CheckConstraint(
            "status IN ('active', 'consumed', 'expired', 'superseded')",
            name='ck_token_status_valid',
        ),
        sa.CheckConstraint('expires_at > issued_at', name='ck_token_expiry_after_issue'),
        sa.CheckConstraint('ttl_seconds > 0', name='ck_token_ttl_positive'),
    )

    # At most one active token per (user, offer)
    op.create_index(
        'uq_tokens_one_active_per_user_offer',
        'redemption_tokens',
        ['user_id', 'offer_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index('idx_tokens_user_offer', 'redemption_tokens', ['user_id', 'offer_id'])
    op.create_index(
        'idx_tokens_active_expires_at',
        'redemption_tokens',
        ['expires_at'],
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index('idx_tokens_merchant_id', 'redemption_tokens', ['merchant_id'])

    # ========================================================================
    # Create quota_records table
    # ========================================================================
    op.create_table(
        'quota_records',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('remaining', sa.BigInteger(), nullable=False),
        sa.Column('granted_total', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('remaining >= 0', name='ck_quota_remaining_non_negative'),
    )

    # ========================================================================
    # Create offer_daily_counters table
    # ========================================================================
    op.create_table(
        'offer_daily_counters',
        sa.Column('offer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cap', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.PrimaryKeyConstraint('offer_id', 'day'),
        sa.CheckConstraint('used_count >= 0', name='ck_counter_used_non_negative'),
        sa.CheckConstraint('cap IS NULL OR used_count <= cap', name='ck_counter_within_cap'),
    )

    op.create_index('idx_offer_daily_counters_day', 'offer_daily_counters', ['day'])

    # ========================================================================
    # Create scan_attempts table
    # ========================================================================
    op.create_table(
        'scan_attempts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('token_id', sa.String(64), nullable=True),
        sa.Column('scanning_merchant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('reason', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_index(
        'idx_scan_attempts_token_id',
        'scan_attempts',
        ['token_id'],
        postgresql_where=sa.text('token_id IS NOT NULL'),
    )
    op.create_index(
        'idx_scan_attempts_merchant_created',
        'scan_attempts',
        ['scanning_merchant_id', 'created_at'],
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('idx_scan_attempts_merchant_created', table_name='scan_attempts')
    op.drop_index('idx_scan_attempts_token_id', table_name='scan_attempts')
    op.drop_table('scan_attempts')

    op.drop_index('idx_offer_daily_counters_day', table_name='offer_daily_counters')
    op.drop_table('offer_daily_counters')

    op.drop_table('quota_records')

    op.drop_index('idx_tokens_merchant_id', table_name='redemption_tokens')
    op.drop_index('idx_tokens_active_expires_at', table_name='redemption_tokens')
    op.drop_index('idx_tokens_user_offer', table_name='redemption_tokens')
    op.drop_index('uq_tokens_one_active_per_user_offer', table_name='redemption_tokens')
    op.drop_table('redemption_tokens')

    op.drop_index('ix_offers_merchant_id', table_name='offers')
    op.drop_table('offers')
