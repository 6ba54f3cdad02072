"""create notification tables

Revision ID: b7d8e9f0a1b2
Revises: a1c2e3f4b5d6
Create Date: 2026-10-02 14:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = 'b7d8e9f0a1b2'
down_revision: Union[str, None] = 'a1c2e3f4b5d6'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── notification_preferences ──
    op.create_table(
        'notification_preferences',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=False, unique=True),
        sa.Column('channels_json', JSONB(), nullable=False, server_default='{}'),
        sa.Column('quiet_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('quiet_start', sa.Time(), nullable=False, server_default='22:00'),
        sa.Column('quiet_end', sa.Time(), nullable=False, server_default='08:00'),
        sa.Column('quiet_timezone', sa.String(64), nullable=False, server_default='UTC'),
        sa.Column('digest_frequency', sa.String(16), nullable=False, server_default='weekly'),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # ── notifications ──
    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=False, index=True),
        sa.Column('category', sa.String(32), nullable=False),
        sa.Column('title', sa.String(256), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('data_json', JSONB(), nullable=False, server_default='{}'),
        sa.Column('priority', sa.String(16), nullable=False, server_default='medium'),
        sa.Column('requested_channels', JSONB(), nullable=False),
        sa.Column('resolved_channels', JSONB(), nullable=False),
        sa.Column('status', sa.String(24), nullable=False),
        sa.Column('delivery_error', sa.Text(), nullable=True),
        sa.Column('scheduled_for', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('claimed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('dispatched_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('read_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('dedup_key', sa.String(64), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('user_id', 'dedup_key', name='uq_notification_dedup'),
    )
    op.create_index('ix_notifications_user_unread', 'notifications', ['user_id', 'is_read'])
    op.create_index('ix_notifications_due', 'notifications', ['status', 'scheduled_for'])

    # ── push_subscriptions ──
    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=False, index=True),
        sa.Column('endpoint', sa.Text(), nullable=False),
        sa.Column('p256dh', sa.Text(), nullable=False),
        sa.Column('auth', sa.Text(), nullable=False),
        sa.Column('user_agent', sa.String(512), nullable=True),
        sa.Column('device_type', sa.String(16), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('deactivated_reason', sa.String(16), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('last_updated', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'endpoint', name='uq_push_user_endpoint'),
    )


def downgrade() -> None:
    op.drop_table('push_subscriptions')
    op.drop_index('ix_notifications_due', table_name='notifications')
    op.drop_index('ix_notifications_user_unread', table_name='notifications')
    op.drop_table('notifications')
    op.drop_table('notification_preferences')
