"""create follow-up reminder tables

Revision ID: 001_create_followup_reminders
Revises:
Create Date: 2025-01-06
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_create_followup_reminders'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')

    op.create_table(
        'followup_reminders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('entity_id', sa.String(64), nullable=False),
        sa.Column('chain_id', sa.String(36), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('frequency', sa.String(16), nullable=False, server_default='one-time'),
        sa.Column('custom_interval_days', sa.Integer(), nullable=True),
        sa.Column('priority', sa.String(8), nullable=False, server_default='medium'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('tags', json_type, nullable=False),
        sa.Column('sent_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('client_name', sa.String(255), nullable=True),
        sa.Column('client_email', sa.String(255), nullable=True),
        sa.Column('client_phone', sa.String(64), nullable=True),
        sa.Column('created_by', sa.String(64), nullable=True),
        sa.Column('last_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'completed', 'missed', 'cancelled')",
            name='ck_followup_reminders_status',
        ),
        sa.CheckConstraint(
            "custom_interval_days IS NULL OR (custom_interval_days BETWEEN 1 AND 365)",
            name='ck_followup_reminders_custom_interval',
        ),
    )
    op.create_index('ix_followup_reminders_entity_id', 'followup_reminders', ['entity_id'])
    op.create_index('ix_followup_reminders_status_time', 'followup_reminders', ['status', 'scheduled_at'])
    op.create_index('ix_followup_reminders_entity_status', 'followup_reminders', ['entity_id', 'status'])
    op.create_index('ix_followup_reminders_entity_created', 'followup_reminders', ['entity_id', 'created_at'])
    op.create_index('ix_followup_reminders_chain', 'followup_reminders', ['chain_id'])
    op.create_index('ix_followup_reminders_client_email', 'followup_reminders', ['client_email'])

    op.create_table(
        'followup_reminder_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('reminder_id', sa.String(36), sa.ForeignKey('followup_reminders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(24), nullable=False),
        sa.Column('actor', sa.String(64), nullable=True),
        sa.Column('notes', sa.String(500), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_followup_reminder_history_reminder_id', 'followup_reminder_history', ['reminder_id'])


def downgrade() -> None:
    op.drop_index('ix_followup_reminder_history_reminder_id', table_name='followup_reminder_history')
    op.drop_table('followup_reminder_history')
    op.drop_index('ix_followup_reminders_client_email', table_name='followup_reminders')
    op.drop_index('ix_followup_reminders_chain', table_name='followup_reminders')
    op.drop_index('ix_followup_reminders_entity_created', table_name='followup_reminders')
    op.drop_index('ix_followup_reminders_entity_status', table_name='followup_reminders')
    op.drop_index('ix_followup_reminders_status_time', table_name='followup_reminders')
    op.drop_index('ix_followup_reminders_entity_id', table_name='followup_reminders')
    op.drop_table('followup_reminders')
