"""initial schema - jobs, notifications and payouts

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    # Create jobs table (enums stored as VARCHAR)
    op.create_table(
        'jobs',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('type', sa.String(64), nullable=False, index=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('status', sa.String(32), nullable=False, server_default='queued'),
        sa.Column('next_run_at', sa.DateTime(), nullable=False),
        sa.Column('worker_id', sa.String(128), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('last_error_code', sa.String(64), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('result', postgresql.JSONB(), nullable=True),
        sa.Column('created_by', sa.String(64), nullable=True),
        sa.Column('requeued_from', sa.String(40), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        *timestamps(),
    )
    op.create_index('ix_jobs_eligibility', 'jobs', ['status', 'next_run_at', 'priority'])

    # Create notifications table
    op.create_table(
        'notifications',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('type', sa.String(64), nullable=False),
        sa.Column('template_id', sa.String(64), nullable=True),
        sa.Column('recipients', postgresql.JSONB(), nullable=False),
        sa.Column('content', postgresql.JSONB(), nullable=False),
        sa.Column('channels', postgresql.JSONB(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='queued', index=True),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('dispatched_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(64), nullable=True),
        *timestamps(),
    )

    op.create_table(
        'notification_templates',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('channels', postgresql.JSONB(), nullable=False),
        sa.Column('content_template', postgresql.JSONB(), nullable=False),
        sa.Column('required_variables', postgresql.JSONB(), nullable=False),
        sa.Column('default_locale', sa.String(16), nullable=False, server_default='en'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        sa.Column('created_by', sa.String(64), nullable=True),
        *timestamps(),
    )

    op.create_table(
        'notification_inbox',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('notification_id', sa.String(40), sa.ForeignKey('notifications.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('data', postgresql.JSONB(), nullable=True),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        *timestamps(),
        sa.UniqueConstraint('notification_id', 'user_id', name='uq_inbox_notification_user'),
    )

    # Create dispatch attempt ledger
    op.create_table(
        'dispatch_attempts',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('notification_id', sa.String(40), sa.ForeignKey('notifications.id', ondelete='CASCADE'), nullable=False),
        sa.Column('recipient_key', sa.String(64), nullable=False),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('provider', sa.String(32), nullable=True),
        sa.Column('destination', sa.Text(), nullable=True),
        sa.Column('provider_reference_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('error_code', sa.String(64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        *timestamps(),
        sa.UniqueConstraint(
            'notification_id', 'recipient_key', 'channel', 'attempt_number',
            name='uq_dispatch_attempt_number'
        ),
    )
    op.create_index('ix_dispatch_attempts_ledger', 'dispatch_attempts', ['notification_id', 'channel', 'status'])

    # Create destination tables
    op.create_table(
        'push_tokens',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('token', sa.String(512), nullable=False),
        sa.Column('platform', sa.String(16), nullable=True),
        *timestamps(),
        sa.UniqueConstraint('user_id', 'token', name='uq_push_token_user'),
    )

    op.create_table(
        'webhook_subscriptions',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('secret', sa.String(255), nullable=False, server_default=''),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('deactivated_at', sa.DateTime(), nullable=True),
        sa.Column('deactivation_reason', sa.Text(), nullable=True),
        *timestamps(),
    )

    op.create_table(
        'email_suppressions',
        sa.Column('email', sa.String(320), primary_key=True),
        sa.Column('reason', sa.Text(), nullable=True),
        *timestamps(),
    )

    # Create payout tables
    op.create_table(
        'payout_batches',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('escrow_id', sa.String(64), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='scheduled'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        *timestamps(),
    )

    op.create_table(
        'payout_items',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('batch_id', sa.String(40), sa.ForeignKey('payout_batches.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('recipient_user_id', sa.String(64), nullable=False),
        sa.Column('recipient_account_id', sa.String(128), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='scheduled'),
        sa.Column('provider_reference_id', sa.String(255), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('submission_count', sa.Integer(), nullable=False, server_default='0'),
        *timestamps(),
    )


def downgrade() -> None:
    op.drop_table('payout_items')
    op.drop_table('payout_batches')
    op.drop_table('email_suppressions')
    op.drop_table('webhook_subscriptions')
    op.drop_table('push_tokens')
    op.drop_index('ix_dispatch_attempts_ledger', table_name='dispatch_attempts')
    op.drop_table('dispatch_attempts')
    op.drop_table('notification_inbox')
    op.drop_table('notification_templates')
    op.drop_table('notifications')
    op.drop_index('ix_jobs_eligibility', table_name='jobs')
    op.drop_table('jobs')
