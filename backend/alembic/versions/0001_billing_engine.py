"""Billing engine schema

Revision ID: 0001_billing_engine
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_billing_engine'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


# Tables users may read their own rows from
USER_READABLE_TABLES = ('subscriptions', 'payment_history', 'contract_signatures')

# Tables only the backend (service role) touches
SERVICE_ONLY_TABLES = ('payment_sessions', 'webhook_events', 'webhook_reprocess_log')


def upgrade() -> None:
    """Create payment sessions, subscriptions, ledger, contracts and webhook tables."""

    op.create_table(
        'profiles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(320), unique=True),
        sa.Column('full_name', sa.String(255)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        if_not_exists=True,
    )
    op.create_index('ix_profiles_email', 'profiles', ['email'], if_not_exists=True)

    op.create_table(
        'payment_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider_session_id', sa.String(64), unique=True),
        sa.Column('reference', sa.String(255), nullable=False, unique=True),

        # Ownership
        sa.Column('user_id', sa.String(36)),
        sa.Column('owner_key', sa.String(320), nullable=False),

        # What is being paid
        sa.Column('plan_id', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), server_default='0', nullable=False),
        sa.Column('currency', sa.String(3), server_default='ILS', nullable=False),
        sa.Column('operation', sa.String(32), nullable=False),
        sa.Column('status', sa.String(20), server_default='initiated', nullable=False),

        # Contact details
        sa.Column('contact_email', sa.String(320)),
        sa.Column('contact_name', sa.String(255)),
        sa.Column('contact_phone', sa.String(50)),
        sa.Column('url', sa.String(2048)),

        # Resolution
        sa.Column('transaction_id', sa.String(64)),
        sa.Column('response_code', sa.Integer),
        sa.Column('resolved_at', sa.DateTime(timezone=True)),
        sa.Column('provider_payload', postgresql.JSONB),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('recovered', sa.Boolean, server_default='false', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_payment_sessions_provider_session_id', 'payment_sessions', ['provider_session_id'])
    op.create_index('ix_payment_sessions_reference', 'payment_sessions', ['reference'])
    op.create_index('ix_payment_sessions_user_id', 'payment_sessions', ['user_id'])
    op.create_index('ix_payment_sessions_owner_key', 'payment_sessions', ['owner_key'])
    op.create_index('ix_payment_sessions_status', 'payment_sessions', ['status'])
    op.create_index('ix_payment_sessions_contact_email', 'payment_sessions', ['contact_email'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False, unique=True),
        sa.Column('plan_type', sa.String(20), server_default='monthly', nullable=False),
        sa.Column('status', sa.String(20), server_default='trial', nullable=False),

        # Lifecycle dates
        sa.Column('trial_ends_at', sa.DateTime(timezone=True)),
        sa.Column('current_period_ends_at', sa.DateTime(timezone=True)),
        sa.Column('next_charge_date', sa.DateTime(timezone=True)),

        sa.Column('payment_method', postgresql.JSONB),
        sa.Column('contract_signed', sa.Boolean, server_default='false', nullable=False),
        sa.Column('contract_signed_at', sa.DateTime(timezone=True)),
        sa.Column('last_payment_failure', postgresql.JSONB),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        sa.Column('cancellation_reason', sa.String(500)),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    op.create_table(
        'payment_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('session_id', sa.String(36)),
        sa.Column('transaction_id', sa.String(64)),
        sa.Column('plan_id', sa.String(20)),
        sa.Column('amount', sa.Numeric(10, 2), server_default='0', nullable=False),
        sa.Column('currency', sa.String(3), server_default='ILS', nullable=False),
        sa.Column('operation', sa.String(32)),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('response_code', sa.Integer),
        sa.Column('description', sa.String(500)),
        sa.Column('last4', sa.String(4)),
        sa.Column('payment_data', postgresql.JSONB),
        *_timestamps(),
        sa.UniqueConstraint('session_id', 'transaction_id', name='uq_payment_history_session_transaction'),
    )
    op.create_index('ix_payment_history_user_id', 'payment_history', ['user_id'])
    op.create_index('ix_payment_history_session_id', 'payment_history', ['session_id'])
    op.create_index('ix_payment_history_status', 'payment_history', ['status'])

    op.create_table(
        'contract_signatures',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('plan_id', sa.String(20), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('phone', sa.String(50)),
        sa.Column('id_number', sa.String(20)),
        sa.Column('address', sa.String(500)),
        sa.Column('contract_html', sa.Text, nullable=False),
        sa.Column('contract_version', sa.String(20), nullable=False),
        sa.Column('signature_image', sa.Text, nullable=False),
        sa.Column('agreed_to_terms', sa.Boolean, server_default='false', nullable=False),
        sa.Column('agreed_to_privacy', sa.Boolean, server_default='false', nullable=False),
        sa.Column('ip_address', sa.String(64)),
        sa.Column('user_agent', sa.String(1024)),
        sa.Column('browser_info', postgresql.JSONB),
        sa.Column('signed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_contract_signatures_user_id', 'contract_signatures', ['user_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('source', sa.String(20), server_default='cardcom', nullable=False),
        sa.Column('payload', postgresql.JSONB, nullable=False),
        sa.Column('low_profile_id', sa.String(64)),
        sa.Column('return_value', sa.String(255)),
        sa.Column('email', sa.String(320)),
        sa.Column('session_id', sa.String(36)),
        sa.Column('processed', sa.Boolean, server_default='false', nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('processing_attempts', sa.Integer, server_default='0', nullable=False),
        sa.Column('failure_reason', sa.String(32)),
        sa.Column('last_error', sa.String(2000)),
        sa.Column('result', postgresql.JSONB),
        *_timestamps(),
    )
    op.create_index('ix_webhook_events_low_profile_id', 'webhook_events', ['low_profile_id'])
    op.create_index('ix_webhook_events_email', 'webhook_events', ['email'])
    op.create_index('ix_webhook_events_session_id', 'webhook_events', ['session_id'])
    op.create_index('ix_webhook_events_processed', 'webhook_events', ['processed'])

    op.create_table(
        'webhook_reprocess_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(36), nullable=False),
        sa.Column('requested_email', sa.String(320)),
        sa.Column('requested_low_profile_id', sa.String(64)),
        sa.Column('user_id', sa.String(36)),
        sa.Column('outcome', sa.String(32), nullable=False),
        sa.Column('details', postgresql.JSONB),
        *_timestamps(),
    )
    op.create_index('ix_webhook_reprocess_log_event_id', 'webhook_reprocess_log', ['event_id'])
    op.create_index('ix_webhook_reprocess_log_user_id', 'webhook_reprocess_log', ['user_id'])

    # Enable RLS; the backend connects as service role
    for table in USER_READABLE_TABLES + SERVICE_ONLY_TABLES:
        op.execute(f'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY')
        op.execute(f"""
            CREATE POLICY "Service role manages {table}"
            ON {table} FOR ALL
            TO service_role
            USING (true)
            WITH CHECK (true)
        """)

    for table in USER_READABLE_TABLES:
        op.execute(f"""
            CREATE POLICY "Users can view own {table}"
            ON {table} FOR SELECT
            TO authenticated
            USING (user_id = auth.uid()::text)
        """)


def downgrade() -> None:
    """Drop billing tables. The profiles mirror is left in place."""
    for table in (
        'webhook_reprocess_log',
        'webhook_events',
        'contract_signatures',
        'payment_history',
        'subscriptions',
        'payment_sessions',
    ):
        op.drop_table(table)
