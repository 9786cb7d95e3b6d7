"""initial billing schema

Revision ID: 0001_initial_billing_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial_billing_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'agencies',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('owner_email', sa.String(length=255), nullable=True),
        sa.Column('slug', sa.String(length=100), nullable=True),
        sa.Column('referral_code', sa.String(length=30), nullable=False),
        sa.Column('referred_by', sa.String(length=30), nullable=True),
        sa.Column('platform_customer_ref', sa.String(length=255), nullable=True),
        sa.Column('platform_subscription_ref', sa.String(length=255), nullable=True),
        sa.Column('subscription_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('plan_type', sa.String(length=50), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('connect_account_ref', sa.String(length=255), nullable=True),
        sa.Column('charges_enabled', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('payouts_enabled', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('onboarding_complete', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('referral_earnings_cents_lifetime', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('referral_balance_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('referral_balance_cents >= 0', name=op.f('ck_agencies_referral_balance_non_negative')),
        sa.CheckConstraint('referral_balance_cents <= referral_earnings_cents_lifetime', name=op.f('ck_agencies_referral_balance_within_earnings')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_agencies')),
        sa.UniqueConstraint('slug', name=op.f('uq_agencies_slug')),
    )
    op.create_index(op.f('ix_agencies_referral_code'), 'agencies', ['referral_code'], unique=True)
    op.create_index(op.f('ix_agencies_referred_by'), 'agencies', ['referred_by'], unique=False)
    op.create_index(op.f('ix_agencies_platform_customer_ref'), 'agencies', ['platform_customer_ref'], unique=False)
    op.create_index(op.f('ix_agencies_connect_account_ref'), 'agencies', ['connect_account_ref'], unique=True)

    op.create_table(
        'clients',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('agency_id', sa.Uuid(), nullable=False),
        sa.Column('business_name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('connect_customer_ref', sa.String(length=255), nullable=True),
        sa.Column('connect_subscription_ref', sa.String(length=255), nullable=True),
        sa.Column('subscription_status', sa.String(length=20), nullable=False, server_default='trial'),
        sa.Column('plan_type', sa.String(length=50), nullable=True),
        sa.Column('monthly_call_limit', sa.Integer(), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('calls_this_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_usage_reset_invoice_ref', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['agency_id'], ['agencies.id'], name=op.f('fk_clients_agency_id_agencies'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_clients')),
        sa.UniqueConstraint('agency_id', 'connect_customer_ref', name='uq_clients_agency_customer'),
    )
    op.create_index(op.f('ix_clients_agency_id'), 'clients', ['agency_id'], unique=False)
    op.create_index(op.f('ix_clients_subscription_status'), 'clients', ['subscription_status'], unique=False)
    # Trial sweep candidates
    op.create_index(
        'ix_clients_trial_ends_at_trial',
        'clients',
        ['trial_ends_at'],
        unique=False,
        postgresql_where=sa.text("subscription_status = 'trial'"),
    )

    op.create_table(
        'commission_ledger_entries',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('referrer_agency_id', sa.Uuid(), nullable=False),
        sa.Column('referred_agency_id', sa.Uuid(), nullable=False),
        sa.Column('source_invoice_ref', sa.String(length=255), nullable=False),
        sa.Column('payment_amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('commission_rate', sa.Numeric(precision=6, scale=4), nullable=False),
        sa.Column('commission_amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('transfer_ref', sa.String(length=255), nullable=True),
        sa.Column('transferred_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['referrer_agency_id'], ['agencies.id'], name=op.f('fk_commission_ledger_entries_referrer_agency_id_agencies'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['referred_agency_id'], ['agencies.id'], name=op.f('fk_commission_ledger_entries_referred_agency_id_agencies'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_commission_ledger_entries')),
        sa.UniqueConstraint('source_invoice_ref', name=op.f('uq_commission_ledger_entries_source_invoice_ref')),
    )
    op.create_index(op.f('ix_commission_ledger_entries_referrer_agency_id'), 'commission_ledger_entries', ['referrer_agency_id'], unique=False)
    op.create_index(op.f('ix_commission_ledger_entries_referred_agency_id'), 'commission_ledger_entries', ['referred_agency_id'], unique=False)
    op.create_index(op.f('ix_commission_ledger_entries_status'), 'commission_ledger_entries', ['status'], unique=False)

    op.create_table(
        'agency_subscription_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('agency_id', sa.Uuid(), nullable=False),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('external_ref', sa.String(length=255), nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=True),
        sa.Column('details', sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['agency_id'], ['agencies.id'], name=op.f('fk_agency_subscription_events_agency_id_agencies'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_agency_subscription_events')),
        sa.UniqueConstraint('agency_id', 'event_type', 'external_ref', name='uq_agency_subscription_events_dedupe'),
    )
    op.create_index(op.f('ix_agency_subscription_events_agency_id'), 'agency_subscription_events', ['agency_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_agency_subscription_events_agency_id'), table_name='agency_subscription_events')
    op.drop_table('agency_subscription_events')
    op.drop_index(op.f('ix_commission_ledger_entries_status'), table_name='commission_ledger_entries')
    op.drop_index(op.f('ix_commission_ledger_entries_referred_agency_id'), table_name='commission_ledger_entries')
    op.drop_index(op.f('ix_commission_ledger_entries_referrer_agency_id'), table_name='commission_ledger_entries')
    op.drop_table('commission_ledger_entries')
    op.drop_index('ix_clients_trial_ends_at_trial', table_name='clients')
    op.drop_index(op.f('ix_clients_subscription_status'), table_name='clients')
    op.drop_index(op.f('ix_clients_agency_id'), table_name='clients')
    op.drop_table('clients')
    op.drop_index(op.f('ix_agencies_connect_account_ref'), table_name='agencies')
    op.drop_index(op.f('ix_agencies_platform_customer_ref'), table_name='agencies')
    op.drop_index(op.f('ix_agencies_referred_by'), table_name='agencies')
    op.drop_index(op.f('ix_agencies_referral_code'), table_name='agencies')
    op.drop_table('agencies')
