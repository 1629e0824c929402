"""Create billing tables

Revision ID: billing_001
Revises:
Create Date: 2026-09-01 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'billing_001'
down_revision = None
branch_labels = None
depends_on = None

SUBSCRIPTION_STATUS = sa.Enum(
    'TRIALING', 'ACTIVE', 'PAST_DUE', 'SUSPENDED', 'CANCELED', 'EXPIRED', name='subscriptionstatus'
)
BILLING_CYCLE = sa.Enum('MONTHLY', 'YEARLY', name='billingcycle')


def upgrade():
    op.create_table('accounts',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('email_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_accounts_id'), 'accounts', ['id'], unique=False)
    op.create_index(op.f('ix_accounts_email'), 'accounts', ['email'], unique=True)
    op.create_index(op.f('ix_accounts_stripe_customer_id'), 'accounts', ['stripe_customer_id'], unique=False)

    op.create_table('subscription_plans',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False),
        sa.Column('price_monthly', sa.Numeric(10, 2), nullable=False),
        sa.Column('price_yearly', sa.Numeric(10, 2), nullable=True),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('stripe_price_id_monthly', sa.String(), nullable=True),
        sa.Column('stripe_price_id_yearly', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscription_plans_name'), 'subscription_plans', ['name'], unique=True)

    op.create_table('subscriptions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('plan_id', sa.String(), nullable=False),
        sa.Column('billing_cycle', BILLING_CYCLE, nullable=False),
        sa.Column('status', SUBSCRIPTION_STATUS, nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_plan_change_at', sa.DateTime(), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('payment_failed_at', sa.DateTime(), nullable=True),
        sa.Column('scheduled_plan_id', sa.String(), nullable=True),
        sa.Column('scheduled_billing_cycle', BILLING_CYCLE, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ),
        sa.ForeignKeyConstraint(['scheduled_plan_id'], ['subscription_plans.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('current_period_end > current_period_start', name='ck_subscriptions_period_order')
    )
    op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_subscriptions_account_id'), 'subscriptions', ['account_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_plan_id'), 'subscriptions', ['plan_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'], unique=False)
    op.create_index(op.f('ix_subscriptions_stripe_subscription_id'), 'subscriptions', ['stripe_subscription_id'], unique=True)

    op.create_table('subscription_changes',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=False),
        sa.Column('previous_plan_id', sa.String(), nullable=True),
        sa.Column('previous_billing_cycle', sa.String(), nullable=True),
        sa.Column('new_plan_id', sa.String(), nullable=False),
        sa.Column('new_billing_cycle', sa.String(), nullable=False),
        sa.Column('change_type', sa.String(), nullable=False),
        sa.Column('prorated_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('changed_by', sa.String(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('changed_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscription_changes_id'), 'subscription_changes', ['id'], unique=False)
    op.create_index(op.f('ix_subscription_changes_account_id'), 'subscription_changes', ['account_id'], unique=False)
    op.create_index(op.f('ix_subscription_changes_subscription_id'), 'subscription_changes', ['subscription_id'], unique=False)
    op.create_index(op.f('ix_subscription_changes_change_type'), 'subscription_changes', ['change_type'], unique=False)
    op.create_index(op.f('ix_subscription_changes_changed_at'), 'subscription_changes', ['changed_at'], unique=False)

    op.create_table('upsells',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('upsell_type', sa.String(), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('is_recurring', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('duration_days', sa.Integer(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_upsells_upsell_type'), 'upsells', ['upsell_type'], unique=False)

    op.create_table('active_upsell_grants',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('upsell_id', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['upsell_id'], ['upsells.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_active_upsell_grants_id'), 'active_upsell_grants', ['id'], unique=False)
    op.create_index(op.f('ix_active_upsell_grants_account_id'), 'active_upsell_grants', ['account_id'], unique=False)
    op.create_index(op.f('ix_active_upsell_grants_status'), 'active_upsell_grants', ['status'], unique=False)
    op.create_index(op.f('ix_active_upsell_grants_end_date'), 'active_upsell_grants', ['end_date'], unique=False)

    op.create_table('listings',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_listings_id'), 'listings', ['id'], unique=False)
    op.create_index(op.f('ix_listings_account_id'), 'listings', ['account_id'], unique=False)
    op.create_index(op.f('ix_listings_status'), 'listings', ['status'], unique=False)

    op.create_table('featured_property_grants',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('listing_id', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('impressions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['listing_id'], ['listings.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_featured_property_grants_id'), 'featured_property_grants', ['id'], unique=False)
    op.create_index(op.f('ix_featured_property_grants_account_id'), 'featured_property_grants', ['account_id'], unique=False)
    op.create_index(op.f('ix_featured_property_grants_listing_id'), 'featured_property_grants', ['listing_id'], unique=False)
    op.create_index(op.f('ix_featured_property_grants_status'), 'featured_property_grants', ['status'], unique=False)
    op.create_index(op.f('ix_featured_property_grants_end_date'), 'featured_property_grants', ['end_date'], unique=False)

    op.create_table('processed_webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_processed_webhook_events_event_id'), 'processed_webhook_events', ['event_id'], unique=True)


def downgrade():
    op.drop_table('processed_webhook_events')
    op.drop_table('featured_property_grants')
    op.drop_table('listings')
    op.drop_table('active_upsell_grants')
    op.drop_table('upsells')
    op.drop_table('subscription_changes')
    op.drop_table('subscriptions')
    op.drop_table('subscription_plans')
    op.drop_table('accounts')
    BILLING_CYCLE.drop(op.get_bind(), checkfirst=True)
    SUBSCRIPTION_STATUS.drop(op.get_bind(), checkfirst=True)
