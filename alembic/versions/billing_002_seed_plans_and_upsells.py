"""Seed plans and upsells

Revision ID: billing_002
Revises: billing_001
Create Date: 2026-09-01 10:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'billing_002'
down_revision = 'billing_001'
branch_labels = None
depends_on = None

plans_table = sa.table('subscription_plans',
    sa.column('id', sa.String),
    sa.column('name', sa.String),
    sa.column('display_name', sa.String),
    sa.column('price_monthly', sa.Numeric(10, 2)),
    sa.column('price_yearly', sa.Numeric(10, 2)),
    sa.column('features', sa.JSON),
    sa.column('is_active', sa.Boolean),
    sa.column('display_order', sa.Integer),
)

upsells_table = sa.table('upsells',
    sa.column('id', sa.String),
    sa.column('name', sa.String),
    sa.column('description', sa.String),
    sa.column('upsell_type', sa.String),
    sa.column('price', sa.Numeric(10, 2)),
    sa.column('is_recurring', sa.Boolean),
    sa.column('duration_days', sa.Integer),
    sa.column('quantity', sa.Integer),
    sa.column('is_active', sa.Boolean),
)


def _features(max_properties, featured_per_month, max_team_members, **flags):
    return {
        'max_properties': max_properties,
        'featured_per_month': featured_per_month,
        'max_team_members': max_team_members,
        **flags,
    }


def upgrade():
    # Stripe price ids are filled in per environment
    op.bulk_insert(plans_table, [
        {'id': 'agente_trial', 'name': 'agente_trial', 'display_name': 'Agente Prueba',
         'price_monthly': 0, 'price_yearly': 0, 'features': _features(3, 0, 1),
         'is_active': True, 'display_order': 0},
        {'id': 'agente_start', 'name': 'agente_start', 'display_name': 'Agente Start',
         'price_monthly': 249, 'price_yearly': 2490, 'features': _features(10, 1, 1),
         'is_active': True, 'display_order': 1},
        {'id': 'agente_pro', 'name': 'agente_pro', 'display_name': 'Agente Pro',
         'price_monthly': 599, 'price_yearly': 5990, 'features': _features(30, 5, 1, analytics=True),
         'is_active': True, 'display_order': 2},
        {'id': 'agente_elite', 'name': 'agente_elite', 'display_name': 'Agente Elite',
         'price_monthly': 999, 'price_yearly': 9990, 'features': _features(-1, 15, 1, analytics=True, priority_support=True),
         'is_active': True, 'display_order': 3},
        {'id': 'inmobiliaria_start', 'name': 'inmobiliaria_start', 'display_name': 'Inmobiliaria Start',
         'price_monthly': 1499, 'price_yearly': None, 'features': _features(100, 10, 5, analytics=True),
         'is_active': True, 'display_order': 4},
        {'id': 'inmobiliaria_grow', 'name': 'inmobiliaria_grow', 'display_name': 'Inmobiliaria Grow',
         'price_monthly': 2999, 'price_yearly': None, 'features': _features(-1, 30, 20, analytics=True),
         'is_active': True, 'display_order': 5},
    ])
    op.bulk_insert(upsells_table, [
        {'id': 'slot_extra_5', 'name': '5 propiedades extra', 'description': 'Five more active listings',
         'upsell_type': 'property_slot', 'price': 199, 'is_recurring': True, 'duration_days': 30,
         'quantity': 5, 'is_active': True},
        {'id': 'destacar_30', 'name': 'Destacar propiedad 30 dias', 'description': 'One featured listing for 30 days',
         'upsell_type': 'featured_listing', 'price': 500, 'is_recurring': False, 'duration_days': 30,
         'quantity': 1, 'is_active': True},
    ])


def downgrade():
    op.execute("DELETE FROM upsells WHERE id IN ('slot_extra_5', 'destacar_30')")
    op.execute(
        "DELETE FROM subscription_plans WHERE id IN ('agente_trial', 'agente_start', 'agente_pro', "
        "'agente_elite', 'inmobiliaria_start', 'inmobiliaria_grow')"
    )
