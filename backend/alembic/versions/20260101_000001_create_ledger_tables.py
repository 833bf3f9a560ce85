"""Create ledger tables

Revision ID: 20260101_000001
Revises:
Create Date: 2026-01-01

WHAT:
    Creates the ledger schema:
    - daily_metrics: per (client, date, source) storefront and ad activity
    - daily_line_items / variant_unit_costs: COGS coverage inputs
    - client_cost_settings / provider_credentials: client configuration
    - daily_cogs_coverage / daily_profit_summary: derived rows
    - sync_runs: orchestrator run history

WHY:
    Every fact table carries the named composite unique constraint that the
    upsert layer uses as its ON CONFLICT target.

REFERENCES:
    - profitledger/models.py
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20260101_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # RAW FACTS
    # =========================================================================
    op.create_table(
        'daily_metrics',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('revenue', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('units', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('spend', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('impressions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conversions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('client_id', 'date', 'source', name='uq_daily_metrics_client_date_source'),
    )
    op.create_index('ix_daily_metrics_client_id', 'daily_metrics', ['client_id'])

    op.create_table(
        'daily_line_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('shop_domain', sa.String(), nullable=True),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('inventory_item_id', sa.BigInteger(), nullable=False),
        sa.Column('variant_id', sa.BigInteger(), nullable=True),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('units', sa.Integer(), nullable=False),
        sa.Column('line_revenue', sa.Numeric(18, 4), nullable=False),
        sa.Column('currency', sa.String(8), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('client_id', 'day', 'inventory_item_id', name='uq_daily_line_items_client_day_item'),
    )
    op.create_index('ix_daily_line_items_client_id', 'daily_line_items', ['client_id'])

    op.create_table(
        'variant_unit_costs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('inventory_item_id', sa.BigInteger(), nullable=False),
        sa.Column('variant_id', sa.BigInteger(), nullable=True),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('unit_cost_amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('unit_cost_currency', sa.String(8), nullable=True),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('client_id', 'inventory_item_id', name='uq_variant_unit_costs_client_item'),
    )
    op.create_index('ix_variant_unit_costs_client_id', 'variant_unit_costs', ['client_id'])

    # =========================================================================
    # CONFIGURATION
    # =========================================================================
    op.create_table(
        'client_cost_settings',
        sa.Column('client_id', sa.String(), primary_key=True),
        sa.Column('default_gross_margin_pct', sa.Numeric(9, 4), nullable=True),
        sa.Column('avg_cogs_per_unit', sa.Numeric(18, 4), nullable=True),
        sa.Column('processing_fee_pct', sa.Numeric(9, 4), nullable=True),
        sa.Column('processing_fee_fixed', sa.Numeric(18, 4), nullable=True),
        sa.Column('pick_pack_per_order', sa.Numeric(18, 4), nullable=True),
        sa.Column('shipping_subsidy_per_order', sa.Numeric(18, 4), nullable=True),
        sa.Column('materials_per_order', sa.Numeric(18, 4), nullable=True),
        sa.Column('other_variable_pct_revenue', sa.Numeric(9, 4), nullable=True),
        sa.Column('other_fixed_per_day', sa.Numeric(18, 4), nullable=True),
        sa.Column('cogs_coverage_threshold_actual', sa.Numeric(9, 4), nullable=True),
        sa.Column('cogs_coverage_threshold_hybrid', sa.Numeric(9, 4), nullable=True),
        sa.Column('cost_mode_override', sa.String(), nullable=True),
        sa.Column('exclude_pos_orders', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'provider_credentials',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('account_ref', sa.String(), nullable=False),
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column('refresh_token_enc', sa.Text(), nullable=True),
        sa.Column('extra', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('client_id', 'provider', name='uq_provider_credentials_client_provider'),
    )
    op.create_index('ix_provider_credentials_client_id', 'provider_credentials', ['client_id'])

    # =========================================================================
    # DERIVED FACTS
    # =========================================================================
    op.create_table(
        'daily_cogs_coverage',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('product_cogs_known', sa.Numeric(18, 2), nullable=False),
        sa.Column('revenue_with_cogs', sa.Numeric(18, 2), nullable=False),
        sa.Column('units_with_cogs', sa.Integer(), nullable=False),
        sa.Column('estimated_cogs_missing', sa.Numeric(18, 2), nullable=False),
        sa.UniqueConstraint('client_id', 'date', name='uq_daily_cogs_coverage_client_date'),
    )
    op.create_index('ix_daily_cogs_coverage_client_id', 'daily_cogs_coverage', ['client_id'])

    op.create_table(
        'daily_profit_summary',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('revenue', sa.Numeric(18, 2), nullable=False),
        sa.Column('orders', sa.Integer(), nullable=False),
        sa.Column('units', sa.Integer(), nullable=False),
        sa.Column('paid_spend', sa.Numeric(18, 2), nullable=False),
        sa.Column('est_cogs', sa.Numeric(18, 2), nullable=False),
        sa.Column('est_processing_fees', sa.Numeric(18, 2), nullable=False),
        sa.Column('est_fulfillment_costs', sa.Numeric(18, 2), nullable=False),
        sa.Column('est_other_variable_costs', sa.Numeric(18, 2), nullable=False),
        sa.Column('est_other_fixed_costs', sa.Numeric(18, 2), nullable=False),
        sa.Column('contribution_profit', sa.Numeric(18, 2), nullable=False),
        sa.Column('mer', sa.Numeric(18, 4), nullable=False),
        sa.Column('profit_mer', sa.Numeric(18, 4), nullable=False),
        sa.Column('cogs_coverage_pct', sa.Numeric(9, 4), nullable=False),
        sa.Column('cost_mode', sa.String(), nullable=False),
        sa.Column('cost_confidence', sa.String(), nullable=False),
        sa.UniqueConstraint('client_id', 'date', name='uq_daily_profit_summary_client_date'),
    )
    op.create_index('ix_daily_profit_summary_client_id', 'daily_profit_summary', ['client_id'])

    # =========================================================================
    # RUN HISTORY
    # =========================================================================
    op.create_table(
        'sync_runs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('ok', sa.Boolean(), nullable=False),
        sa.Column('status', sa.Integer(), nullable=False),
        sa.Column('steps', sa.JSON(), nullable=False),
        sa.Column('trigger', sa.String(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_sync_runs_client_id', 'sync_runs', ['client_id'])


def downgrade() -> None:
    for table in (
        'sync_runs',
        'daily_profit_summary',
        'daily_cogs_coverage',
        'provider_credentials',
        'client_cost_settings',
        'variant_unit_costs',
        'daily_line_items',
        'daily_metrics',
    ):
        op.drop_table(table)
