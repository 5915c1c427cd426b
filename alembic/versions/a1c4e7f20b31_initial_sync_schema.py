"""Initial sync schema: connections, job ledger, sync status, throttle counters, fact tables

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers
revision: str = 'a1c4e7f20b31'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_STATUSES = "status IN ('pending', 'running')"


def _has_table(table_name):
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def _meta_metrics():
    return [
        sa.Column('spend', sa.Float(), server_default='0'),
        sa.Column('impressions', sa.Integer(), server_default='0'),
        sa.Column('clicks', sa.Integer(), server_default='0'),
        sa.Column('reach', sa.Integer(), server_default='0'),
    ]


def upgrade() -> None:
    # ── platform_connections ──
    if not _has_table('platform_connections'):
        op.create_table(
            'platform_connections',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False, index=True),
            sa.Column('platform', sa.String(), nullable=False, index=True),
            sa.Column('access_token', sa.Text(), nullable=False),
            sa.Column('account_id', sa.String(), nullable=False),
            sa.Column('status', sa.String(), nullable=False, index=True, server_default='pending'),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('last_synced_at', sa.DateTime(), nullable=True),
            sa.Column('last_synced_date', sa.Date(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('expired_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('brand_id', 'platform', name='uq_platform_connections_brand_platform'),
        )

    # ── sync_jobs (one row per attempt) ──
    if not _has_table('sync_jobs'):
        op.create_table(
            'sync_jobs',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('job_key', sa.String(), nullable=False, index=True),
            sa.Column('sequence', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('brand_id', sa.String(), nullable=False),
            sa.Column('platform', sa.String(), nullable=False),
            sa.Column('entity', sa.String(), nullable=False),
            sa.Column('range_start', sa.Date(), nullable=False),
            sa.Column('range_end', sa.Date(), nullable=False),
            sa.Column('phase', sa.String(), nullable=False),
            sa.Column('reason', sa.String(), nullable=False),
            sa.Column('priority', sa.Integer(), server_default='0'),
            sa.Column('status', sa.String(), nullable=False, server_default='pending'),
            sa.Column('attempt', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('eligible_at', sa.DateTime(), nullable=False),
            sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
            sa.Column('permanently_failed', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('records_written', sa.Integer(), server_default='0'),
            sa.Column('records_failed', sa.Integer(), server_default='0'),
            sa.Column('error_kind', sa.String(), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('http_status', sa.Integer(), nullable=True),
            sa.Column('parent_job_id', sa.Integer(),
                      sa.ForeignKey('sync_jobs.id', ondelete='SET NULL'), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column('started_at', sa.DateTime(), nullable=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('job_key', 'sequence', name='uq_sync_jobs_key_sequence'),
        )
        op.create_index(
            'uq_sync_jobs_live_key', 'sync_jobs', ['job_key'], unique=True,
            postgresql_where=sa.text(LIVE_STATUSES),
            sqlite_where=sa.text(LIVE_STATUSES),
        )
        op.create_index('ix_sync_jobs_claim', 'sync_jobs', ['status', 'eligible_at'])
        op.create_index('ix_sync_jobs_brand_platform', 'sync_jobs', ['brand_id', 'platform'])

    # ── sync_status ──
    if not _has_table('sync_status'):
        op.create_table(
            'sync_status',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False, index=True),
            sa.Column('platform', sa.String(), nullable=False),
            sa.Column('total_jobs', sa.Integer(), server_default='0'),
            sa.Column('pending_jobs', sa.Integer(), server_default='0'),
            sa.Column('running_jobs', sa.Integer(), server_default='0'),
            sa.Column('completed_jobs', sa.Integer(), server_default='0'),
            sa.Column('failed_jobs', sa.Integer(), server_default='0'),
            sa.Column('phase', sa.String(), nullable=False, server_default='historical'),
            sa.Column('percent_complete', sa.Float(), server_default='0'),
            sa.Column('failed_ranges', sa.JSON(), nullable=True),
            sa.Column('last_synced_at', sa.DateTime(), nullable=True),
            sa.Column('computed_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'platform', name='uq_sync_status_brand_platform'),
        )

    # ── request_throttle_counters ──
    if not _has_table('request_throttle_counters'):
        op.create_table(
            'request_throttle_counters',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('key', sa.String(), nullable=False, index=True),
            sa.Column('window_start', sa.DateTime(), nullable=False),
            sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
            sa.UniqueConstraint('key', 'window_start', name='uq_request_throttle_key_window'),
        )

    # ── Meta fact tables ──
    if not _has_table('meta_ad_insights'):
        op.create_table(
            'meta_ad_insights',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False),
            sa.Column('account_id', sa.String(), nullable=False),
            sa.Column('campaign_id', sa.String(), index=True),
            sa.Column('campaign_name', sa.String()),
            sa.Column('adset_id', sa.String()),
            sa.Column('adset_name', sa.String()),
            sa.Column('ad_id', sa.String(), nullable=False),
            sa.Column('ad_name', sa.String()),
            sa.Column('date', sa.Date(), nullable=False),
            *_meta_metrics(),
            sa.Column('link_clicks', sa.Integer(), server_default='0'),
            sa.Column('purchases', sa.Integer(), server_default='0'),
            sa.Column('purchase_value', sa.Float(), server_default='0'),
            sa.Column('frequency', sa.Float(), nullable=True),
            sa.Column('ctr', sa.Float(), nullable=True),
            sa.Column('cpc', sa.Float(), nullable=True),
            sa.Column('cpm', sa.Float(), nullable=True),
            sa.Column('actions', sa.JSON(), nullable=True),
            sa.Column('synced_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'ad_id', 'date', name='uq_meta_ad_insights_brand_ad_date'),
        )
        op.create_index('ix_meta_ad_insights_brand_date', 'meta_ad_insights', ['brand_id', 'date'])

    if not _has_table('meta_demographics'):
        op.create_table(
            'meta_demographics',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False),
            sa.Column('account_id', sa.String(), nullable=False),
            sa.Column('date', sa.Date(), nullable=False),
            sa.Column('breakdown_type', sa.String(), nullable=False),
            sa.Column('breakdown_value', sa.String(), nullable=False),
            *_meta_metrics(),
            sa.Column('synced_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'account_id', 'date', 'breakdown_type', 'breakdown_value',
                                name='uq_meta_demographics_natural_key'),
        )
        op.create_index('ix_meta_demographics_brand_date', 'meta_demographics', ['brand_id', 'date'])

    if not _has_table('meta_device_performance'):
        op.create_table(
            'meta_device_performance',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False),
            sa.Column('account_id', sa.String(), nullable=False),
            sa.Column('date', sa.Date(), nullable=False),
            sa.Column('device', sa.String(), nullable=False),
            *_meta_metrics(),
            sa.Column('synced_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'account_id', 'date', 'device', name='uq_meta_device_natural_key'),
        )
        op.create_index('ix_meta_device_performance_brand_date', 'meta_device_performance', ['brand_id', 'date'])

    # ── Shopify fact tables ──
    if not _has_table('shopify_orders'):
        op.create_table(
            'shopify_orders',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False),
            sa.Column('order_id', sa.String(), nullable=False),
            sa.Column('order_number', sa.Integer(), nullable=True),
            sa.Column('customer_id', sa.String(), nullable=True, index=True),
            sa.Column('financial_status', sa.String(), nullable=True),
            sa.Column('fulfillment_status', sa.String(), nullable=True),
            sa.Column('currency', sa.String(), nullable=True),
            sa.Column('total_price', sa.Float(), server_default='0'),
            sa.Column('subtotal_price', sa.Float(), server_default='0'),
            sa.Column('total_tax', sa.Float(), server_default='0'),
            sa.Column('total_discounts', sa.Float(), server_default='0'),
            sa.Column('line_item_count', sa.Integer(), server_default='0'),
            sa.Column('source_name', sa.String(), nullable=True),
            sa.Column('discount_codes', sa.JSON(), nullable=True),
            sa.Column('date', sa.Date(), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.Column('synced_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'order_id', name='uq_shopify_orders_brand_order'),
        )
        op.create_index('ix_shopify_orders_brand_date', 'shopify_orders', ['brand_id', 'date'])

    if not _has_table('shopify_customers'):
        op.create_table(
            'shopify_customers',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False),
            sa.Column('customer_id', sa.String(), nullable=False),
            sa.Column('email', sa.String(), nullable=True),
            sa.Column('state', sa.String(), nullable=True),
            sa.Column('accepts_marketing', sa.Integer(), server_default='0'),
            sa.Column('orders_count', sa.Integer(), server_default='0'),
            sa.Column('total_spent', sa.Float(), server_default='0'),
            sa.Column('date', sa.Date(), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.Column('synced_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'customer_id', name='uq_shopify_customers_brand_customer'),
        )
        op.create_index('ix_shopify_customers_brand_date', 'shopify_customers', ['brand_id', 'date'])

    if not _has_table('shopify_products'):
        op.create_table(
            'shopify_products',
            sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column('brand_id', sa.String(), nullable=False),
            sa.Column('product_id', sa.String(), nullable=False),
            sa.Column('title', sa.String(), nullable=True),
            sa.Column('vendor', sa.String(), nullable=True),
            sa.Column('product_type', sa.String(), nullable=True),
            sa.Column('status', sa.String(), nullable=True),
            sa.Column('variant_count', sa.Integer(), server_default='0'),
            sa.Column('total_inventory', sa.Integer(), server_default='0'),
            sa.Column('min_price', sa.Float(), nullable=True),
            sa.Column('date', sa.Date(), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.Column('synced_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('brand_id', 'product_id', name='uq_shopify_products_brand_product'),
        )
        op.create_index('ix_shopify_products_brand_date', 'shopify_products', ['brand_id', 'date'])


def downgrade() -> None:
    for table_name in (
        'shopify_products', 'shopify_customers', 'shopify_orders',
        'meta_device_performance', 'meta_demographics', 'meta_ad_insights',
        'request_throttle_counters', 'sync_status', 'sync_jobs', 'platform_connections',
    ):
        if _has_table(table_name):
            op.drop_table(table_name)
