"""create core storefront tables

Revision ID: 0001_core_tables
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '0001_core_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'sellers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(128), nullable=True),
        sa.Column('contact_email', sa.String(255), nullable=True),
        sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('platform_fee_percent', sa.DECIMAL(5, 2), nullable=True),
        sa.Column('bank_name', sa.String(255), nullable=True),
        sa.Column('bank_account_number', sa.String(64), nullable=True),
        sa.Column('bank_account_name', sa.String(255), nullable=True),
        sa.Column('bank_swift_code', sa.String(32), nullable=True),
        sa.Column('bank_iban', sa.String(64), nullable=True),
        sa.Column('bank_instructions', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
    )
    op.create_index('ix_sellers_plan', 'sellers', ['plan'])
    op.create_index('ix_sellers_is_blocked', 'sellers', ['is_blocked'])

    op.create_table(
        'settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('platform_fee_percent', sa.DECIMAL(5, 2), nullable=True),
        sa.Column('platform_fee_fixed', sa.DECIMAL(10, 2), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'flash_sales',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(256), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('discount_type', sa.String(16), nullable=False, server_default='percentage'),
        sa.Column('discount_value', sa.DECIMAL(10, 2), nullable=False),
        sa.Column('max_discount', sa.DECIMAL(10, 2), nullable=False, server_default='0'),
        sa.Column('min_order_amount', sa.DECIMAL(10, 2), nullable=False, server_default='0'),
        sa.Column('max_uses', sa.Integer(), nullable=False, server_default='-1'),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('product_ids', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_flash_sales_seller_active', 'flash_sales', ['seller_id', 'active'])
    op.create_index('ix_flash_sales_window', 'flash_sales', ['start_time', 'end_time'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('item_id', sa.Integer(), nullable=True),
        sa.Column('customer_name', sa.String(256), nullable=False),
        sa.Column('customer_contact', sa.String(512), nullable=False),
        sa.Column('message', sa.Text(), nullable=False, server_default=''),
        sa.Column('subtotal', sa.DECIMAL(12, 2), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='new'),
        sa.Column('status_history', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('refund_amount', sa.DECIMAL(12, 2), nullable=True),
        sa.Column('shipping_cost', sa.DECIMAL(12, 2), nullable=False, server_default='0'),
        sa.Column('discount_amount', sa.DECIMAL(12, 2), nullable=False, server_default='0'),
        sa.Column('flash_sale_id', sa.Integer(), nullable=True),
        sa.Column('tracking_number', sa.String(128), nullable=False, server_default=''),
        sa.Column('estimated_delivery', sa.DateTime(), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id']),
        sa.ForeignKeyConstraint(['flash_sale_id'], ['flash_sales.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orders_seller_id', 'orders', ['seller_id'])
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])
    op.create_index('ix_orders_seller_status', 'orders', ['seller_id', 'status'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('method', sa.String(32), nullable=False),
        sa.Column('provider', sa.String(32), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('fees', sa.DECIMAL(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.Column('confirmation_code', sa.String(255), nullable=True),
        sa.Column('payer_phone', sa.String(50), nullable=False, server_default=''),
        sa.Column('payer_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('payer_email', sa.String(255), nullable=False, server_default=''),
        sa.Column('instructions', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_seller_id', 'payments', ['seller_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_external_reference', 'payments', ['external_reference'])
    op.create_index('ix_payments_external_id', 'payments', ['external_id'])
    op.create_index('ix_payments_seller_status', 'payments', ['seller_id', 'status'])

    op.create_table(
        'payment_status_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('previous_status', sa.String(20), nullable=False, server_default=''),
        sa.Column('reason', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_by', sa.String(64), nullable=False, server_default='system'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_status_history_payment_id', 'payment_status_history', ['payment_id'])

    op.create_table(
        'settlements',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('gross_amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('platform_fees', sa.DECIMAL(12, 2), nullable=False, server_default='0'),
        sa.Column('payment_fees', sa.DECIMAL(12, 2), nullable=False, server_default='0'),
        sa.Column('net_amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(32), nullable=True),
        sa.Column('payment_reference', sa.String(255), nullable=True),
        sa.Column('payment_ids', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_settlements_seller_id', 'settlements', ['seller_id'])
    op.create_index('ix_settlements_status', 'settlements', ['status'])
    op.create_index('ix_settlements_created_at', 'settlements', ['created_at'])

    op.create_table(
        'revenues',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('gross_amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('platform_fee_amount', sa.DECIMAL(12, 2), nullable=False, server_default='0'),
        sa.Column('payment_fee_amount', sa.DECIMAL(12, 2), nullable=False, server_default='0'),
        sa.Column('net_amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('settlement_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('settlement_id', sa.Integer(), nullable=True),
        sa.Column('settlement_date', sa.DateTime(), nullable=True),
        sa.Column('revenue_date', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id']),
        sa.ForeignKeyConstraint(['settlement_id'], ['settlements.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id', name='uq_revenues_payment_id'),
    )
    op.create_index('ix_revenues_seller_status', 'revenues', ['seller_id', 'settlement_status'])
    op.create_index('ix_revenues_settlement_id', 'revenues', ['settlement_id'])
    op.create_index('ix_revenues_revenue_date', 'revenues', ['revenue_date'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('grace_period_start', sa.DateTime(), nullable=True),
        sa.Column('grace_period_end', sa.DateTime(), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscriptions_seller_id', 'subscriptions', ['seller_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_grace_period_end', 'subscriptions', ['grace_period_end'])


def downgrade() -> None:
    op.drop_table('subscriptions')
    op.drop_table('revenues')
    op.drop_table('settlements')
    op.drop_table('payment_status_history')
    op.drop_table('payments')
    op.drop_table('orders')
    op.drop_table('flash_sales')
    op.drop_table('settings')
    op.drop_table('sellers')
