"""initial catalog, orders and audit tables

Revision ID: 0001_initial_orders
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

revision = '0001_initial_orders'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    insp = inspect(op.get_bind())
    existing = set(insp.get_table_names())

    if 'businesses' not in existing:
        op.create_table('businesses',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=128), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        )
        op.create_index('ix_businesses_name', 'businesses', ['name'])

    if 'customers' not in existing:
        op.create_table('customers',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('username', sa.String(length=64), nullable=False, unique=True),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('first_name', sa.String(length=64), nullable=True),
            sa.Column('last_name', sa.String(length=64), nullable=True),
        )

    for table in ('products', 'packages'):
        if table not in existing:
            op.create_table(table,
                sa.Column('id', sa.Integer(), primary_key=True),
                sa.Column('name', sa.String(length=128), nullable=False),
                sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default='0'),
                sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
                sa.Column('business_id', sa.Integer(), sa.ForeignKey('businesses.id'), nullable=True),
            )
            op.create_index(f'ix_{table}_name', table, ['name'])
            op.create_index(f'ix_{table}_business_id', table, ['business_id'])

    if 'orders' not in existing:
        op.create_table('orders',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('numero', sa.String(length=32), nullable=False, unique=True),
            sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
            sa.Column('total', sa.Numeric(10, 2), nullable=False, server_default='0'),
            sa.Column('delivery_mode', sa.String(length=16), nullable=False, server_default='delivery'),
            sa.Column('delivery_window', sa.JSON(), nullable=True),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=True),
            sa.Column('business_id', sa.Integer(), sa.ForeignKey('businesses.id'), nullable=True),
            sa.Column('contact_phone', sa.String(length=32), nullable=True),
            sa.Column('claimed_by', sa.String(length=64), nullable=True),
            sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('notification_message_id', sa.String(length=64), nullable=True),
            sa.Column('notification_channel_id', sa.String(length=64), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.CheckConstraint('total >= 0', name='ck_orders_total_non_negative'),
        )
        op.create_index('ix_orders_numero', 'orders', ['numero'])
        op.create_index('ix_orders_status', 'orders', ['status'])
        op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
        op.create_index('ix_orders_business_id', 'orders', ['business_id'])
        op.create_index('ix_orders_created_at', 'orders', ['created_at'])

    if 'order_lines' not in existing:
        op.create_table('order_lines',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
            sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
            sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
            sa.CheckConstraint('quantity >= 1', name='ck_order_lines_quantity'),
        )
        op.create_index('ix_order_lines_order_id', 'order_lines', ['order_id'])

    if 'order_packages' not in existing:
        op.create_table('order_packages',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
            sa.Column('package_id', sa.Integer(), sa.ForeignKey('packages.id'), nullable=False),
            sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
            sa.CheckConstraint('quantity >= 1', name='ck_order_packages_quantity'),
        )
        op.create_index('ix_order_packages_order_id', 'order_packages', ['order_id'])

    if 'audit_logs' not in existing:
        op.create_table('audit_logs',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('actor', sa.String(length=64), nullable=True),
            sa.Column('action', sa.String(length=64), nullable=False),
            sa.Column('entity', sa.String(length=64), nullable=True),
            sa.Column('entity_id', sa.String(length=64), nullable=True),
            sa.Column('meta', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index('ix_audit_logs_actor', 'audit_logs', ['actor'])
        op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])


def downgrade():
    for table in ('audit_logs', 'order_packages', 'order_lines', 'orders', 'packages', 'products', 'customers', 'businesses'):
        op.drop_table(table)
