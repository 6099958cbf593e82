"""Create accounts, pricing and usage billing tables

This migration creates:
1. accounts and api_keys
2. pricing_plans (unique name) and pricing_tiers
3. subscriptions, one per account
4. bills and usage_records with the unbilled-usage index

Revision ID: 001_initial
Revises: None (first migration)
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'accounts',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )
    op.create_table(
        'api_keys',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('key_hash', sa.String(), nullable=False, unique=True),
        sa.Column('key_prefix', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        'pricing_plans',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )
    op.create_table(
        'pricing_tiers',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('pricing_plan_id', sa.String(), sa.ForeignKey('pricing_plans.id'), nullable=False),
        sa.Column('operation_type', sa.String(), nullable=False),
        sa.Column('tier', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(18, 10), nullable=False),
        sa.Column('unit_type', sa.String(), nullable=False),
        sa.Column('free_quota', sa.BigInteger(), nullable=False),
        sa.Column('min_quantity', sa.BigInteger(), nullable=False),
        sa.Column('max_quantity', sa.BigInteger(), nullable=True),
        sa.UniqueConstraint('pricing_plan_id', 'operation_type', 'tier', name='uq_plan_operation_tier'),
    )
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('account_id', sa.String(), sa.ForeignKey('accounts.id'), nullable=False, unique=True),
        sa.Column('pricing_plan_id', sa.String(), sa.ForeignKey('pricing_plans.id'), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True)),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        'bills',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('account_id', sa.String(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('start_period', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_period', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        'usage_records',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('account_id', sa.String(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('api_key_id', sa.String(), sa.ForeignKey('api_keys.id'), nullable=True),
        sa.Column('operation_type', sa.String(), nullable=False),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('quantity', sa.BigInteger(), nullable=False),
        sa.Column('unit', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('billed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('bill_id', sa.String(), sa.ForeignKey('bills.id'), nullable=True),
    )
    op.create_index(
        'idx_usage_account_operation_time', 'usage_records', ['account_id', 'operation_type', 'timestamp']
    )
    op.create_index('idx_usage_unbilled', 'usage_records', ['account_id', 'billed', 'timestamp'])


def downgrade() -> None:
    op.drop_index('idx_usage_unbilled', table_name='usage_records')
    op.drop_index('idx_usage_account_operation_time', table_name='usage_records')
    op.drop_table('usage_records')
    op.drop_table('bills')
    op.drop_table('subscriptions')
    op.drop_table('pricing_tiers')
    op.drop_table('pricing_plans')
    op.drop_table('api_keys')
    op.drop_table('accounts')
