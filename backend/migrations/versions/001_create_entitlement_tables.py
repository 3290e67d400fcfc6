"""Create plans, subscriptions, credit_transactions and purchase_intents tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Check which tables already exist (init_db may have created them)
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'plans' not in existing_tables:
        op.create_table(
            'plans',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('plan_type', sa.String(length=32), nullable=False),
            sa.Column('price', sa.Numeric(12, 2), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('credits_granted', sa.Integer(), nullable=False),
            sa.Column('duration_days', sa.Integer(), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('modules', sa.JSON(), nullable=False),
            sa.Column('features', sa.JSON(), nullable=False),
            sa.Column('role_access', sa.JSON(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.Column('version', sa.Integer(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('seller_id', sa.String(length=64), nullable=False),
            sa.Column('plan_id', sa.String(length=64), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
            sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
            sa.Column('renewal_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('credits_allocated', sa.Integer(), nullable=False),
            sa.Column('credits_used', sa.Integer(), nullable=False),
            sa.Column('bonus_credits', sa.Integer(), nullable=False),
            sa.Column('total_credited', sa.Integer(), nullable=False),
            sa.Column('total_debited', sa.Integer(), nullable=False),
            sa.Column('ledger_sequence', sa.Integer(), nullable=False),
            sa.Column('is_auto_assigned', sa.Boolean(), nullable=False),
            sa.Column('is_current', sa.Boolean(), nullable=False),
            sa.Column('version', sa.Integer(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint(
                'credits_allocated - credits_used + bonus_credits >= 0',
                name='ck_subscriptions_balance_non_negative'
            ),
        )
        op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
        op.create_index('ix_subscriptions_seller_id', 'subscriptions', ['seller_id'])
        op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
        op.create_index(
            'uq_subscriptions_current_seller', 'subscriptions', ['seller_id'],
            unique=True,
            postgresql_where=sa.text('is_current'),
            sqlite_where=sa.text('is_current = 1'),
        )

    if 'credit_transactions' not in existing_tables:
        op.create_table(
            'credit_transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=False),
            sa.Column('seller_id', sa.String(length=64), nullable=False),
            sa.Column('sequence', sa.Integer(), nullable=False),
            sa.Column('transaction_type', sa.String(length=20), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('balance_before', sa.Integer(), nullable=False),
            sa.Column('balance_after', sa.Integer(), nullable=False),
            sa.Column('description', sa.Text(), nullable=False),
            sa.Column('feature', sa.String(length=255), nullable=True),
            sa.Column('reference_id', sa.String(length=255), nullable=True),
            sa.Column('reference_type', sa.String(length=50), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='RESTRICT'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('subscription_id', 'sequence', name='uq_credit_transactions_subscription_sequence'),
            sa.CheckConstraint('amount > 0', name='ck_credit_transactions_amount_positive'),
        )
        op.create_index('ix_credit_transactions_id', 'credit_transactions', ['id'])
        op.create_index('ix_credit_transactions_subscription_id', 'credit_transactions', ['subscription_id'])
        op.create_index('ix_credit_transactions_seller_created', 'credit_transactions', ['seller_id', 'created_at'])
        op.create_index('ix_credit_transactions_reference', 'credit_transactions', ['reference_type', 'reference_id'])

    if 'purchase_intents' not in existing_tables:
        op.create_table(
            'purchase_intents',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('seller_id', sa.String(length=64), nullable=False),
            sa.Column('plan_id', sa.String(length=64), nullable=False),
            sa.Column('gateway', sa.String(length=20), nullable=False),
            sa.Column('gateway_order_id', sa.String(length=255), nullable=True),
            sa.Column('gateway_payment_id', sa.String(length=255), nullable=True),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('status', sa.String(length=30), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=True),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_purchase_intents_id', 'purchase_intents', ['id'])
        op.create_index('ix_purchase_intents_gateway_order_id', 'purchase_intents', ['gateway_order_id'], unique=True)
        op.create_index('ix_purchase_intents_gateway_payment_id', 'purchase_intents', ['gateway_payment_id'])
        op.create_index('ix_purchase_intents_seller_plan', 'purchase_intents', ['seller_id', 'plan_id', 'created_at'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    for table in ('purchase_intents', 'credit_transactions', 'subscriptions', 'plans'):
        if table in existing_tables:
            op.drop_table(table)
