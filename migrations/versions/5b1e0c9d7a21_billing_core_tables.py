"""billing core tables: subscriptions, billing_records, billing_adjustments, billing_event_logs

Revision ID: 5b1e0c9d7a21
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '5b1e0c9d7a21'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('plan_id', sa.String(length=64), nullable=False),
        sa.Column('plan_name', sa.String(length=120), nullable=False, server_default=sa.text("''")),
        sa.Column('status', sa.String(length=32), nullable=False, server_default=sa.text("'Pending'")),
        sa.Column('billing_cycle', sa.String(length=16), nullable=True),
        sa.Column('current_price', sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column('payment_method_id', sa.String(length=100), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('next_billing_date', sa.DateTime(), nullable=False),
        sa.Column('last_billing_date', sa.DateTime(), nullable=True),
        sa.Column('cancelled_date', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=500), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('recurring_cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('failed_payment_attempts', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('last_payment_error', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_start_date', 'subscriptions', ['start_date'])
    op.create_index('ix_subscriptions_next_billing_date', 'subscriptions', ['next_billing_date'])
    op.create_index('ix_subscriptions_cancelled_date', 'subscriptions', ['cancelled_date'])

    op.create_table(
        'billing_records',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.String(length=36), nullable=True),
        sa.Column('original_record_id', sa.String(length=36), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column('shipping_amount', sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('amount_paid', sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default=sa.text("'Pending'")),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('billing_date', sa.DateTime(), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('invoice_number', sa.String(length=100), nullable=True),
        sa.Column('payment_method', sa.String(length=100), nullable=True),
        sa.Column('transaction_id', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.String(length=500), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('is_recurring', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        sa.Column('created_date', sa.DateTime(), nullable=False),
        sa.Column('updated_date', sa.DateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(['original_record_id'], ['billing_records.id'], ondelete="RESTRICT"),
        sa.UniqueConstraint('invoice_number', name='uq_billing_records_invoice_number'),
        sa.UniqueConstraint('idempotency_key', name='uq_billing_records_idempotency_key'),
        sa.CheckConstraint('amount >= 0', name='ck_billing_records_amount_non_negative'),
        sa.CheckConstraint('amount_paid >= 0', name='ck_billing_records_amount_paid_non_negative'),
    )
    op.create_index('ix_billing_records_user_id', 'billing_records', ['user_id'])
    op.create_index('ix_billing_records_subscription_id', 'billing_records', ['subscription_id'])
    op.create_index('ix_billing_records_status', 'billing_records', ['status'])
    op.create_index('ix_billing_records_type', 'billing_records', ['type'])
    op.create_index('ix_billing_records_due_date', 'billing_records', ['due_date'])
    op.create_index('ix_billing_records_created_date', 'billing_records', ['created_date'])
    op.create_index('ix_billing_records_status_due_date', 'billing_records', ['status', 'due_date'])

    op.create_table(
        'billing_adjustments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('billing_record_id', sa.String(length=36), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('reason', sa.String(length=500), nullable=False),
        sa.Column('applied_at', sa.DateTime(), nullable=False),
        sa.Column('applied_by', sa.Integer(), nullable=True),
        sa.Column('reference', sa.String(length=100), nullable=True),
        sa.ForeignKeyConstraint(['billing_record_id'], ['billing_records.id'], ondelete="RESTRICT"),
    )
    op.create_index('ix_billing_adjustments_billing_record_id', 'billing_adjustments', ['billing_record_id'])

    op.create_table(
        'billing_event_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_key', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('subject_id', sa.String(length=64), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_billing_event_logs_event_key', 'billing_event_logs', ['event_key'], unique=True)
    op.create_index('ix_billing_event_logs_type', 'billing_event_logs', ['type'])
    op.create_index('ix_billing_event_logs_subject_id', 'billing_event_logs', ['subject_id'])


def downgrade():
    op.drop_index('ix_billing_event_logs_subject_id', table_name='billing_event_logs')
    op.drop_index('ix_billing_event_logs_type', table_name='billing_event_logs')
    op.drop_index('ix_billing_event_logs_event_key', table_name='billing_event_logs')
    op.drop_table('billing_event_logs')

    op.drop_index('ix_billing_adjustments_billing_record_id', table_name='billing_adjustments')
    op.drop_table('billing_adjustments')

    for name in (
        'ix_billing_records_status_due_date',
        'ix_billing_records_created_date',
        'ix_billing_records_due_date',
        'ix_billing_records_type',
        'ix_billing_records_status',
        'ix_billing_records_subscription_id',
        'ix_billing_records_user_id',
    ):
        op.drop_index(name, table_name='billing_records')
    op.drop_table('billing_records')

    for name in (
        'ix_subscriptions_cancelled_date',
        'ix_subscriptions_next_billing_date',
        'ix_subscriptions_start_date',
        'ix_subscriptions_status',
        'ix_subscriptions_plan_id',
        'ix_subscriptions_user_id',
    ):
        op.drop_index(name, table_name='subscriptions')
    op.drop_table('subscriptions')
