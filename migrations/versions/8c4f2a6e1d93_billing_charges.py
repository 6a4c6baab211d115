"""billing charges ledger

Revision ID: 8c4f2a6e1d93
Revises: 5b1e0c9d7a21
Create Date: 2026-10-18 10:30:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '8c4f2a6e1d93'
down_revision = '5b1e0c9d7a21'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'billing_charges',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('billing_record_id', sa.String(length=36), nullable=False),
        sa.Column('transaction_id', sa.String(length=100), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('refunded_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['billing_record_id'], ['billing_records.id'], ondelete="RESTRICT"),
        sa.CheckConstraint('amount > 0', name='ck_billing_charges_amount_positive'),
        sa.CheckConstraint('refunded_amount >= 0 AND refunded_amount <= amount', name='ck_billing_charges_refund_bounds'),
    )
    op.create_index('ix_billing_charges_billing_record_id', 'billing_charges', ['billing_record_id'])
    op.create_index('ix_billing_charges_transaction_id', 'billing_charges', ['transaction_id'])

    # Backfill one charge per settled record so refunds of existing rows stay bounded
    op.execute(
        "INSERT INTO billing_charges (billing_record_id, transaction_id, amount, refunded_amount, created_at) "
        "SELECT id, transaction_id, amount_paid, 0, COALESCE(paid_at, updated_date) FROM billing_records "
        "WHERE transaction_id IS NOT NULL AND amount_paid > 0 AND status = 'Paid'"
    )


def downgrade():
    op.drop_index('ix_billing_charges_transaction_id', table_name='billing_charges')
    op.drop_index('ix_billing_charges_billing_record_id', table_name='billing_charges')
    op.drop_table('billing_charges')
