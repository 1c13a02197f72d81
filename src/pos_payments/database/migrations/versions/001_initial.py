"""Initial migration - create access_tokens, qr_payments, manual_entries and unmatched_transactions tables

Revision ID: 001_initial
Revises: 
Create Date: 2025-10-02

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create access_tokens table
    op.create_table(
        'access_tokens',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('access_token', sa.String(500), nullable=False),
        sa.Column('token_type', sa.String(50), nullable=False, server_default='Bearer'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('superseded_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_access_tokens_is_active', 'access_tokens', ['is_active'])

    # Create qr_payments table
    op.create_table(
        'qr_payments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('reference', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('customer_phone', sa.String(20), nullable=True),
        sa.Column('customer_name', sa.String(100), nullable=True),
        sa.Column('description', sa.String(200), nullable=True),
        sa.Column('till_number', sa.String(20), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('receipt_number', sa.String(100), nullable=True),
        sa.Column('transaction_code', sa.String(100), nullable=True),
        sa.Column('sale_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_qr_payments_reference', 'qr_payments', ['reference'], unique=True)
    op.create_index('ix_qr_payments_status', 'qr_payments', ['status'])
    op.create_index('ix_qr_payments_expires_at', 'qr_payments', ['expires_at'])

    # Create manual_entries table
    op.create_table(
        'manual_entries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('raw_message', sa.Text(), nullable=False),
        sa.Column('transaction_code', sa.String(50), nullable=False, server_default=''),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('sender_phone', sa.String(20), nullable=False, server_default=''),
        sa.Column('sender_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('transaction_date', sa.DateTime(), nullable=False),
        sa.Column('parse_confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('needs_correction', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('missing_fields_json', sa.Text(), nullable=True),
        sa.Column('entered_by_user_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('verification_notes', sa.Text(), nullable=True),
        sa.Column('sale_id', sa.Integer(), nullable=True),
    )
    op.create_index('ix_manual_entries_transaction_code', 'manual_entries', ['transaction_code'])
    op.create_index('ix_manual_entries_status', 'manual_entries', ['status'])

    # Create unmatched_transactions table
    op.create_table(
        'unmatched_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('transaction_code', sa.String(50), nullable=False),
        sa.Column('till_number', sa.String(20), nullable=True),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('phone_number', sa.String(20), nullable=True),
        sa.Column('customer_name', sa.String(100), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('is_used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sale_id', sa.Integer(), nullable=True),
        sa.Column('matched_reference', sa.String(50), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index(
        'ix_unmatched_transactions_transaction_code',
        'unmatched_transactions',
        ['transaction_code'],
        unique=True,
    )
    op.create_index('ix_unmatched_transactions_received_at', 'unmatched_transactions', ['received_at'])
    op.create_index('ix_unmatched_transactions_sale_id', 'unmatched_transactions', ['sale_id'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_unmatched_transactions_sale_id', table_name='unmatched_transactions')
    op.drop_index('ix_unmatched_transactions_received_at', table_name='unmatched_transactions')
    op.drop_index('ix_unmatched_transactions_transaction_code', table_name='unmatched_transactions')

    op.drop_index('ix_manual_entries_status', table_name='manual_entries')
    op.drop_index('ix_manual_entries_transaction_code', table_name='manual_entries')

    op.drop_index('ix_qr_payments_expires_at', table_name='qr_payments')
    op.drop_index('ix_qr_payments_status', table_name='qr_payments')
    op.drop_index('ix_qr_payments_reference', table_name='qr_payments')

    op.drop_index('ix_access_tokens_is_active', table_name='access_tokens')

    # Drop tables
    op.drop_table('unmatched_transactions')
    op.drop_table('manual_entries')
    op.drop_table('qr_payments')
    op.drop_table('access_tokens')
